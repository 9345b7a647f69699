"""
Out-of-core grouped aggregation over partitioned columnar shards.
"""

from .aggregator import AggregationResult, Aggregator
from .catalog import PartitionScheme, ShardCatalog, ShardDescriptor
from .config import AggregationConfig
from .driver import Driver, DriverState, RunStats, aggregate
from .errors import AggregationCancelled, CatalogError, MergeError, ReadError, ShardAggError
from .filters import PartitionFilter
from .reader import ChunkedReader, RowBatch
from .storage import ShardWriter, write_partitioned

__version__ = "0.1.0"

__all__ = [
    'AggregationConfig',
    'AggregationResult',
    'Aggregator',
    'AggregationCancelled',
    'CatalogError',
    'ChunkedReader',
    'Driver',
    'DriverState',
    'MergeError',
    'PartitionFilter',
    'PartitionScheme',
    'ReadError',
    'RowBatch',
    'RunStats',
    'ShardAggError',
    'ShardCatalog',
    'ShardDescriptor',
    'ShardWriter',
    'aggregate',
    'write_partitioned',
]
