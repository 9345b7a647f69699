"""
Error taxonomy for shard aggregation.

Every failure raised by the catalog, reader, aggregator and driver derives
from ShardAggError so callers can catch one type around a run.
"""

from pathlib import Path
from typing import Optional, Union


class ShardAggError(Exception):
    """Base class for all shard aggregation errors."""


class CatalogError(ShardAggError):
    """Root directory is missing or no shard files match the partition scheme."""


class ReadError(ShardAggError):
    """
    A shard could not be read (malformed, truncated or missing columns).

    Args:
        message: Human readable description of the failure
        path: Shard file that failed
        row_offset: Row offset within the shard where reading failed, if known
    """

    def __init__(
        self,
        message: str,
        path: Union[str, Path],
        row_offset: Optional[int] = None
    ):
        self.path = Path(path)
        self.row_offset = row_offset
        self.reason = message
        location = f"{self.path}"
        if row_offset is not None:
            location += f" at row {row_offset:,}"
        super().__init__(f"{location}: {message}")

    def __reduce__(self):
        # Keep the structured fields when crossing a process boundary
        return (self.__class__, (self.reason, self.path, self.row_offset))


class MergeError(ShardAggError):
    """Two accumulators with incompatible shapes were merged."""


class AggregationCancelled(ShardAggError):
    """The driver was cancelled before every shard was folded."""
