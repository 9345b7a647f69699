#!/usr/bin/env python3
"""
Reference Engine - Same aggregate computed by DuckDB in one SQL pass

Used to validate streaming results: DuckDB scans the whole shard tree
(through a PyArrow dataset, so Parquet, Arrow IPC and CSV all work) and
computes AVG/SUM/COUNT/MIN/MAX per key. Results should match the Driver
to floating-point tolerance.
"""

import logging
import math
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import duckdb
import polars as pl
import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.dataset as ds

from .aggregator import ROW_COUNT, AggregationResult
from .catalog import PartitionScheme

logger = logging.getLogger(__name__)

DATASET_FORMATS = {
    'parquet': 'parquet',
    'arrow': 'ipc',
    'csv': 'csv',
}


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def open_dataset(
    root: Union[str, Path],
    shard_format: str = 'parquet',
    scheme: Optional[PartitionScheme] = None,
    column_types: Optional[Dict[str, pa.DataType]] = None
) -> ds.Dataset:
    """
    Open a shard tree as a PyArrow dataset with partition columns attached.

    Args:
        root: Dataset root directory
        shard_format: "parquet", "arrow" or "csv"
        scheme: Partition scheme (hive with any keys if None)
        column_types: Fixed CSV column types (ignored for Parquet and Arrow)
    """
    scheme = scheme or PartitionScheme()
    if scheme.layout == 'hive':
        partitioning = ds.partitioning(flavor='hive')
    else:
        partitioning = ds.partitioning(field_names=list(scheme.keys))

    file_format = DATASET_FORMATS[shard_format]
    if shard_format == 'csv':
        file_format = ds.CsvFileFormat(convert_options=pacsv.ConvertOptions(
            column_types=column_types or {},
            strings_can_be_null=True,
        ))

    return ds.dataset(
        str(root),
        format=file_format,
        partitioning=partitioning,
    )


def duckdb_aggregate(
    root: Union[str, Path],
    key_columns: Union[str, Sequence[str]],
    value_column: str,
    shard_format: str = 'parquet',
    scheme: Optional[PartitionScheme] = None,
    threads: Optional[int] = None
) -> AggregationResult:
    """
    Aggregate a shard tree with DuckDB.

    Args:
        root: Dataset root directory
        key_columns: Group key column(s)
        value_column: Numeric column to aggregate
        shard_format: Shard file format
        scheme: Partition scheme
        threads: DuckDB worker threads (DuckDB default if None)

    Returns:
        AggregationResult with the same columns the Driver produces
    """
    keys = [key_columns] if isinstance(key_columns, str) else list(key_columns)
    # Same CSV typing as the streaming reader: keys as text, value as double
    column_types = {k: pa.string() for k in keys}
    column_types[value_column] = pa.float64()
    dataset = open_dataset(root, shard_format, scheme, column_types)

    v = _quote(value_column)
    key_sql = ', '.join(_quote(k) for k in keys)
    sql = f"""
        SELECT
            {key_sql},
            AVG(CAST({v} AS DOUBLE)) AS {_quote(value_column + '_mean')},
            COALESCE(SUM(CAST({v} AS DOUBLE)), 0.0) AS {_quote(value_column + '_sum')},
            COUNT({v}) AS {_quote(value_column + '_count')},
            MIN(CAST({v} AS DOUBLE)) AS {_quote(value_column + '_min')},
            MAX(CAST({v} AS DOUBLE)) AS {_quote(value_column + '_max')},
            COUNT(*) AS {ROW_COUNT}
        FROM shards
        GROUP BY {key_sql}
        ORDER BY {key_sql} NULLS LAST
    """

    start_time = time.time()
    con = duckdb.connect()
    try:
        if threads is not None:
            con.execute(f"PRAGMA threads={int(threads)}")
        con.register('shards', dataset)
        frame = con.execute(sql).pl()
    finally:
        con.close()

    frame = frame.with_columns(
        pl.col(value_column + '_count').cast(pl.Int64),
        pl.col(ROW_COUNT).cast(pl.Int64),
    )
    logger.info(f"DuckDB reference: {frame.height:,} groups in {(time.time() - start_time) * 1000:.1f}ms")
    return AggregationResult(frame, keys, value_column)


def compare_results(
    result: AggregationResult,
    reference: AggregationResult,
    metric: str = 'mean',
    rel_tol: float = 1e-9,
    abs_tol: float = 1e-9
) -> List[Tuple[object, object, object]]:
    """
    Compare one metric of two results key by key.

    Returns:
        List of (key, result_value, reference_value) mismatches; empty if equal
    """
    ours = result.to_dict(metric)
    theirs = reference.to_dict(metric)
    mismatches = []
    absent = object()

    for key in sorted(set(ours) | set(theirs), key=repr):
        a, b = ours.get(key, absent), theirs.get(key, absent)
        if a is absent or b is absent:
            mismatches.append((key, None if a is absent else a, None if b is absent else b))
            continue
        if a is None or b is None:
            if a is not b:
                mismatches.append((key, a, b))
            continue
        if not math.isclose(a, b, rel_tol=rel_tol, abs_tol=abs_tol):
            mismatches.append((key, a, b))

    return mismatches
