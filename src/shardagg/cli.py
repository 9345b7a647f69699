#!/usr/bin/env python3
"""
Command-line entry points

shardagg-prepare: split a CSV/Parquet file into a partitioned shard tree
shardagg-run:     stream-aggregate a shard tree (optionally verify with DuckDB)

Examples:
  shardagg-prepare events.csv --output-dir data/events --partition-by year,month
  shardagg-run data/events --group-by country --value bid_price --parallelism 8
  shardagg-run data/events --group-by year --value bid_price --where month=1..3
  shardagg-run data/events --group-by country --value bid_price --verify
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

import polars as pl

from .catalog import PartitionScheme, ShardCatalog
from .config import EXECUTORS, AggregationConfig
from .driver import Driver
from .errors import ShardAggError
from .filters import build_partition_filter
from .reference import compare_results, duckdb_aggregate
from .storage import EXTENSIONS, ShardWriter

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(level: str = 'INFO'):
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, stream=sys.stderr)


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def _add_log_level(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default='INFO',
        help='Logging level (default: INFO)'
    )


def create_prepare_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='shardagg-prepare',
        description='Split a CSV or Parquet file into a partitioned shard tree'
    )
    parser.add_argument('input', type=Path, help='Input .csv or .parquet file')
    parser.add_argument(
        '--output-dir',
        type=Path,
        required=True,
        help='Dataset root to write shards into'
    )
    parser.add_argument(
        '--partition-by',
        type=_split_list,
        default=[],
        help='Comma-separated partition columns (e.g. year,month)'
    )
    parser.add_argument(
        '--format',
        dest='shard_format',
        choices=list(EXTENSIONS),
        default='parquet',
        help='Shard file format (default: parquet)'
    )
    parser.add_argument(
        '--layout',
        choices=['hive', 'directory'],
        default='hive',
        help='Partition directory layout (default: hive)'
    )
    parser.add_argument(
        '--rows-per-file',
        type=int,
        default=None,
        help='Maximum rows per shard file (default: one file per partition)'
    )
    _add_log_level(parser)
    return parser


def prepare_main(argv: Optional[List[str]] = None) -> int:
    """Entry point for shardagg-prepare."""
    args = create_prepare_parser().parse_args(argv)
    configure_logging(args.log_level)

    if not args.input.exists():
        logger.error(f"Input file not found: {args.input}")
        return 1

    start_time = time.time()
    suffix = args.input.suffix.lower()
    if suffix == '.csv':
        lf = pl.scan_csv(args.input)
    elif suffix == '.parquet':
        lf = pl.scan_parquet(args.input)
    else:
        logger.error(f"Unsupported input type {suffix!r} (expected .csv or .parquet)")
        return 1

    try:
        df = lf.collect()
        writer = ShardWriter(args.output_dir, shard_format=args.shard_format, layout=args.layout)
        paths = writer.write_dataset(df, partition_by=args.partition_by, rows_per_file=args.rows_per_file)
    except (ValueError, OSError, pl.exceptions.PolarsError) as e:
        logger.error(f"Failed to write shards: {e}")
        return 1

    print("=" * 60)
    print(f"Wrote {len(paths)} shards to {args.output_dir} in {time.time() - start_time:.1f}s")
    print("=" * 60)
    return 0


def create_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='shardagg-run',
        description='Stream-aggregate a partitioned shard tree'
    )
    parser.add_argument('root', type=Path, help='Dataset root directory')
    parser.add_argument(
        '--group-by',
        type=_split_list,
        required=True,
        help='Comma-separated group key columns (partition keys allowed)'
    )
    parser.add_argument('--value', required=True, help='Numeric column to aggregate')
    parser.add_argument(
        '--partition-keys',
        type=_split_list,
        default=[],
        help='Partition key names in nesting order (required for directory layout)'
    )
    parser.add_argument(
        '--layout',
        choices=['hive', 'directory'],
        default='hive',
        help='Partition directory layout (default: hive)'
    )
    parser.add_argument(
        '--where',
        action='append',
        default=[],
        help="Partition filter, repeatable (e.g. year=2024, month=1..3, region!=eu)"
    )
    parser.add_argument('--batch-size', type=int, default=None, help='Rows per read chunk')
    parser.add_argument('--parallelism', type=int, default=None, help='Worker lanes')
    parser.add_argument('--executor', choices=EXECUTORS, default=None, help='Executor policy')
    parser.add_argument(
        '--metric',
        choices=['mean', 'sum', 'count', 'min', 'max', 'rows'],
        default=None,
        help='Print only key and this metric (default: all metrics)'
    )
    parser.add_argument(
        '--output',
        type=Path,
        default=None,
        help='Write the result to a .csv or .parquet file'
    )
    parser.add_argument(
        '--verify',
        action='store_true',
        help='Recompute with DuckDB and compare means'
    )
    _add_log_level(parser)
    return parser


def run_main(argv: Optional[List[str]] = None) -> int:
    """Entry point for shardagg-run. Returns 1 on run errors, 2 on verify mismatch."""
    parser = create_run_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    if args.verify and args.where:
        parser.error("--verify compares the full dataset and cannot be combined with --where")

    try:
        scheme = PartitionScheme(keys=tuple(args.partition_keys), layout=args.layout)
        partition_filter = build_partition_filter(args.where) if args.where else None
        config = AggregationConfig.from_env(
            batch_size=args.batch_size,
            parallelism=args.parallelism,
            executor=args.executor,
            partition_filter=partition_filter,
        )
    except ValueError as e:
        parser.error(str(e))

    driver = Driver(args.root, args.group_by, args.value, scheme=scheme, config=config)
    try:
        result = driver.run()
    except ShardAggError as e:
        logger.error(f"Aggregation failed: {e}")
        return 1

    frame = result.frame
    if args.metric:
        frame = frame.select(list(result.key_columns) + [result.column_for(args.metric)])

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        if args.output.suffix.lower() == '.parquet':
            frame.write_parquet(args.output)
        else:
            frame.write_csv(args.output)
        logger.info(f"Result written to {args.output}")
    else:
        with pl.Config(tbl_rows=50):
            print(frame)

    if args.verify:
        return _verify(args, scheme, result)
    return 0


def _verify(args, scheme: PartitionScheme, result) -> int:
    shards = ShardCatalog(args.root, scheme).discover()
    formats = {s.format for s in shards}
    if len(formats) != 1:
        logger.error(f"Cannot verify a dataset with mixed shard formats: {sorted(formats)}")
        return 1

    reference = duckdb_aggregate(args.root, args.group_by, args.value,
                                 shard_format=formats.pop(), scheme=scheme)
    mismatches = compare_results(result, reference, metric='mean', rel_tol=1e-6)
    if mismatches:
        logger.error(f"❌ {len(mismatches)} groups differ from DuckDB, e.g. {mismatches[:5]}")
        return 2

    logger.info(f"✅ Verified {len(result):,} groups against DuckDB")
    return 0


if __name__ == '__main__':
    sys.exit(run_main())
