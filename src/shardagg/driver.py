#!/usr/bin/env python3
"""
Driver - Catalog, read+fold in parallel, merge, finalize

Orchestrates one aggregation run:
1. Cataloging: list shards (with partition pruning)
2. Reading+Folding: shards split round-robin into worker lanes; each lane
   streams its shards batch by batch into its own Aggregator
3. Merging: lane accumulators merged into one (order-independent)
4. Finalized: mean/min/max/... derived once

State machine:
    IDLE -> CATALOGING -> READING -> MERGING -> FINALIZED
    (any active state) -> FAILED | CANCELLED

Executor policy (SHARDAGG_EXECUTOR or config.executor):
- "serial": main thread, handy with a debugger
- "threads": default; Polars and PyArrow release the GIL while decoding
- "processes": spawn-based process pool
"""

import logging
import multiprocessing
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from functools import reduce
from pathlib import Path
from typing import List, Optional, Sequence, Union

import polars as pl
import psutil
import pyarrow as pa

from .aggregator import AggregationResult, Aggregator
from .catalog import PartitionScheme, ShardCatalog, ShardDescriptor
from .config import AggregationConfig
from .errors import AggregationCancelled, ReadError
from .reader import ChunkedReader, RowBatch

logger = logging.getLogger(__name__)


class DriverState(Enum):
    IDLE = 'idle'
    CATALOGING = 'cataloging'
    READING = 'reading'
    MERGING = 'merging'
    FINALIZED = 'finalized'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


_TRANSITIONS = {
    DriverState.IDLE: {DriverState.CATALOGING},
    DriverState.CATALOGING: {DriverState.READING, DriverState.MERGING,
                             DriverState.FAILED, DriverState.CANCELLED},
    DriverState.READING: {DriverState.MERGING, DriverState.FAILED, DriverState.CANCELLED},
    DriverState.MERGING: {DriverState.FINALIZED, DriverState.FAILED},
    DriverState.FINALIZED: set(),
    DriverState.FAILED: set(),
    DriverState.CANCELLED: set(),
}


@dataclass
class RunStats:
    """Statistics from one Driver.run()."""
    shards: int = 0
    lanes: int = 0
    batches: int = 0
    rows: int = 0
    groups: int = 0
    executor: str = 'serial'
    catalog_seconds: float = 0.0
    read_seconds: float = 0.0
    merge_seconds: float = 0.0
    memory_mb: float = 0.0

    @property
    def total_seconds(self) -> float:
        return self.catalog_seconds + self.read_seconds + self.merge_seconds


def get_memory_usage() -> float:
    """Resident memory of this process in MB."""
    return psutil.Process().memory_info().rss / 1024 ** 2


def assign_lanes(shards: Sequence[ShardDescriptor], parallelism: int) -> List[List[ShardDescriptor]]:
    """
    Split shards round-robin into at most `parallelism` lanes.

    Each lane keeps catalog order. No lane is empty.
    """
    lane_count = max(1, min(parallelism, len(shards)))
    lanes: List[List[ShardDescriptor]] = [[] for _ in range(lane_count)]
    for i, shard in enumerate(shards):
        lanes[i % lane_count].append(shard)
    return [lane for lane in lanes if lane]


def _with_partition_columns(
    batch: RowBatch,
    partition_columns: Sequence[str]
) -> RowBatch:
    # Hive-style: partition values become constant columns of every row
    if not partition_columns:
        return batch
    frame = batch.frame.with_columns([
        pl.lit(batch.shard.partition[col]).alias(col) for col in partition_columns
    ])
    return RowBatch(shard=batch.shard, offset=batch.offset, frame=frame)


def fold_shard(
    aggregator: Aggregator,
    shard: ShardDescriptor,
    batch_size: int,
    cancel_event: Optional[threading.Event] = None
) -> bool:
    """
    Stream one shard into an aggregator, batch by batch in on-disk order.

    Key or value columns that are partition keys of the shard are filled
    from the partition values instead of being read from the file. Key
    columns of CSV shards are read as strings.

    Returns:
        True if the whole shard was folded, False if cancelled part-way
    """
    needed = aggregator.key_columns + [aggregator.value_column]
    partition_columns = [c for c in needed if c in shard.partition]
    file_columns = [c for c in needed if c not in shard.partition]

    # CSV types are inferred per shard; pin them so a key like "02134" is
    # never an int in one shard and a string in another
    column_types = {c: pa.string() for c in aggregator.key_columns if c in file_columns}
    if aggregator.value_column in file_columns:
        column_types[aggregator.value_column] = pa.float64()

    reader = ChunkedReader(batch_size, columns=file_columns, column_types=column_types)
    batches = reader.read(shard)
    try:
        while True:
            # Check before every read so cancellation stops new I/O
            if cancel_event is not None and cancel_event.is_set():
                return False
            batch = next(batches, None)
            if batch is None:
                return True
            aggregator.fold(_with_partition_columns(batch, partition_columns))
    finally:
        batches.close()


def fold_lane(
    lane: Sequence[ShardDescriptor],
    key_columns: Sequence[str],
    value_column: str,
    batch_size: int,
    compact_every: int,
    cancel_event: Optional[threading.Event] = None
) -> Optional[Aggregator]:
    """
    Fold every shard of one lane into a fresh Aggregator.

    Module-level so it can be shipped to a process pool.

    Returns:
        The lane's Aggregator, or None if the lane was cancelled before
        finishing (a partly folded accumulator is never handed back)
    """
    aggregator = Aggregator(key_columns, value_column, compact_every=compact_every)
    for shard in lane:
        start = time.time()
        if not fold_shard(aggregator, shard, batch_size, cancel_event):
            logger.debug(f"Lane cancelled at {shard.name}")
            return None
        logger.debug(f"Folded {shard.name} in {(time.time() - start) * 1000:.1f}ms")
    return aggregator


class Driver:
    """
    Runs one out-of-core aggregation over a partitioned shard tree.

    Usage:
        driver = Driver("data/events", ["country"], "bid_price",
                        scheme=PartitionScheme.hive("year", "month"),
                        config=AggregationConfig(batch_size=100_000, parallelism=4))
        result = driver.run()
        result.to_dict()   # {"JP": 1.23, "US": 4.56, ...}
    """

    def __init__(
        self,
        root: Union[str, Path],
        key_columns: Union[str, Sequence[str]],
        value_column: str,
        scheme: Optional[PartitionScheme] = None,
        config: Optional[AggregationConfig] = None
    ):
        """
        Initialize driver.

        Args:
            root: Dataset root directory
            key_columns: Group key column(s); partition keys are allowed
            value_column: Numeric column to aggregate
            scheme: Partition scheme (hive with any keys if None)
            config: Run options (AggregationConfig.from_env() if None)
        """
        self.root = Path(root)
        self.key_columns = [key_columns] if isinstance(key_columns, str) else list(key_columns)
        self.value_column = value_column
        self.scheme = scheme or PartitionScheme()
        self.config = config or AggregationConfig.from_env()
        self.stats = RunStats()

        self._state = DriverState.IDLE
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()

    @property
    def state(self) -> DriverState:
        return self._state

    def _transition(self, new_state: DriverState):
        with self._state_lock:
            if new_state not in _TRANSITIONS[self._state]:
                raise RuntimeError(f"Invalid driver transition {self._state.value} -> {new_state.value}")
            logger.debug(f"Driver: {self._state.value} -> {new_state.value}")
            self._state = new_state

    def cancel(self):
        """
        Stop issuing new reads.

        Folds already in progress finish; the run then raises AggregationCancelled.
        """
        logger.info("Cancellation requested")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> AggregationResult:
        """
        Execute the run and return the finalized result.

        Raises:
            CatalogError: Root missing or no shards match the scheme
            ReadError: A shard could not be read (names the shard and row offset)
            AggregationCancelled: cancel() was called before all shards were folded
            RuntimeError: The driver has already run
        """
        if self._state is not DriverState.IDLE:
            raise RuntimeError(f"Driver already ran (state: {self._state.value})")

        self._transition(DriverState.CATALOGING)
        logger.info(f"Aggregating {self.value_column!r} by {self.key_columns} under {self.root}")

        start = time.time()
        try:
            catalog = ShardCatalog(self.root, self.scheme, self.config.partition_filter)
            shards = catalog.shards()
        except Exception:
            self._transition(DriverState.FAILED)
            raise
        self.stats.catalog_seconds = time.time() - start
        self.stats.shards = len(shards)

        if self._cancel.is_set():
            self._transition(DriverState.CANCELLED)
            raise AggregationCancelled("Cancelled before any shard was read")

        if not shards:
            logger.info("No shards selected; returning empty result")
            self._transition(DriverState.MERGING)
            result = Aggregator(self.key_columns, self.value_column).finalize()
            self._transition(DriverState.FINALIZED)
            return result

        self._transition(DriverState.READING)
        aggregators = self._read_and_fold(shards)

        self._transition(DriverState.MERGING)
        start = time.time()
        try:
            merged = reduce(lambda left, right: left.merge(right), aggregators)
            result = merged.finalize()
        except Exception:
            self._transition(DriverState.FAILED)
            raise
        self.stats.merge_seconds = time.time() - start
        self.stats.batches = merged.batches_folded
        self.stats.rows = merged.rows_folded
        self.stats.groups = len(result)
        self.stats.memory_mb = get_memory_usage()

        self._transition(DriverState.FINALIZED)
        self._log_summary()
        return result

    def _read_and_fold(self, shards: List[ShardDescriptor]) -> List[Aggregator]:
        lanes = assign_lanes(shards, self.config.parallelism)
        executor_name = self.config.resolved_executor
        self.stats.lanes = len(lanes)
        self.stats.executor = executor_name

        logger.info(f"Reading {len(shards)} shards in {len(lanes)} lanes "
                    f"(executor={executor_name}, batch_size={self.config.batch_size:,})")

        start = time.time()
        try:
            if executor_name == 'serial' or (len(lanes) == 1 and executor_name == 'threads'):
                results = [self._fold_lane(lane, self._cancel) for lane in lanes]
            else:
                results = self._fold_lanes_in_pool(lanes, executor_name)
        except ReadError as e:
            self._cancel.set()
            self._transition(DriverState.FAILED)
            logger.error(f"Run aborted: shard {e.path} unreadable"
                         + (f" at row {e.row_offset:,}" if e.row_offset is not None else "")
                         + f": {e.reason}")
            raise
        except Exception:
            self._cancel.set()
            self._transition(DriverState.FAILED)
            raise
        self.stats.read_seconds = time.time() - start

        completed = [agg for agg in results if agg is not None]
        if self._cancel.is_set() or len(completed) != len(lanes):
            self._transition(DriverState.CANCELLED)
            raise AggregationCancelled(
                f"Cancelled after {len(completed)}/{len(lanes)} lanes completed; "
                "partial accumulators discarded"
            )

        logger.info(f"Read+fold done: {len(shards)} shards in {self.stats.read_seconds:.2f}s")
        return completed

    def _fold_lane(self, lane, cancel_event) -> Optional[Aggregator]:
        return fold_lane(
            lane,
            self.key_columns,
            self.value_column,
            self.config.batch_size,
            self.config.compact_every,
            cancel_event,
        )

    def _fold_lanes_in_pool(self, lanes, executor_name: str) -> List[Optional[Aggregator]]:
        if executor_name == 'processes':
            # Polars is not fork-safe; use spawned workers. Cancellation between
            # batches is unavailable here, pending lanes are still cancelled.
            pool = ProcessPoolExecutor(
                max_workers=len(lanes),
                mp_context=multiprocessing.get_context('spawn'),
            )
            cancel_event = None
        else:
            pool = ThreadPoolExecutor(max_workers=len(lanes), thread_name_prefix='shardagg')
            cancel_event = self._cancel

        with pool:
            futures = [
                pool.submit(
                    fold_lane,
                    lane,
                    self.key_columns,
                    self.value_column,
                    self.config.batch_size,
                    self.config.compact_every,
                    cancel_event,
                )
                for lane in lanes
            ]

            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            failed = [f for f in done if f.exception() is not None]
            if failed:
                # Stop new reads; in-flight folds finish before the pool closes
                self._cancel.set()
                for future in pending:
                    future.cancel()
                raise failed[0].exception()

            return [f.result() for f in futures]

    def _log_summary(self):
        s = self.stats
        logger.info("=" * 60)
        logger.info(f"✅ Aggregation complete: {s.groups:,} groups from {s.rows:,} rows")
        logger.info(f"   Shards: {s.shards} in {s.lanes} lanes ({s.executor}), {s.batches} batches")
        logger.info(f"   Time: catalog {s.catalog_seconds:.2f}s, read+fold {s.read_seconds:.2f}s, "
                    f"merge {s.merge_seconds:.2f}s")
        logger.info(f"   Memory: {s.memory_mb:.0f} MB resident")
        logger.info("=" * 60)


def aggregate(
    root: Union[str, Path],
    key_columns: Union[str, Sequence[str]],
    value_column: str,
    scheme: Optional[PartitionScheme] = None,
    config: Optional[AggregationConfig] = None,
    **options
) -> AggregationResult:
    """
    Aggregate a partitioned dataset in one call.

    Args:
        root: Dataset root directory
        key_columns: Group key column(s)
        value_column: Numeric column to aggregate
        scheme: Partition scheme
        config: Run options; **options (batch_size, parallelism,
            partition_filter, executor, compact_every) override it

    Returns:
        AggregationResult
    """
    if config is None:
        config = AggregationConfig.from_env(**options)
    elif options:
        config = config.with_overrides(**options)
    return Driver(root, key_columns, value_column, scheme=scheme, config=config).run()
