#!/usr/bin/env python3
"""
Aggregator - Mergeable grouped accumulator with incremental folding

Each accumulator stores NULL-safe partial aggregates per group key:
- <value>_sum:   SUM(value WHERE NOT NULL)
- <value>_count: COUNT(value WHERE NOT NULL)
- <value>_min:   MIN(value WHERE NOT NULL)
- <value>_max:   MAX(value WHERE NOT NULL)
- row_count:     COUNT(*)

Every one of these merges with sum/min/max, which are associative and
commutative, so accumulators can be folded on separate workers and merged
in any order. The mean is derived only in finalize().

Memory: O(unique_keys) for the running state plus up to compact_every
staged batch partials.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import polars as pl

from .config import DEFAULT_COMPACT_EVERY
from .errors import MergeError, ReadError
from .reader import RowBatch

logger = logging.getLogger(__name__)

ROW_COUNT = 'row_count'

METRICS = ('mean', 'sum', 'count', 'min', 'max', 'rows')


class AggregationResult:
    """
    Finalized aggregates per group key. Immutable.

    The frame has the key columns followed by <value>_mean, <value>_sum,
    <value>_count, <value>_min, <value>_max and row_count, sorted by key.
    """

    __slots__ = ('_frame', '_key_columns', '_value_column')

    def __init__(self, frame: pl.DataFrame, key_columns: Sequence[str], value_column: str):
        object.__setattr__(self, "_frame", frame)
        object.__setattr__(self, "_key_columns", tuple(key_columns))
        object.__setattr__(self, "_value_column", value_column)

    def __setattr__(self, name, value):
        raise AttributeError("AggregationResult is immutable")

    @property
    def frame(self) -> pl.DataFrame:
        """Copy of the result table (Polars copies are cheap, buffers are shared)."""
        return self._frame.clone()

    @property
    def key_columns(self) -> Tuple[str, ...]:
        return self._key_columns

    @property
    def value_column(self) -> str:
        return self._value_column

    def column_for(self, metric: str) -> str:
        """Result column holding a metric ("mean", "sum", "count", "min", "max", "rows")."""
        if metric not in METRICS:
            raise ValueError(f"Unknown metric {metric!r} (expected one of {METRICS})")
        if metric == 'rows':
            return ROW_COUNT
        return f"{self._value_column}_{metric}"

    def to_dict(self, metric: str = 'mean') -> Dict[Any, Any]:
        """
        Map group key -> metric value.

        Keys are scalars for a single key column and tuples otherwise.

        Example:
            {"A": 2.0, "B": 10.0}
        """
        column = self.column_for(metric)
        keys = self._frame.select(self._key_columns).rows()
        values = self._frame.get_column(column).to_list()
        if len(self._key_columns) == 1:
            return {key[0]: value for key, value in zip(keys, values)}
        return {tuple(key): value for key, value in zip(keys, values)}

    @property
    def total_rows(self) -> int:
        """Rows that contributed to this result (sum of row_count)."""
        if self._frame.is_empty():
            return 0
        return int(self._frame.get_column(ROW_COUNT).sum())

    @property
    def is_empty(self) -> bool:
        return self._frame.is_empty()

    def __len__(self):
        return self._frame.height

    def __eq__(self, other):
        if not isinstance(other, AggregationResult):
            return NotImplemented
        return (
            self._key_columns == other._key_columns
            and self._value_column == other._value_column
            and self._frame.equals(other._frame)
        )

    def __repr__(self):
        return (f"AggregationResult(keys={list(self._key_columns)}, value={self._value_column!r}, "
                f"groups={self._frame.height:,}, rows={self.total_rows:,})")


class Aggregator:
    """
    Running grouped accumulator.

    Usage:
        agg = Aggregator(['country'], 'bid_price')
        for batch in reader.read(shard):
            agg.fold(batch)
        result = agg.merge(other).finalize()
    """

    def __init__(
        self,
        key_columns: Union[str, Sequence[str]],
        value_column: str,
        compact_every: int = DEFAULT_COMPACT_EVERY
    ):
        """
        Initialize aggregator.

        Args:
            key_columns: Group key column(s)
            value_column: Numeric column to aggregate
            compact_every: Staged partials kept before folding into the state
        """
        if isinstance(key_columns, str):
            key_columns = [key_columns]
        self.key_columns: List[str] = list(key_columns)
        self.value_column = value_column
        self.compact_every = compact_every

        if not self.key_columns:
            raise ValueError("At least one key column is required")
        if len(set(self.key_columns)) != len(self.key_columns):
            raise ValueError(f"Duplicate key columns: {self.key_columns}")
        reserved = set(self.agg_columns) | {value_column}
        clashes = [k for k in self.key_columns if k in reserved]
        if clashes:
            raise ValueError(f"Key columns {clashes} clash with value/aggregate columns")

        self._state: Optional[pl.DataFrame] = None
        self._staged: List[pl.DataFrame] = []
        self.rows_folded = 0
        self.batches_folded = 0

    @property
    def agg_columns(self) -> List[str]:
        v = self.value_column
        return [f"{v}_sum", f"{v}_count", f"{v}_min", f"{v}_max", ROW_COUNT]

    def _partial_exprs(self) -> List[pl.Expr]:
        v = pl.col(self.value_column)
        sum_col, count_col, min_col, max_col, _ = self.agg_columns
        # drop_nulls() first so SUM/COUNT/MIN/MAX only see non-NULL values
        return [
            v.drop_nulls().sum().alias(sum_col),
            v.drop_nulls().count().cast(pl.Int64).alias(count_col),
            v.drop_nulls().min().alias(min_col),
            v.drop_nulls().max().alias(max_col),
            pl.len().cast(pl.Int64).alias(ROW_COUNT),
        ]

    def _combine_exprs(self) -> List[pl.Expr]:
        sum_col, count_col, min_col, max_col, _ = self.agg_columns
        return [
            pl.col(sum_col).sum(),
            pl.col(count_col).sum(),
            pl.col(min_col).min(),
            pl.col(max_col).max(),
            pl.col(ROW_COUNT).sum(),
        ]

    def fold(self, batch: Union[RowBatch, pl.DataFrame]) -> None:
        """
        Fold one batch of rows into the accumulator, in place.

        Args:
            batch: RowBatch from a ChunkedReader, or a bare DataFrame

        Raises:
            ReadError: Batch lacks a key/value column or the value is not numeric
        """
        frame = batch.frame if isinstance(batch, RowBatch) else batch
        needed = self.key_columns + [self.value_column]
        missing = [c for c in needed if c not in frame.columns]
        if missing:
            raise self._batch_error(batch, f"Missing columns {missing} (available: {frame.columns})")

        if frame.height == 0:
            return

        try:
            partial = (
                frame.lazy()
                .select(needed)
                .with_columns(pl.col(self.value_column).cast(pl.Float64))
                .group_by(self.key_columns)
                .agg(self._partial_exprs())
                .collect()
            )
        except pl.exceptions.PolarsError as e:
            raise self._batch_error(batch, f"Cannot aggregate {self.value_column!r}: {e}") from e

        self._staged.append(partial)
        self.rows_folded += frame.height
        self.batches_folded += 1

        if len(self._staged) >= self.compact_every:
            self._compact()

    def _batch_error(self, batch, message: str) -> Exception:
        if isinstance(batch, RowBatch):
            return ReadError(message, batch.shard.path, row_offset=batch.offset)
        return ValueError(message)

    def _frames(self) -> List[pl.DataFrame]:
        frames = [] if self._state is None else [self._state]
        return frames + self._staged

    def _combine(self, frames: List[pl.DataFrame]) -> Optional[pl.DataFrame]:
        if not frames:
            return None
        if len(frames) == 1:
            return frames[0]
        try:
            combined = pl.concat(frames, how='vertical_relaxed')
        except pl.exceptions.PolarsError as e:
            raise MergeError(f"Cannot combine partial aggregates (key types differ?): {e}") from e
        return combined.group_by(self.key_columns).agg(self._combine_exprs())

    def _compact(self) -> None:
        if not self._staged:
            return
        staged = len(self._staged)
        self._state = self._combine(self._frames())
        self._staged = []
        logger.debug(f"Compacted {staged} partials -> {self._state.height:,} groups")

    def merge(self, other: "Aggregator") -> "Aggregator":
        """
        Combine two accumulators key-wise into a new one.

        Neither input is modified. Merge is associative and commutative.

        Raises:
            MergeError: Accumulators disagree on key or value columns
        """
        if not isinstance(other, Aggregator):
            raise MergeError(f"Cannot merge Aggregator with {type(other).__name__}")
        if other.key_columns != self.key_columns or other.value_column != self.value_column:
            raise MergeError(
                f"Incompatible accumulators: keys {self.key_columns} / {other.key_columns}, "
                f"value {self.value_column!r} / {other.value_column!r}"
            )

        merged = Aggregator(self.key_columns, self.value_column, compact_every=self.compact_every)
        merged._state = self._combine(self._frames() + other._frames())
        merged.rows_folded = self.rows_folded + other.rows_folded
        merged.batches_folded = self.batches_folded + other.batches_folded
        return merged

    def _empty_state(self) -> pl.DataFrame:
        schema = {key: pl.Utf8 for key in self.key_columns}
        sum_col, count_col, min_col, max_col, _ = self.agg_columns
        schema.update({
            sum_col: pl.Float64,
            count_col: pl.Int64,
            min_col: pl.Float64,
            max_col: pl.Float64,
            ROW_COUNT: pl.Int64,
        })
        return pl.DataFrame(schema=schema)

    def finalize(self) -> AggregationResult:
        """
        Derive the final per-key aggregates from what has been folded so far.

        Safe to call at any point; before all data is folded it simply
        reflects the rows seen so far.
        """
        self._compact()
        state = self._state if self._state is not None else self._empty_state()

        sum_col, count_col, min_col, max_col, _ = self.agg_columns
        mean_col = f"{self.value_column}_mean"

        frame = (
            state
            .with_columns(
                pl.when(pl.col(count_col) > 0)
                .then(pl.col(sum_col) / pl.col(count_col))
                .otherwise(None)
                .cast(pl.Float64)
                .alias(mean_col)
            )
            .select(self.key_columns + [mean_col, sum_col, count_col, min_col, max_col, ROW_COUNT])
            .sort(self.key_columns, nulls_last=True)
        )
        return AggregationResult(frame, self.key_columns, self.value_column)

    def __repr__(self):
        groups = 0 if self._state is None else self._state.height
        return (f"Aggregator(keys={self.key_columns}, value={self.value_column!r}, "
                f"rows={self.rows_folded:,}, batches={self.batches_folded}, "
                f"groups>={groups:,}, staged={len(self._staged)})")
