#!/usr/bin/env python3
"""
Chunked Reader - Stream fixed-size row batches out of one shard

Uses PyArrow's streaming readers so a shard is never loaded whole:
- Parquet: ParquetFile.iter_batches (row-group aware)
- Arrow IPC: memory-mapped file reader (stream format also accepted)
- CSV: pyarrow.csv.open_csv block reader

Source record batches are re-chunked so every batch except the last holds
exactly batch_size rows. Each batch is handed out as a Polars DataFrame
(zero-copy from Arrow).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

import polars as pl
import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.ipc as ipc
import pyarrow.parquet as pq

from .catalog import ShardDescriptor
from .errors import ReadError

logger = logging.getLogger(__name__)

# CSV block size in bytes; each block becomes one source record batch
CSV_BLOCK_SIZE = 16 * 1024 * 1024


@dataclass
class RowBatch:
    """
    Ordered rows read from one shard.

    Attributes:
        shard: Shard the rows came from
        offset: Row offset of the first row within the shard
        frame: The rows themselves
    """
    shard: ShardDescriptor
    offset: int
    frame: pl.DataFrame

    def __len__(self):
        return self.frame.height

    @property
    def end_offset(self) -> int:
        return self.offset + self.frame.height


def rebatch(source: Iterable[pa.RecordBatch], batch_size: int) -> Iterator[pa.Table]:
    """
    Re-chunk a stream of record batches into tables of exactly batch_size rows.

    The final table may be shorter. Empty source batches are dropped, so a
    stream whose length is an exact multiple of batch_size ends without an
    extra empty table.
    """
    pending: List[pa.RecordBatch] = []
    pending_rows = 0

    for record_batch in source:
        if record_batch.num_rows == 0:
            continue
        pending.append(record_batch)
        pending_rows += record_batch.num_rows

        while pending_rows >= batch_size:
            table = pa.Table.from_batches(pending)
            yield table.slice(0, batch_size)
            rest = table.slice(batch_size)
            pending = [b for b in rest.to_batches() if b.num_rows]
            pending_rows = rest.num_rows

    if pending_rows:
        yield pa.Table.from_batches(pending)


class ChunkedReader:
    """
    Reads shards as a lazy sequence of RowBatches.

    One reader can read many shards, one after another; each call to
    read() returns a fresh, non-restartable generator.
    """

    def __init__(
        self,
        batch_size: int,
        columns: Optional[Sequence[str]] = None,
        csv_block_size: int = CSV_BLOCK_SIZE,
        column_types: Optional[Dict[str, pa.DataType]] = None
    ):
        """
        Initialize chunked reader.

        Args:
            batch_size: Maximum rows per RowBatch
            columns: Columns to read (all columns if None); every listed
                column must exist in the shard
            csv_block_size: Bytes per CSV read block
            column_types: Fixed CSV column types; other CSV columns are
                inferred per shard
        """
        if not isinstance(batch_size, int) or batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {batch_size!r}")
        self.batch_size = batch_size
        self.columns = list(columns) if columns is not None else None
        self.csv_block_size = csv_block_size
        self.column_types = dict(column_types or {})

    def read(self, shard: ShardDescriptor) -> Iterator[RowBatch]:
        """
        Stream a shard as RowBatches in on-disk row order.

        Nothing is opened until the first batch is requested.

        Raises:
            ReadError: Shard is malformed, truncated or missing a column
        """
        offset = 0
        pending_rows = 0

        def _counted(source: Iterable[pa.RecordBatch]) -> Iterator[pa.RecordBatch]:
            nonlocal pending_rows
            for record_batch in source:
                pending_rows += record_batch.num_rows
                yield record_batch

        try:
            source = self._open(shard)
            for table in rebatch(_counted(source), self.batch_size):
                frame = pl.from_arrow(table)
                batch = RowBatch(shard=shard, offset=offset, frame=frame)
                offset += table.num_rows
                pending_rows -= table.num_rows
                yield batch
        except ReadError:
            raise
        except (pa.ArrowException, OSError, pl.exceptions.PolarsError) as e:
            raise ReadError(str(e), shard.path, row_offset=offset + pending_rows) from e

        logger.debug(f"Read {shard.name}: {offset:,} rows")

    def _open(self, shard: ShardDescriptor) -> Iterator[pa.RecordBatch]:
        if shard.format == 'parquet':
            return self._open_parquet(shard)
        if shard.format == 'arrow':
            return self._open_arrow(shard)
        if shard.format == 'csv':
            return self._open_csv(shard)
        raise ReadError(f"Unsupported shard format {shard.format!r}", shard.path)

    def _select_columns(self, shard: ShardDescriptor, available: Sequence[str]) -> Optional[List[str]]:
        if self.columns is None:
            return None
        missing = [c for c in self.columns if c not in available]
        if missing:
            raise ReadError(f"Missing required columns {missing} (available: {list(available)})",
                            shard.path)
        if not self.columns:
            # Zero-column batches lose their row count; keep one column to carry it
            return list(available[:1])
        return self.columns

    def _open_parquet(self, shard: ShardDescriptor) -> Iterator[pa.RecordBatch]:
        with pq.ParquetFile(shard.path) as parquet_file:
            columns = self._select_columns(shard, parquet_file.schema_arrow.names)
            yield from parquet_file.iter_batches(
                batch_size=self.batch_size,
                columns=columns,
            )

    def _open_arrow(self, shard: ShardDescriptor) -> Iterator[pa.RecordBatch]:
        with pa.memory_map(str(shard.path), 'r') as source:
            try:
                reader = ipc.open_file(source)
            except pa.ArrowInvalid:
                # Not the random-access file format; try the streaming format
                source.seek(0)
                reader = ipc.open_stream(source)
                columns = self._select_columns(shard, reader.schema.names)
                for record_batch in reader:
                    yield _project(record_batch, columns)
                return

            columns = self._select_columns(shard, reader.schema.names)
            for i in range(reader.num_record_batches):
                yield _project(reader.get_batch(i), columns)

    def _open_csv(self, shard: ShardDescriptor) -> Iterator[pa.RecordBatch]:
        reader = pacsv.open_csv(
            shard.path,
            read_options=pacsv.ReadOptions(block_size=self.csv_block_size),
            convert_options=pacsv.ConvertOptions(
                column_types=self.column_types,
                strings_can_be_null=True,
            ),
        )
        try:
            columns = self._select_columns(shard, reader.schema.names)
            for record_batch in reader:
                yield _project(record_batch, columns)
        finally:
            reader.close()


def _project(record_batch: pa.RecordBatch, columns: Optional[List[str]]) -> pa.RecordBatch:
    if columns is None:
        return record_batch
    return pa.RecordBatch.from_arrays(
        [record_batch.column(name) for name in columns],
        names=columns,
    )
