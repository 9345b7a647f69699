#!/usr/bin/env python3
"""
Shard Writer - Split a DataFrame into a partitioned shard tree

Directory structure (hive layout, partition_by=["year", "month"]):
    events/
        year=2024/
            month=1/
                part-0000.parquet
                part-0001.parquet
            month=2/
                part-0000.parquet
        ...

Key features:
- Parquet (snappy), Arrow IPC (LZ4) or CSV shards
- Partition columns are encoded in the path, not stored in the files
- Optional rows_per_file cap splits a partition into several parts
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import polars as pl

from .catalog import LAYOUTS

logger = logging.getLogger(__name__)

EXTENSIONS = {
    'parquet': '.parquet',
    'arrow': '.arrow',
    'csv': '.csv',
}


class ShardWriter:
    """
    Writes DataFrames as immutable shard files under a dataset root.
    """

    def __init__(
        self,
        output_dir: Union[str, Path],
        shard_format: str = 'parquet',
        layout: str = 'hive',
        compression: Optional[str] = None
    ):
        """
        Initialize shard writer.

        Args:
            output_dir: Dataset root to write into
            shard_format: "parquet", "arrow" or "csv"
            layout: "hive" (key=value dirs) or "directory" (bare values)
            compression: Codec override (snappy for Parquet, lz4 for Arrow)
        """
        if shard_format not in EXTENSIONS:
            raise ValueError(f"shard_format must be one of {list(EXTENSIONS)}, got {shard_format!r}")
        if layout not in LAYOUTS:
            raise ValueError(f"layout must be one of {LAYOUTS}, got {layout!r}")

        self.output_dir = Path(output_dir)
        self.shard_format = shard_format
        self.layout = layout
        self.compression = compression
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _partition_dir(self, keys: Sequence[str], values: Sequence[object]) -> Path:
        path = self.output_dir
        for key, value in zip(keys, values):
            if value is None:
                raise ValueError(f"Partition column {key!r} contains nulls; cannot encode in a path")
            path = path / (f"{key}={value}" if self.layout == 'hive' else str(value))
        return path

    def write_shard(self, df: pl.DataFrame, path: Path) -> Path:
        """
        Write one DataFrame as a single shard file.

        Args:
            df: Rows for this shard
            path: Output file path (extension is not changed)

        Returns:
            Path to written file
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        if self.shard_format == 'parquet':
            df.write_parquet(path, compression=self.compression or 'snappy')
        elif self.shard_format == 'arrow':
            df.write_ipc(path, compression=self.compression or 'lz4')
        else:
            df.write_csv(path)

        return path

    def write_dataset(
        self,
        df: pl.DataFrame,
        partition_by: Sequence[str] = (),
        rows_per_file: Optional[int] = None
    ) -> List[Path]:
        """
        Write a DataFrame as a partitioned shard tree.

        Row order within each partition is preserved.

        Args:
            df: Full dataset
            partition_by: Columns encoded in the directory path
            rows_per_file: Max rows per shard file (one file per partition if None)

        Returns:
            List of written shard paths, in write order
        """
        if rows_per_file is not None and rows_per_file <= 0:
            raise ValueError(f"rows_per_file must be positive, got {rows_per_file}")

        partition_by = list(partition_by)
        missing = [c for c in partition_by if c not in df.columns]
        if missing:
            raise ValueError(f"Partition columns not in DataFrame: {missing}")

        start_time = time.time()
        extension = EXTENSIONS[self.shard_format]

        if partition_by:
            partitions: Dict[tuple, pl.DataFrame] = df.partition_by(
                partition_by, as_dict=True, maintain_order=True, include_key=False
            )
        else:
            partitions = {(): df}

        written = []
        for values, part_df in partitions.items():
            if not isinstance(values, tuple):
                values = (values,)
            partition_dir = self._partition_dir(partition_by, values)

            if rows_per_file is None or part_df.height <= rows_per_file:
                slices = [part_df]
            else:
                slices = list(part_df.iter_slices(n_rows=rows_per_file))

            for i, slice_df in enumerate(slices):
                written.append(self.write_shard(slice_df, partition_dir / f"part-{i:04d}{extension}"))

        total_mb = sum(p.stat().st_size for p in written) / (1024 * 1024)
        logger.info(f"✅ Wrote {len(written)} {self.shard_format} shards "
                    f"({len(partitions)} partitions, {df.height:,} rows, {total_mb:.1f} MB) "
                    f"to {self.output_dir} in {time.time() - start_time:.2f}s")
        return written


def write_partitioned(
    df: pl.DataFrame,
    output_dir: Union[str, Path],
    partition_by: Sequence[str] = (),
    shard_format: str = 'parquet',
    layout: str = 'hive',
    rows_per_file: Optional[int] = None
) -> List[Path]:
    """Shortcut for ShardWriter(...).write_dataset(...)."""
    writer = ShardWriter(output_dir, shard_format=shard_format, layout=layout)
    return writer.write_dataset(df, partition_by=partition_by, rows_per_file=rows_per_file)
