#!/usr/bin/env python3
"""
Shard Catalog - Discover partitioned shard files on disk

This module walks a partitioned dataset directory and returns an ordered
list of shard descriptors (path + partition-key values).

Supported layouts:
    hive:       events/year=2024/month=1/part-0000.parquet
    directory:  events/2024/1/part-0000.parquet   (key names from the scheme)

Key features:
- Recognizes Parquet, Arrow IPC and CSV shards by extension
- Partition values coerced to int/float where possible
- Deterministic ordering (partition values, then path)
- Partition pruning before any shard is opened
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import CatalogError
from .filters import PartitionFilter, PartitionValue, coerce_value

logger = logging.getLogger(__name__)

# Map file extension -> shard format
SHARD_FORMATS = {
    '.parquet': 'parquet',
    '.arrow': 'arrow',
    '.ipc': 'arrow',
    '.feather': 'arrow',
    '.csv': 'csv',
}

LAYOUTS = ('hive', 'directory')


@dataclass(frozen=True)
class PartitionScheme:
    """
    How partition keys are encoded in the directory tree.

    Attributes:
        keys: Partition key names in nesting order (e.g. ["year", "month"])
        layout: "hive" (key=value directories) or "directory" (bare values)
    """
    keys: Tuple[str, ...] = ()
    layout: str = 'hive'

    def __post_init__(self):
        object.__setattr__(self, 'keys', tuple(self.keys))
        if self.layout not in LAYOUTS:
            raise ValueError(f"layout must be one of {LAYOUTS}, got {self.layout!r}")
        if self.layout == 'directory' and not self.keys:
            raise ValueError("directory layout needs the partition key names")

    @classmethod
    def hive(cls, *keys: str) -> "PartitionScheme":
        return cls(keys=keys, layout='hive')

    @classmethod
    def directory(cls, *keys: str) -> "PartitionScheme":
        return cls(keys=keys, layout='directory')

    def parse(self, parts: Sequence[str]) -> Optional[Dict[str, PartitionValue]]:
        """
        Parse the directory components between root and file into partition values.

        Returns None when the components do not match this scheme.
        """
        if self.layout == 'directory':
            if len(parts) != len(self.keys):
                return None
            return {key: coerce_value(value) for key, value in zip(self.keys, parts)}

        partition: Dict[str, PartitionValue] = {}
        for part in parts:
            key, sep, value = part.partition('=')
            if not sep or not key:
                return None
            partition[key] = coerce_value(value)

        # With explicit keys, the nesting must match exactly
        if self.keys and tuple(partition.keys()) != self.keys:
            return None
        return partition


@dataclass(frozen=True)
class ShardDescriptor:
    """One immutable shard file and the partition it belongs to."""
    path: Path
    partition: Dict[str, PartitionValue] = field(default_factory=dict)
    format: str = 'parquet'
    size_bytes: int = 0

    @property
    def name(self) -> str:
        """Short label for logs, e.g. "year=2024/month=1/part-0000.parquet"."""
        labels = [f"{k}={v}" for k, v in self.partition.items()]
        return "/".join(labels + [self.path.name])

    def __hash__(self):
        return hash(self.path)


def _sort_key(shard: ShardDescriptor):
    # Numbers sort before text at each position so mixed keys never raise
    values = tuple(
        (0, value, '') if isinstance(value, (int, float)) else (1, 0, str(value))
        for value in shard.partition.values()
    )
    return values, str(shard.path)


class ShardCatalog:
    """
    Enumerates shard files under a root directory.

    Usage:
        catalog = ShardCatalog("data/events", PartitionScheme.hive("year", "month"))
        for shard in catalog.shards():
            ...
    """

    def __init__(
        self,
        root: Union[str, Path],
        scheme: Optional[PartitionScheme] = None,
        partition_filter: Optional[Callable[[Dict[str, PartitionValue]], bool]] = None
    ):
        """
        Initialize shard catalog.

        Args:
            root: Dataset root directory
            scheme: Partitioning scheme (defaults to hive with any keys)
            partition_filter: Optional predicate over partition values
        """
        self.root = Path(root)
        self.scheme = scheme or PartitionScheme()
        self.partition_filter = partition_filter

    def discover(self) -> List[ShardDescriptor]:
        """
        List every shard matching the scheme, ignoring the partition filter.

        Raises:
            CatalogError: Root is missing or no shard file matches the scheme
        """
        if not self.root.exists():
            raise CatalogError(f"Dataset root not found: {self.root}")
        if not self.root.is_dir():
            raise CatalogError(f"Dataset root is not a directory: {self.root}")

        shards = []
        mismatched = 0

        for path in self.root.rglob('*'):
            if not path.is_file():
                continue
            relative = path.relative_to(self.root)
            if any(part.startswith(('.', '_')) for part in relative.parts):
                continue

            shard_format = SHARD_FORMATS.get(path.suffix.lower())
            if shard_format is None:
                continue

            partition = self.scheme.parse(relative.parts[:-1])
            if partition is None:
                mismatched += 1
                logger.warning(f"Skipping {relative}: does not match {self.scheme.layout} "
                               f"scheme {list(self.scheme.keys) or '(any keys)'}")
                continue

            shards.append(ShardDescriptor(
                path=path,
                partition=partition,
                format=shard_format,
                size_bytes=path.stat().st_size,
            ))

        if not shards:
            detail = f" ({mismatched} files did not match the scheme)" if mismatched else ""
            raise CatalogError(f"No shard files found under {self.root}{detail}")

        shards.sort(key=_sort_key)
        return shards

    def shards(self) -> List[ShardDescriptor]:
        """
        Ordered shards that pass the partition filter.

        A filter that excludes every shard returns an empty list.
        """
        discovered = self.discover()

        if isinstance(self.partition_filter, PartitionFilter):
            known = set(self.scheme.keys) or {k for s in discovered for k in s.partition}
            unknown = [col for col in self.partition_filter.columns if col not in known]
            if unknown:
                raise CatalogError(f"Partition filter references unknown keys {unknown} "
                                   f"(available: {sorted(known)})")

        if self.partition_filter is None:
            selected = discovered
        else:
            selected = [s for s in discovered if self.partition_filter(dict(s.partition))]

        total_mb = sum(s.size_bytes for s in selected) / (1024 * 1024)
        logger.info(f"Catalog {self.root}: {len(selected)}/{len(discovered)} shards selected "
                    f"({total_mb:.1f} MB)")
        return selected

    def partition_keys(self) -> List[str]:
        """Partition key names seen in the dataset, in nesting order."""
        if self.scheme.keys:
            return list(self.scheme.keys)
        keys: List[str] = []
        for shard in self.discover():
            for key in shard.partition:
                if key not in keys:
                    keys.append(key)
        return keys
