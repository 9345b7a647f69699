"""
Run configuration for the aggregation driver.

Options come from keyword arguments, SHARDAGG_* environment variables,
or CLI flags (which override the environment).
"""

import os
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Union

from .filters import PartitionFilter

# Environment variables recognized by AggregationConfig.from_env()
BATCH_SIZE_ENV = "SHARDAGG_BATCH_SIZE"
PARALLELISM_ENV = "SHARDAGG_PARALLELISM"
EXECUTOR_ENV = "SHARDAGG_EXECUTOR"
COMPACT_EVERY_ENV = "SHARDAGG_COMPACT_EVERY"

DEFAULT_BATCH_SIZE = 65_536
DEFAULT_COMPACT_EVERY = 16

EXECUTORS = ("serial", "threads", "processes")

PartitionPredicate = Callable[[Dict[str, object]], bool]


def _default_parallelism() -> int:
    return os.cpu_count() or 1


@dataclass
class AggregationConfig:
    """
    Options for one aggregation run.

    Attributes:
        batch_size: Rows per read chunk
        parallelism: Number of worker lanes
        partition_filter: Predicate over a shard's partition values, or a list
            of filter dicts ({"col", "op", "val"}) compiled into one
        executor: "serial", "threads" or "processes" (None picks automatically)
        compact_every: Folds staged before compacting into the running state
    """
    batch_size: int = DEFAULT_BATCH_SIZE
    parallelism: int = field(default_factory=_default_parallelism)
    partition_filter: Optional[Union[PartitionPredicate, List[Dict]]] = None
    executor: Optional[str] = None
    compact_every: int = DEFAULT_COMPACT_EVERY

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not isinstance(self.parallelism, int) or self.parallelism <= 0:
            raise ValueError(f"parallelism must be a positive integer, got {self.parallelism!r}")
        if not isinstance(self.compact_every, int) or self.compact_every <= 0:
            raise ValueError(f"compact_every must be a positive integer, got {self.compact_every!r}")
        if self.executor is not None:
            self.executor = self.executor.lower()
            if self.executor not in EXECUTORS:
                raise ValueError(f"executor must be one of {EXECUTORS}, got {self.executor!r}")
        if isinstance(self.partition_filter, list):
            self.partition_filter = PartitionFilter(self.partition_filter)

    @property
    def resolved_executor(self) -> str:
        """Executor actually used: explicit choice, else serial for one lane, else threads."""
        if self.executor is not None:
            return self.executor
        if self.parallelism == 1:
            return "serial"
        return "threads"

    def with_overrides(self, **overrides) -> "AggregationConfig":
        """Copy of this config with non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "AggregationConfig":
        """
        Build a config from SHARDAGG_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Explicit values that win over the environment

        Returns:
            AggregationConfig
        """
        env = os.environ if environ is None else environ
        values = {}

        def _int(name: str) -> Optional[int]:
            raw = env.get(name, "").strip()
            if not raw:
                return None
            try:
                return int(raw.replace("_", ""))
            except ValueError:
                raise ValueError(f"{name} must be an integer, got {raw!r}") from None

        for key, env_name in (
            ('batch_size', BATCH_SIZE_ENV),
            ('parallelism', PARALLELISM_ENV),
            ('compact_every', COMPACT_EVERY_ENV),
        ):
            value = _int(env_name)
            if value is not None:
                values[key] = value

        executor = env.get(EXECUTOR_ENV, "").strip()
        if executor:
            values['executor'] = executor

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
