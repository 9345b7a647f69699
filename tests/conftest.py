"""Shared fixtures: small partitioned datasets written with ShardWriter."""

import random
from pathlib import Path

import polars as pl
import pytest

from shardagg import ShardWriter


def make_events(n_rows: int, seed: int = 7) -> pl.DataFrame:
    """Deterministic synthetic events: region/year/month keys and a price value."""
    rng = random.Random(seed)
    regions = ['eu', 'jp', 'us', 'br']
    return pl.DataFrame({
        'year': [2023 + (i % 2) for i in range(n_rows)],
        'month': [1 + (i % 4) for i in range(n_rows)],
        'region': [rng.choice(regions) for _ in range(n_rows)],
        # Whole numbers keep float sums exact regardless of merge order
        'price': [float(rng.randint(0, 500)) for _ in range(n_rows)],
    })


@pytest.fixture
def scenario_root(tmp_path: Path) -> Path:
    """Three shards: {A:1, A:3} / {B:10} / {A:2}."""
    df = pl.DataFrame({
        'shard': [1, 1, 2, 3],
        'k': ['A', 'A', 'B', 'A'],
        'v': [1.0, 3.0, 10.0, 2.0],
    })
    root = tmp_path / 'scenario'
    ShardWriter(root).write_dataset(df, partition_by=['shard'])
    return root


@pytest.fixture
def events() -> pl.DataFrame:
    return make_events(1_000)


@pytest.fixture
def events_root(tmp_path: Path, events: pl.DataFrame) -> Path:
    """Events partitioned by year/month, several part files per partition."""
    root = tmp_path / 'events'
    ShardWriter(root).write_dataset(events, partition_by=['year', 'month'], rows_per_file=40)
    return root
