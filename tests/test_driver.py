"""End-to-end tests for Driver runs over shard trees on disk."""

from pathlib import Path

import polars as pl
import pytest

from shardagg import (
    AggregationCancelled,
    AggregationConfig,
    Aggregator,
    CatalogError,
    Driver,
    DriverState,
    PartitionScheme,
    ReadError,
    ShardWriter,
    aggregate,
)
from shardagg.driver import assign_lanes

from .conftest import make_events


def _run(root: Path, keys, value: str, **options) -> Driver:
    driver = Driver(root, keys, value, config=AggregationConfig(**options))
    driver.result = driver.run()
    return driver


def _one_pass(df: pl.DataFrame, keys, value: str):
    agg = Aggregator(keys, value)
    agg.fold(df)
    return agg.finalize()


class TestScenario:

    @pytest.mark.parametrize('executor', ['serial', 'threads'])
    def test_three_shards(self, scenario_root: Path, executor: str) -> None:
        driver = _run(scenario_root, 'k', 'v', batch_size=1, parallelism=2, executor=executor)
        assert driver.result.to_dict() == {'A': 2.0, 'B': 10.0}
        assert driver.state is DriverState.FINALIZED
        assert driver.stats.shards == 3
        assert driver.stats.rows == 4
        assert driver.stats.groups == 2

    def test_more_lanes_than_shards(self, scenario_root: Path) -> None:
        driver = _run(scenario_root, 'k', 'v', parallelism=8)
        assert driver.stats.lanes == 3
        assert driver.result.to_dict() == {'A': 2.0, 'B': 10.0}

    def test_group_by_partition_key(self, scenario_root: Path) -> None:
        driver = _run(scenario_root, ['shard', 'k'], 'v', parallelism=1)
        assert driver.result.to_dict() == {(1, 'A'): 2.0, (2, 'B'): 10.0, (3, 'A'): 2.0}


class TestEquivalence:

    @pytest.mark.parametrize('parallelism', [1, 2, 3, 8])
    @pytest.mark.parametrize('executor', ['serial', 'threads'])
    def test_parallel_equals_sequential(self, events_root: Path, parallelism: int, executor: str) -> None:
        sequential = _run(events_root, 'region', 'price', batch_size=7, parallelism=1).result
        parallel = _run(events_root, 'region', 'price', batch_size=7,
                        parallelism=parallelism, executor=executor).result
        assert parallel == sequential

    def test_process_pool(self, events_root: Path) -> None:
        sequential = _run(events_root, 'region', 'price', parallelism=1).result
        parallel = _run(events_root, 'region', 'price', parallelism=2, executor='processes')
        assert parallel.stats.executor == 'processes'
        assert parallel.result == sequential

    @pytest.mark.parametrize('rows_per_file', [1, 17, 100, 1_000])
    @pytest.mark.parametrize('batch_size', [1, 16, 65_536])
    def test_sharding_round_trip(self, tmp_path: Path, rows_per_file: int, batch_size: int) -> None:
        events = make_events(120, seed=rows_per_file)
        ShardWriter(tmp_path).write_dataset(events, rows_per_file=rows_per_file)
        result = _run(tmp_path, 'region', 'price', batch_size=batch_size, parallelism=3).result
        assert result == _one_pass(events, 'region', 'price')

    def test_partition_keys_round_trip(self, events_root: Path, events: pl.DataFrame) -> None:
        result = _run(events_root, ['year', 'month', 'region'], 'price', parallelism=4).result
        expected = _one_pass(events, ['year', 'month', 'region'], 'price')
        for metric in ('mean', 'sum', 'count', 'min', 'max', 'rows'):
            assert result.to_dict(metric) == expected.to_dict(metric)

    def test_counts_sum_to_total_rows(self, events_root: Path, events: pl.DataFrame) -> None:
        driver = _run(events_root, 'region', 'price', batch_size=64, parallelism=3)
        assert sum(driver.result.to_dict('rows').values()) == events.height
        assert driver.stats.rows == events.height


class TestBatching:

    def test_exact_multiple_has_no_extra_batch(self, tmp_path: Path) -> None:
        ShardWriter(tmp_path).write_dataset(make_events(12))
        driver = _run(tmp_path, 'region', 'price', batch_size=4, parallelism=1)
        assert driver.stats.batches == 3
        assert driver.stats.rows == 12

    def test_final_partial_batch(self, tmp_path: Path) -> None:
        ShardWriter(tmp_path).write_dataset(make_events(13))
        driver = _run(tmp_path, 'region', 'price', batch_size=4, parallelism=1)
        assert driver.stats.batches == 4


class TestEmptyAndFiltered:

    def test_filter_excluding_all_shards(self, events_root: Path) -> None:
        driver = _run(events_root, 'region', 'price',
                      partition_filter=[{'col': 'year', 'op': 'eq', 'val': 1999}])
        assert driver.result.is_empty
        assert driver.result.to_dict() == {}
        assert driver.state is DriverState.FINALIZED
        assert driver.stats.shards == 0

    def test_filter_selects_partitions(self, events_root: Path, events: pl.DataFrame) -> None:
        driver = _run(events_root, 'region', 'price', parallelism=2,
                      partition_filter=[{'col': 'month', 'op': 'in', 'val': [1, 2]}])
        subset = events.filter(pl.col('month').is_in([1, 2]))
        assert driver.result == _one_pass(subset, 'region', 'price')

    def test_callable_filter(self, events_root: Path) -> None:
        driver = _run(events_root, 'year', 'price', partition_filter=lambda p: p['year'] == 2024)
        assert list(driver.result.to_dict()) == [2024]


class TestFailures:

    def test_missing_root(self, tmp_path: Path) -> None:
        driver = Driver(tmp_path / 'missing', 'k', 'v', config=AggregationConfig(parallelism=1))
        with pytest.raises(CatalogError):
            driver.run()
        assert driver.state is DriverState.FAILED

    def test_unknown_filter_key(self, scenario_root: Path) -> None:
        config = AggregationConfig(partition_filter=[{'col': 'region', 'op': 'eq', 'val': 'eu'}])
        driver = Driver(scenario_root, 'k', 'v', config=config)
        with pytest.raises(CatalogError):
            driver.run()
        assert driver.state is DriverState.FAILED

    @pytest.mark.parametrize('executor', ['serial', 'threads'])
    def test_corrupt_shard_aborts_run(self, events_root: Path, executor: str) -> None:
        victim = sorted(events_root.rglob('*.parquet'))[3]
        victim.write_bytes(b'PAR1 this is not a parquet file')
        driver = Driver(events_root, 'region', 'price',
                        config=AggregationConfig(parallelism=4, executor=executor))
        with pytest.raises(ReadError) as excinfo:
            driver.run()
        assert excinfo.value.path == victim
        assert str(victim) in str(excinfo.value)
        assert driver.state is DriverState.FAILED

    def test_missing_value_column(self, scenario_root: Path) -> None:
        driver = Driver(scenario_root, 'k', 'price', config=AggregationConfig(parallelism=2))
        with pytest.raises(ReadError, match='price'):
            driver.run()
        assert driver.state is DriverState.FAILED

    def test_filter_that_raises(self, scenario_root: Path) -> None:
        config = AggregationConfig(partition_filter=lambda p: p['region'] == 'eu')
        driver = Driver(scenario_root, 'k', 'v', config=config)
        with pytest.raises(KeyError):
            driver.run()
        assert driver.state is DriverState.FAILED

    @pytest.mark.parametrize('executor', ['serial', 'threads'])
    def test_unexpected_fold_error(self, scenario_root: Path, monkeypatch, executor: str) -> None:
        def broken_fold(self, batch):
            raise RuntimeError('fold exploded')

        monkeypatch.setattr(Aggregator, 'fold', broken_fold)
        driver = Driver(scenario_root, 'k', 'v', config=AggregationConfig(parallelism=2, executor=executor))
        with pytest.raises(RuntimeError, match='fold exploded'):
            driver.run()
        assert driver.state is DriverState.FAILED

    def test_driver_runs_once(self, scenario_root: Path) -> None:
        driver = _run(scenario_root, 'k', 'v', parallelism=1)
        with pytest.raises(RuntimeError):
            driver.run()


class TestPartitionOnlyColumns:

    @pytest.mark.parametrize('shard_format', ['parquet', 'arrow', 'csv'])
    def test_key_and_value_from_partitions(self, tmp_path: Path, shard_format: str) -> None:
        df = pl.DataFrame({'year': [2023, 2023, 2024], 'month': [1, 2, 1], 'v': [1.0, 2.0, 3.0]})
        ShardWriter(tmp_path, shard_format=shard_format).write_dataset(df, partition_by=['year', 'month'])
        driver = _run(tmp_path, 'year', 'month', batch_size=1, parallelism=2)
        assert driver.result.to_dict('rows') == {2023: 2, 2024: 1}
        assert driver.result.to_dict() == {2023: 1.5, 2024: 1.0}
        assert driver.stats.rows == 3


class TestCsvKeyTypes:

    def test_numeric_looking_keys_stay_one_group(self, tmp_path: Path) -> None:
        for part, body in ((1, 'zip,v\n02134,1\n02134,3\n'), (2, 'zip,v\n02134,5\nx1,7\n')):
            shard_dir = tmp_path / f'p={part}'
            shard_dir.mkdir()
            (shard_dir / 'part-0000.csv').write_text(body)

        driver = _run(tmp_path, 'zip', 'v', parallelism=2)
        assert driver.result.to_dict() == {'02134': 3.0, 'x1': 7.0}
        assert driver.result.to_dict('rows') == {'02134': 3, 'x1': 1}


class TestCancellation:

    def test_cancel_before_run(self, scenario_root: Path) -> None:
        driver = Driver(scenario_root, 'k', 'v', config=AggregationConfig(parallelism=1))
        driver.cancel()
        with pytest.raises(AggregationCancelled):
            driver.run()
        assert driver.state is DriverState.CANCELLED
        assert driver.cancelled

    def test_cancel_mid_run_stops_new_reads(self, scenario_root: Path, monkeypatch) -> None:
        driver = Driver(scenario_root, 'k', 'v', config=AggregationConfig(batch_size=1, parallelism=1))
        folds = []
        original_fold = Aggregator.fold

        def fold_then_cancel(self, batch):
            original_fold(self, batch)
            folds.append(len(batch))
            driver.cancel()

        monkeypatch.setattr(Aggregator, 'fold', fold_then_cancel)
        with pytest.raises(AggregationCancelled):
            driver.run()
        # The in-flight fold completed; no further batch was read
        assert folds == [1]
        assert driver.state is DriverState.CANCELLED

    def test_cancel_with_thread_pool(self, events_root: Path, monkeypatch) -> None:
        driver = Driver(events_root, 'region', 'price',
                        config=AggregationConfig(batch_size=1, parallelism=3, executor='threads'))
        started, finished, merges = [], [], []
        original_fold = Aggregator.fold

        def fold_then_cancel(self, batch):
            started.append(len(batch))
            original_fold(self, batch)
            finished.append(len(batch))
            driver.cancel()

        def record_merge(self, other):
            merges.append(other)
            raise AssertionError('partial accumulators must not be merged')

        monkeypatch.setattr(Aggregator, 'fold', fold_then_cancel)
        monkeypatch.setattr(Aggregator, 'merge', record_merge)
        with pytest.raises(AggregationCancelled):
            driver.run()

        assert driver.state is DriverState.CANCELLED
        # Every fold that started ran to completion, and each lane stopped
        # reading after its first batch at most
        assert len(started) == len(finished)
        assert set(finished) == {1}
        assert 1 <= len(finished) <= 3
        assert merges == []


class TestLanes:

    def test_round_robin(self) -> None:
        assert assign_lanes(list('abcde'), 2) == [['a', 'c', 'e'], ['b', 'd']]

    def test_never_more_lanes_than_shards(self) -> None:
        assert assign_lanes(list('ab'), 8) == [['a'], ['b']]

    def test_no_shards(self) -> None:
        assert assign_lanes([], 4) == []


def test_aggregate_shortcut(scenario_root: Path) -> None:
    result = aggregate(scenario_root, 'k', 'v', batch_size=2, parallelism=2)
    assert result.to_dict() == {'A': 2.0, 'B': 10.0}


def test_config_from_environment(scenario_root: Path, monkeypatch) -> None:
    monkeypatch.setenv('SHARDAGG_PARALLELISM', '1')
    monkeypatch.setenv('SHARDAGG_BATCH_SIZE', '1')
    driver = Driver(scenario_root, 'k', 'v')
    driver.run()
    assert driver.stats.executor == 'serial'
    assert driver.stats.batches == 4


def test_directory_layout(tmp_path: Path, events: pl.DataFrame) -> None:
    ShardWriter(tmp_path, layout='directory').write_dataset(events, partition_by=['year'])
    driver = Driver(tmp_path, ['year'], 'price',
                    scheme=PartitionScheme.directory('year'),
                    config=AggregationConfig(parallelism=2))
    result = driver.run()
    assert result.to_dict('rows') == _one_pass(events, 'year', 'price').to_dict('rows')
