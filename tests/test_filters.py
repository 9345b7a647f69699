"""Tests for partition filters and filter expressions."""

import pytest

from shardagg.filters import (
    PartitionFilter,
    build_partition_filter,
    coerce_value,
    parse_filter_expression,
)


class TestCoerceValue:

    def test_integers_and_floats(self) -> None:
        assert coerce_value('2024') == 2024
        assert coerce_value('07') == 7
        assert coerce_value('1.5') == 1.5

    def test_text_stays_text(self) -> None:
        assert coerce_value('eu-west') == 'eu-west'
        assert coerce_value('nan') == 'nan'
        assert coerce_value('inf') == 'inf'


class TestParseFilterExpression:

    def test_equality(self) -> None:
        assert parse_filter_expression('year=2024') == {'col': 'year', 'op': 'eq', 'val': 2024}

    def test_in_list(self) -> None:
        assert parse_filter_expression('month=1,2,3') == {'col': 'month', 'op': 'in', 'val': [1, 2, 3]}

    def test_between(self) -> None:
        assert parse_filter_expression('day=1..15') == {'col': 'day', 'op': 'between', 'val': [1, 15]}

    def test_comparisons(self) -> None:
        assert parse_filter_expression('region!=eu')['op'] == 'ne'
        assert parse_filter_expression('year>=2023') == {'col': 'year', 'op': 'gte', 'val': 2023}
        assert parse_filter_expression('year<2023')['op'] == 'lt'

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_filter_expression('year')
        with pytest.raises(ValueError):
            parse_filter_expression('=2024')


class TestPartitionFilter:

    def test_all_conditions_must_hold(self) -> None:
        f = PartitionFilter([
            {'col': 'year', 'op': 'eq', 'val': 2024},
            {'col': 'month', 'op': 'between', 'val': [2, 3]},
        ])
        assert f({'year': 2024, 'month': 2})
        assert f({'year': 2024, 'month': 3})
        assert not f({'year': 2024, 'month': 4})
        assert not f({'year': 2023, 'month': 2})

    def test_in_and_string_values_are_coerced(self) -> None:
        f = PartitionFilter([{'col': 'month', 'op': 'in', 'val': ['01', '02']}])
        assert f({'month': 1})
        assert not f({'month': 3})

    def test_missing_key_does_not_match(self) -> None:
        f = PartitionFilter([{'col': 'year', 'op': 'eq', 'val': 2024}])
        assert not f({'month': 1})

    def test_mixed_types_compare_as_text(self) -> None:
        f = PartitionFilter([{'col': 'region', 'op': 'gt', 'val': 5}])
        assert f({'region': 'eu'})

    def test_invalid_filters(self) -> None:
        with pytest.raises(ValueError):
            PartitionFilter([{'col': 'year', 'op': 'like', 'val': 1}])
        with pytest.raises(ValueError):
            PartitionFilter([{'op': 'eq', 'val': 1}])
        with pytest.raises(ValueError):
            PartitionFilter([{'col': 'year', 'op': 'between', 'val': 1}])
        with pytest.raises(ValueError):
            PartitionFilter([{'col': 'year', 'op': 'in', 'val': '2024'}])

    def test_build_from_expressions(self) -> None:
        f = build_partition_filter(['year=2024', 'month=1..2'])
        assert f.columns == ['year', 'month']
        assert f({'year': 2024, 'month': 1})
        assert not f({'year': 2024, 'month': 3})
