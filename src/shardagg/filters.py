"""
Partition filters - prune shards by their partition-key values

Filters use the same dict shape as query WHERE clauses:

    [{"col": "year", "op": "eq", "val": 2024},
     {"col": "month", "op": "between", "val": [1, 3]}]

All conditions must hold (AND). Supported ops: eq, ne, in, between,
gt, gte, lt, lte. Values are coerced the same way partition values
are, so "07" on the command line matches month=07 on disk.
"""

import math
import operator
from typing import Dict, Iterable, List, Sequence, Union

PartitionValue = Union[int, float, str]

_COMPARISONS = {
    'eq': operator.eq,
    'ne': operator.ne,
    'gt': operator.gt,
    'gte': operator.ge,
    'lt': operator.lt,
    'lte': operator.le,
}

SUPPORTED_OPS = tuple(_COMPARISONS) + ('in', 'between')

# Longest symbols first so ">=" is not read as ">"
_EXPRESSION_SYMBOLS = [
    ('!=', 'ne'),
    ('>=', 'gte'),
    ('<=', 'lte'),
    ('>', 'gt'),
    ('<', 'lt'),
    ('=', 'eq'),
]


def coerce_value(raw: object) -> PartitionValue:
    """Coerce a partition value to int, then float, else keep it as a string."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return raw
    text = str(raw)
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return text
    # "nan" and "inf" are names, not numbers, in a directory layout
    return number if math.isfinite(number) else text


def _compare(op: str, left: PartitionValue, right: PartitionValue) -> bool:
    try:
        return _COMPARISONS[op](left, right)
    except TypeError:
        # Mixed int/str values compare as text
        return _COMPARISONS[op](str(left), str(right))


class PartitionFilter:
    """
    Predicate over a shard's partition values built from filter dicts.

    Instances are plain callables so they can be passed anywhere a
    partition_filter predicate is accepted (and pickled for process pools).
    """

    def __init__(self, filters: Iterable[Dict]):
        self.filters: List[Dict] = []
        for f in filters:
            col, op, val = f.get('col'), f.get('op', 'eq'), f.get('val')
            if not col:
                raise ValueError(f"Filter is missing 'col': {f!r}")
            if op not in SUPPORTED_OPS:
                raise ValueError(f"Unsupported filter op {op!r} (supported: {', '.join(SUPPORTED_OPS)})")

            if op == 'between':
                if not isinstance(val, (list, tuple)) or len(val) != 2:
                    raise ValueError(f"'between' filter on {col!r} needs [low, high], got {val!r}")
                val = [coerce_value(v) for v in val]
            elif op == 'in':
                if isinstance(val, (str, bytes)) or not isinstance(val, Iterable):
                    raise ValueError(f"'in' filter on {col!r} needs a list of values, got {val!r}")
                val = [coerce_value(v) for v in val]
            else:
                val = coerce_value(val)

            self.filters.append({'col': col, 'op': op, 'val': val})

    @property
    def columns(self) -> List[str]:
        return [f['col'] for f in self.filters]

    def __call__(self, partition: Dict[str, PartitionValue]) -> bool:
        for f in self.filters:
            col, op, val = f['col'], f['op'], f['val']
            if col not in partition:
                return False
            actual = partition[col]

            if op == 'in':
                if not any(_compare('eq', actual, v) for v in val):
                    return False
            elif op == 'between':
                low, high = val
                if not (_compare('gte', actual, low) and _compare('lte', actual, high)):
                    return False
            elif not _compare(op, actual, val):
                return False

        return True

    def __repr__(self):
        conds = ', '.join(f"{f['col']} {f['op']} {f['val']!r}" for f in self.filters)
        return f"PartitionFilter({conds})"


def parse_filter_expression(expression: str) -> Dict:
    """
    Parse a command-line filter expression into a filter dict.

    Examples:
        "year=2024"        -> {"col": "year", "op": "eq", "val": 2024}
        "month=1,2,3"      -> {"col": "month", "op": "in", "val": [1, 2, 3]}
        "day=1..15"        -> {"col": "day", "op": "between", "val": [1, 15]}
        "region!=eu"       -> {"col": "region", "op": "ne", "val": "eu"}
        "year>=2023"       -> {"col": "year", "op": "gte", "val": 2023}
    """
    for symbol, op in _EXPRESSION_SYMBOLS:
        if symbol in expression:
            col, _, raw = expression.partition(symbol)
            col, raw = col.strip(), raw.strip()
            if not col or not raw:
                break

            if op == 'eq' and '..' in raw:
                low, _, high = raw.partition('..')
                return {'col': col, 'op': 'between', 'val': [coerce_value(low), coerce_value(high)]}
            if op == 'eq' and ',' in raw:
                return {'col': col, 'op': 'in', 'val': [coerce_value(v.strip()) for v in raw.split(',') if v.strip()]}
            return {'col': col, 'op': op, 'val': coerce_value(raw)}

    raise ValueError(f"Cannot parse filter expression: {expression!r} (expected e.g. 'year=2024')")


def build_partition_filter(expressions: Sequence[str]) -> PartitionFilter:
    """Compile a list of command-line expressions into one PartitionFilter."""
    return PartitionFilter([parse_filter_expression(e) for e in expressions])
