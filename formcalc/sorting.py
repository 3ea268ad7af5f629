import locale
import math
import re
from functools import cmp_to_key

# Leading numeric prefix, the way JavaScript's parseFloat reads "12kg" as 12
_FLOAT_PREFIX_RE = re.compile(r'^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?')


def parse_float(value):
    """Return the numeric value of ``value`` or None when it does not start with a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if not math.isnan(number) else None
    m = _FLOAT_PREFIX_RE.match(str(value))
    if not m:
        return None
    return float(m.group(0))


def _is_missing(value):
    if value is None or value == '':
        return True
    return isinstance(value, float) and math.isnan(value)


def compare_values(a, b, collate=None):
    """
    Compare two cells ascending: numerically when both parse, else as strings.

    Strings go through ``collate`` (a strcoll-style function returning
    <0, 0 or >0), ``locale.strcoll`` by default. The library never calls
    ``locale.setlocale``: unless the host program has set LC_COLLATE,
    strcoll runs in the "C" locale and orders by code point, so Chinese
    text is not ordered by pinyin. Pass a collation function (for
    example one built on PyICU) when that matters.

    Missing values are not handled here; callers put them last.
    """
    na, nb = parse_float(a), parse_float(b)
    if na is not None and nb is not None:
        return (na > nb) - (na < nb)
    sa, sb = str(a), str(b)
    result = (collate or locale.strcoll)(sa, sb)
    if result == 0:
        return (sa > sb) - (sa < sb)
    return (result > 0) - (result < 0)


def _row_comparator(sort_orders, collate):
    def compare(row_a, row_b):
        for order in sort_orders:
            a, b = row_a.get(order.field), row_b.get(order.field)
            missing_a, missing_b = _is_missing(a), _is_missing(b)
            if missing_a or missing_b:
                if missing_a and missing_b:
                    continue
                # Missing values go last whatever the direction
                return 1 if missing_a else -1
            result = compare_values(a, b, collate)
            if result:
                return -result if order.direction == 'desc' else result
        return 0
    return compare


def sort_rows(rows, sort_orders, max_keys=3, collate=None):
    """
    Sort rows by up to ``max_keys`` SortSpecs (primary, secondary, tertiary).

    The sort is stable: rows that tie on every key keep their order.
    ``collate`` overrides the string comparison, see compare_values.
    """
    orders = [o for o in (sort_orders or []) if o.field][:max_keys]
    if not orders:
        return list(rows)
    return sorted(rows, key=cmp_to_key(_row_comparator(orders, collate)))
