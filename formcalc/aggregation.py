import logging
from itertools import zip_longest

import numpy as np
import pandas as pd

from formcalc.config import resolve_settings
from formcalc.expression import to_number

logger = logging.getLogger(__name__)

COUNT_COLUMN = '__count__'

_PANDAS_FUNCS = {'SUM': 'sum', 'AVG': 'mean', 'MAX': 'max', 'MIN': 'min'}


def lookup(raw, field_id, field_name=None):
    """Cell value by field id, falling back to the field name (older rows were keyed by name)."""
    value = raw.get(field_id)
    if value is None and field_name:
        value = raw.get(field_name)
    return value


def join_rows(rows_by_form, form_order=None):
    """
    Join the rows of several forms positionally.

    Row i of the result merges row i of every form, in ``form_order``;
    forms with fewer rows simply contribute nothing to the later rows.

    Args:
        rows_by_form: dict form_id -> list of rows, or a list of row lists.
        form_order: form ids giving the merge order when a dict is passed.

    Returns:
        list of merged row dicts.
    """
    if isinstance(rows_by_form, dict):
        order = list(form_order) if form_order else list(rows_by_form)
        row_lists = [rows_by_form.get(form_id) or [] for form_id in order]
    else:
        row_lists = [rows or [] for rows in rows_by_form]

    joined = []
    for group in zip_longest(*row_lists):
        merged = {}
        for row in group:
            if row:
                merged.update(row)
        joined.append(merged)
    return joined


def project_rows(joined_rows, selected_fields):
    """One output cell per selected field, keyed by field name."""
    return [
        {f.field_name: lookup(raw, f.field_id, f.field_name) for f in selected_fields}
        for raw in joined_rows
    ]


def _group_codes(rows, keys):
    """
    Group number per row, numbered in order of first appearance.

    Missing key values form their own group (dropna=False).
    """
    if not keys or not rows:
        return np.zeros(len(rows), dtype=int)
    frame = pd.DataFrame({f"k{i}": [r.get(key) for r in rows] for i, key in enumerate(keys)})
    frame = frame.astype(object)
    codes = frame.groupby(list(frame.columns), sort=False, dropna=False).ngroup().to_numpy()
    # Older pandas numbers the missing-key group last; renumber by first appearance
    renumbered = {}
    return np.array([renumbered.setdefault(int(c), len(renumbered)) for c in codes], dtype=int)


def _first_indices(codes):
    first = {}
    for idx, code in enumerate(codes):
        first.setdefault(int(code), idx)
    return [first[c] for c in sorted(first)]


def aggregate(joined_rows, projected_rows, group_keys, aggregations, settings=None):
    """
    Reduce projected rows to one row per group.

    SUM / AVG / MAX / MIN read the aggregated field from the joined raw row
    and coerce it to float (parse failures count as 0); COUNT counts rows
    whatever their content.

    Args:
        joined_rows: raw rows (field id -> value), aligned with projected_rows.
        projected_rows: rows keyed by selected field name.
        group_keys: column names to group by; [] puts every row in one group.
        aggregations: list of AggregationSpec.
        settings: EngineSettings for the aggregate column labels.

    Returns:
        list of group rows: group key values, one column per aggregation
        ("{fieldName}_{label}", unrounded) and the group's row count.
    """
    settings = resolve_settings(settings)
    if not projected_rows:
        return []

    codes = _group_codes(projected_rows, group_keys)
    firsts = _first_indices(codes)
    logger.debug("[GROUP] %d rows -> %d groups by %s", len(projected_rows), len(firsts), group_keys)

    values = pd.DataFrame({
        f"v{j}": [to_number(lookup(raw, agg.field_id, agg.field_name)) for raw in joined_rows]
        for j, agg in enumerate(aggregations)
    }, index=range(len(joined_rows)))
    grouped = values.groupby(codes, sort=True)
    sizes = grouped.size()

    reduced = {}
    for j, agg in enumerate(aggregations):
        if agg.function == 'COUNT':
            reduced[j] = sizes
        else:
            reduced[j] = grouped[f"v{j}"].agg(_PANDAS_FUNCS[agg.function])

    out = []
    for code, first_idx in enumerate(firsts):
        row = {key: projected_rows[first_idx].get(key) for key in group_keys}
        for j, agg in enumerate(aggregations):
            column = settings.aggregate_column(agg.field_name, agg.function)
            value = reduced[j].loc[code]
            row[column] = int(value) if agg.function == 'COUNT' else _finite(value)
        row[COUNT_COLUMN] = int(sizes.loc[code])
        out.append(row)
    return out


def _finite(value):
    try:
        value = float(value)
    except OverflowError:
        return 0.0
    return value if np.isfinite(value) else 0.0


def _is_numeric(value):
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)


def regroup(base_rows, group_keys, removed_keys, aggregations=(), settings=None):
    """
    Re-summarize already aggregated rows over a reduced set of group keys.

    Operates on the materialized group rows only, the raw data is not needed:
        - SUM and COUNT columns (and any other numeric column) are summed
        - MAX / MIN columns take the max / min of the group values
        - AVG columns are recombined weighted by each group's row count
        - non-numeric columns keep the first value seen
        - removed key columns show the "all" placeholder

    Regrouping rows grouped by [A, B] with B removed gives the same
    aggregates as grouping the raw rows by [A].

    Returns:
        list of new group rows, in order of first appearance.
    """
    settings = resolve_settings(settings)
    removed = [k for k in group_keys if k in set(removed_keys or ())]
    active = [k for k in group_keys if k not in removed]
    if not base_rows:
        return []

    agg_funcs = {settings.aggregate_column(a.field_name, a.function): a.function for a in aggregations}
    codes = _group_codes(base_rows, active)
    members = {}
    for idx, code in enumerate(codes):
        members.setdefault(int(code), []).append(base_rows[idx])
    logger.debug("[GROUP] Regrouping %d rows by %s (removed %s)", len(base_rows), active, removed)

    out = []
    for code in sorted(members):
        group = members[code]
        counts = [int(r.get(COUNT_COLUMN, 1) or 0) for r in group]
        row = {}
        for column in _columns_in_order(group):
            if column in removed:
                row[column] = settings.all_placeholder
            elif column in active:
                row[column] = group[0].get(column)
            elif column == COUNT_COLUMN:
                row[column] = sum(counts)
            else:
                row[column] = _combine(column, group, counts, agg_funcs.get(column))
        for key in removed:
            row.setdefault(key, settings.all_placeholder)
        out.append(row)
    return out


def _columns_in_order(rows):
    columns = []
    for r in rows:
        for c in r:
            if c not in columns:
                columns.append(c)
    return columns


def _combine(column, group, counts, function):
    cells = [r.get(column) for r in group]
    numeric = [c for c in cells if _is_numeric(c)]
    if function is None and len(numeric) != len([c for c in cells if c is not None and c != '']):
        # Mixed or text column: keep the first value seen
        return cells[0]
    if function is None:
        return _finite(sum(numeric)) if numeric else cells[0]
    nums = [to_number(c) for c in cells]
    if function == 'COUNT':
        return int(sum(nums))
    if function == 'MAX':
        return max(nums)
    if function == 'MIN':
        return min(nums)
    if function == 'AVG':
        total = sum(counts)
        if total == 0:
            return 0.0
        return _finite(sum(n * c for n, c in zip(nums, counts)) / total)
    return _finite(sum(nums))
