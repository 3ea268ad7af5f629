import logging

import pandas as pd

from formcalc.cross_form import build_cross_form_values
from formcalc.expression import build_value_map, evaluate_with, referenced_names

logger = logging.getLogger(__name__)


def recompute_row(row, fields, cross_form_values=None):
    """
    Compute every formula field of a single data row.

    Supports:
        - Formulas over the row's own fields by name ("入库 - 出库")
        - Cross-form references ("单价表.单价") through cross_form_values
        - Chaining: a formula may reference another formula field; it sees
          that field's freshly computed value, whatever its position in the list

    Args:
        row: dict mapping field id -> raw value (not modified).
        fields: list of FieldSchema for the row's form (or batch snapshot).
        cross_form_values: Optional dict "FormName.FieldName" -> number.

    Returns:
        A new dict with every active formula field written under its id.
    """
    new_row = dict(row or {})
    formula_fields = [f for f in fields if f.type == 'formula' and f.active and f.formula]
    if not formula_fields:
        return new_row

    values = build_value_map(new_row, fields, cross_form_values)
    # Stored formula values are never read, which keeps recomputation idempotent
    for f in formula_fields:
        values[f.name] = 0.0

    for f in _evaluation_order(formula_fields, values.keys()):
        result = evaluate_with(f.formula, values, f.precision)
        values[f.name] = result
        new_row[f.id] = result

    return new_row


def _evaluation_order(formula_fields, names):
    """
    Order formula fields so each one follows the formula fields it references.

    List order breaks ties. Fields on a reference cycle keep list order; a
    reference to a cycle member that has not been computed yet reads 0.
    """
    by_name = {f.name: f for f in formula_fields}
    deps = {}
    for f in formula_fields:
        refs = referenced_names(f.formula, names)
        deps[f.id] = [by_name[r].id for r in refs if r in by_name and by_name[r].id != f.id]

    ordered = []
    done = set()
    remaining = list(formula_fields)
    while remaining:
        ready = [f for f in remaining if all(d in done for d in deps[f.id])]
        if not ready:
            cycle = [f.name for f in remaining]
            logger.debug("[FORMULA] Reference cycle between %s; cyclic references read as 0", cycle)
            ready = remaining
        for f in ready:
            ordered.append(f)
            done.add(f.id)
        remaining = [f for f in remaining if f.id not in done]
    return ordered


def recompute_rows(rows, fields, cross_form_values=None):
    return [recompute_row(r, fields, cross_form_values) for r in rows]


def recompute_batch(batch, form, forms, batches, resolver=None):
    """
    Recompute all rows of a batch against the batch's own fields snapshot.

    Cross-form values are resolved once for the whole batch.

    Returns:
        list of new row dicts.
    """
    cross = build_cross_form_values(forms, batches, form.id, resolver)
    fields = batch.fields_for(form)
    rows = recompute_rows(batch.batch_data, fields, cross)
    logger.debug("[FORMULA] Recomputed %d rows of batch %s", len(rows), batch.id)
    return rows


def blank_row(fields, cross_form_values=None):
    """Initial data-entry row: 0 for number fields, '' for the rest, formulas computed."""
    row = {}
    for f in fields:
        if not f.active:
            continue
        row[f.id] = 0 if f.type == 'number' else ''
    return recompute_row(row, fields, cross_form_values)


def is_blank_row(row, fields):
    """True when no user-entered (non-formula) active field carries a value."""
    for f in fields:
        if not f.active or f.type == 'formula':
            continue
        value = row.get(f.id)
        if value is not None and value != '':
            return False
    return True


def recompute_frame(df, fields, cross_form_values=None):
    """
    DataFrame variant of recompute_rows.

    Columns are field ids; the original frame is not modified.
    """
    records = df.to_dict(orient='records')
    for record in records:
        for key, value in record.items():
            if isinstance(value, float) and pd.isna(value):
                record[key] = None
    computed = recompute_rows(records, fields, cross_form_values)
    return pd.DataFrame(computed, index=df.index)
