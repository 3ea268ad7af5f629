"""
Report execution: projection, grouping, aggregation, calculated fields, sort.

A report configuration names the forms and fields to read, the aggregates
to compute and the calculated columns to derive. Executing it is a pure
function of (rows, config); the grouping of an executed report can be
reduced afterwards without the raw rows (see apply_grouping).
"""

import logging

from formcalc.aggregation import aggregate, join_rows, project_rows, regroup
from formcalc.calculated import evaluate_calculation
from formcalc.computation import recompute_batch
from formcalc.config import resolve_settings
from formcalc.data_model import ReportConfig, ReportResult
from formcalc.errors import ReportConfigError
from formcalc.expression import round_half_up
from formcalc.sorting import sort_rows

logger = logging.getLogger(__name__)


def _as_config(config):
    if isinstance(config, ReportConfig):
        return config
    return ReportConfig.model_validate(config)


def validate_config(config):
    """Raise ReportConfigError for a config that cannot produce a table."""
    config = _as_config(config)
    if not config.selected_forms:
        raise ReportConfigError("No form selected", suggestion="select at least one form")
    if not (config.selected_fields or config.aggregations or config.calculations):
        raise ReportConfigError(
            "No fields selected",
            suggestion="select at least one field, aggregation or calculated field",
        )
    return config


def visible_columns(config, settings=None, group_keys=None):
    """Output column keys in display order: group keys, shown aggregates, calculated fields."""
    settings = resolve_settings(settings)
    config = _as_config(config)
    columns = []
    if config.aggregations:
        keys = config.default_group_keys() if group_keys is None else group_keys
    else:
        keys = [f.field_name for f in config.selected_fields]
    for key in keys:
        if key not in columns:
            columns.append(key)
    for agg in config.aggregations:
        column = settings.aggregate_column(agg.field_name, agg.function)
        if agg.show and column not in columns:
            columns.append(column)
    for calc in config.calculations:
        if calc.name not in columns:
            columns.append(calc.name)
    return columns


def _column_aliases(config, settings):
    """field id -> output column, used to resolve calculated-field parts."""
    aliases = {}
    for agg in config.aggregations:
        aliases.setdefault(agg.field_id, settings.aggregate_column(agg.field_name, agg.function))
    for f in config.selected_fields:
        aliases.setdefault(f.field_id, f.field_name)
    return aliases


def _finish(base_rows, config, settings, group_keys):
    """Calculated fields, rounding, hidden columns and sort over group rows."""
    aliases = _column_aliases(config, settings)
    precisions = {}
    for agg in config.aggregations:
        column = settings.aggregate_column(agg.field_name, agg.function)
        if agg.function == 'COUNT':
            precisions[column] = None
        elif agg.display_precision is not None:
            precisions[column] = agg.display_precision
        else:
            precisions[column] = settings.default_precision

    columns = visible_columns(config, settings, group_keys)
    rows = []
    for base in base_rows:
        work = dict(base)
        # Definition order: a calculation sees the ones defined before it only
        for calc in config.calculations:
            work[calc.name] = evaluate_calculation(calc, work, aliases)
        out = {}
        for column in columns:
            value = work.get(column)
            if column in precisions and value is not None:
                precision = precisions[column]
                value = int(value) if precision is None else round_half_up(value, precision)
            out[column] = value
        rows.append(out)

    return columns, sort_rows(rows, config.sort_orders, settings.max_sort_keys)


def execute(rows_by_form, config, settings=None):
    """
    Execute a report over rows that are already materialized.

    Args:
        rows_by_form: dict form_id -> list of rows (field id -> value), or a
            list of row lists in selected-form order. Rows of different forms
            are joined by position.
        config: ReportConfig or its JSON-shaped dict.
        settings: Optional EngineSettings (labels, placeholder, precision).

    Returns:
        ReportResult with display rows plus the group rows needed by
        apply_grouping.

    Raises:
        ReportConfigError: no form selected, or nothing to show.
    """
    settings = resolve_settings(settings)
    config = validate_config(config)

    joined = join_rows(rows_by_form, config.selected_forms)
    projected = project_rows(joined, config.selected_fields)

    if config.aggregations:
        group_keys = config.default_group_keys()
        base_rows = aggregate(joined, projected, group_keys, config.aggregations, settings)
    else:
        group_keys = [f.field_name for f in config.selected_fields]
        base_rows = projected

    columns, rows = _finish(base_rows, config, settings, group_keys)
    logger.info("[REPORT] %d source rows -> %d report rows", len(joined), len(rows))
    return ReportResult(columns=columns, rows=rows, base_rows=base_rows, group_keys=group_keys)


def apply_grouping(result, config, removed_keys, settings=None):
    """
    Re-summarize an executed report with some group keys switched off.

    Always starts from the result's original group rows, so keys can be
    switched back on by passing a smaller ``removed_keys``.
    """
    settings = resolve_settings(settings)
    config = validate_config(config)
    removed = [k for k in result.group_keys if k in set(removed_keys or ())]
    if removed:
        base_rows = regroup(result.base_rows, result.group_keys, removed, config.aggregations, settings)
    else:
        base_rows = result.base_rows

    columns, rows = _finish(base_rows, config, settings, result.group_keys)
    return ReportResult(
        columns=columns,
        rows=rows,
        base_rows=result.base_rows,
        group_keys=result.group_keys,
        removed_keys=removed,
    )


def resolve_selected_fields(config, forms):
    """
    Fill in form and field ids for selected fields stored by name only.

    Looks the name up among the active fields of the selected forms, first
    match wins; unknown names are kept as they are.
    """
    config = _as_config(config)
    selected = [f for f in forms if f.id in config.selected_forms]
    resolved = []
    for sf in config.selected_fields:
        if not sf.form_id:
            for form in selected:
                field = form.field_by_name(sf.field_name)
                if field is not None and field.active:
                    sf = sf.model_copy(update={'form_id': form.id, 'field_id': field.id})
                    break
            else:
                logger.warning("[REPORT] Field '%s' not found in any selected form", sf.field_name)
        resolved.append(sf)
    return config.model_copy(update={'selected_fields': resolved})


def _with_field_precision(config, forms):
    by_id = {}
    for form in forms:
        for field in form.fields:
            by_id[field.id] = field
    aggregations = []
    for agg in config.aggregations:
        field = by_id.get(agg.field_id)
        if agg.display_precision is None and field is not None and field.display_precision is not None:
            agg = agg.model_copy(update={'display_precision': field.display_precision})
        aggregations.append(agg)
    return config.model_copy(update={'aggregations': aggregations})


def execute_report(forms, batches, config, settings=None, resolver=None):
    """
    Execute a report straight from form definitions and submitted batches.

    Every batch of a selected form is recomputed against its own fields
    snapshot (formula and cross-form values refreshed), oldest batch first,
    and its rows are fed to execute().
    """
    config = validate_config(config)
    forms = list(forms)
    batches = list(batches)
    config = _with_field_precision(resolve_selected_fields(config, forms), forms)

    forms_by_id = {f.id: f for f in forms}
    rows_by_form = {}
    for form_id in config.selected_forms:
        form = forms_by_id.get(form_id)
        if form is None:
            logger.warning("[REPORT] Selected form %s does not exist", form_id)
            rows_by_form[form_id] = []
            continue
        form_batches = sorted((b for b in batches if b.form_id == form_id), key=lambda b: b.submitted_at)
        rows = []
        for batch in form_batches:
            rows.extend(recompute_batch(batch, form, forms, batches, resolver))
        rows_by_form[form_id] = rows

    return execute(rows_by_form, config, settings)

