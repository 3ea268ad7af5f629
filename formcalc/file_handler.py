import logging
from pathlib import Path

import pandas as pd

from formcalc.expression import to_number

logger = logging.getLogger(__name__)

META_KEY = '__meta'
SUBMITTER_HEADER = '提交人'
SUBMITTED_AT_HEADER = '提交时间'
CSV_ENCODINGS = ['utf-8', 'utf-8-sig', 'gb18030', 'latin-1']


def load_rows(path, fields):
    """
    Read a CSV or Excel sheet into rows keyed by field id.

    Column headers are matched to field names (or ids); unknown columns are
    dropped and blank cells become None.

    Args:
        path: .csv, .xlsx or .xls file.
        fields: list of FieldSchema of the target form.

    Returns:
        list of row dicts.

    Raises:
        ValueError: If the file cannot be decoded or shares no column with the form.
    """
    path = str(path)
    filename = Path(path).name

    if path.lower().endswith('.csv'):
        df = None
        for enc in CSV_ENCODINGS:
            try:
                df = pd.read_csv(path, encoding=enc)
                logger.debug("[LOAD] %s loaded with encoding: %s", filename, enc)
                break
            except (UnicodeDecodeError, LookupError):
                continue
        if df is None:
            raise ValueError(f"Could not load {filename} with any supported encoding")
    else:
        df = pd.read_excel(path)

    by_header = {}
    for f in fields:
        by_header.setdefault(f.name, f)
        by_header.setdefault(f.id, f)
    columns = {col: by_header[col] for col in df.columns if col in by_header}
    if not columns:
        raise ValueError(f"{filename} has no column matching the form's fields")

    rows = []
    for record in df.to_dict(orient='records'):
        row = {}
        for col, field in columns.items():
            value = record[col]
            row[field.id] = None if pd.isna(value) else _native(value)
        rows.append(row)
    logger.info("[LOAD] %s: %d rows, %d columns", filename, len(rows), len(columns))
    return rows


def _native(value):
    # numpy scalars -> plain Python, so rows stay JSON serializable
    return value.item() if hasattr(value, 'item') else value


def flatten_batches(batches, form):
    """
    All rows of a form's batches, oldest batch first.

    Each row gets a ``__meta`` entry with the batch id, submitter and
    submit time; the batch's own rows are not modified.
    """
    rows = []
    own = sorted((b for b in batches if b.form_id == form.id), key=lambda b: b.submitted_at)
    for batch in own:
        for row in batch.batch_data:
            flat = dict(row)
            flat[META_KEY] = {
                'batch_id': batch.id,
                'submitted_by': batch.submitted_by,
                'submitted_at': batch.submitted_at,
            }
            rows.append(flat)
    return rows


def rows_to_frame(rows, fields):
    """DataFrame with one column per active field, headed by field name."""
    active = [f for f in fields if f.active]
    data = []
    for row in rows:
        record = {}
        for f in active:
            value = row.get(f.id)
            if value is None:
                value = row.get(f.name)
            if f.is_numeric:
                value = to_number(value) if value is not None else None
            record[f.name] = '' if value is None else value
        data.append(record)
    return pd.DataFrame(data, columns=[f.name for f in active])


def result_to_frame(result):
    """ReportResult -> DataFrame with columns in display order."""
    return pd.DataFrame(result.rows, columns=result.columns)


def number_format(precision):
    """Excel number format for a display precision: 0 -> '0', 2 -> '0.00'."""
    precision = max(0, min(6, int(precision or 0)))
    return '0' if precision == 0 else '0.' + '0' * precision


def export_report(result, path, sheet_name='Report'):
    """
    Export an executed report to Excel.

    Sheet layout:
        - one sheet (default "Report") with the report columns in display order.
    """
    df = result_to_frame(result)
    with pd.ExcelWriter(path, engine='xlsxwriter') as writer:
        df.to_excel(writer, sheet_name=sheet_name[:31], index=False)
    logger.info("[EXPORT] Report written to %s (%d rows)", path, len(df))


def export_form_rows(form, batches, path):
    """
    Export every submitted row of a form to Excel.

    Sheet layout:
        - submitter and submit time, then one column per active field
        - number and formula columns formatted with the field's display precision
    """
    fields = form.active_fields()
    rows = flatten_batches(batches, form)
    df = rows_to_frame(rows, fields)
    submitters = [r[META_KEY]['submitted_by'] or '' for r in rows]
    submitted = [r[META_KEY]['submitted_at'].replace(tzinfo=None) for r in rows]
    df.insert(0, SUBMITTED_AT_HEADER, pd.Series(submitted, dtype='datetime64[ns]'))
    df.insert(0, SUBMITTER_HEADER, submitters)

    sheet_name = form.name[:31] or 'Sheet1'
    with pd.ExcelWriter(path, engine='xlsxwriter', datetime_format='yyyy-mm-dd hh:mm') as writer:
        df.to_excel(writer, sheet_name=sheet_name, index=False)
        workbook = writer.book
        worksheet = writer.sheets[sheet_name]
        for offset, f in enumerate(fields):
            col = offset + 2
            width = min(max(len(f.name) + 2, 12), 40)
            if f.is_numeric:
                fmt = workbook.add_format({'num_format': number_format(f.precision)})
                worksheet.set_column(col, col, width, fmt)
            else:
                worksheet.set_column(col, col, width)
        worksheet.set_column(0, 1, 18)
    logger.info("[EXPORT] %s: %d rows written to %s", form.name, len(df), path)
