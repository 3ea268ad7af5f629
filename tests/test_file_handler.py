import pandas as pd
import pytest

from formcalc.data_model import Batch, ReportResult
from formcalc.file_handler import (
    META_KEY,
    export_form_rows,
    export_report,
    flatten_batches,
    load_rows,
    number_format,
    rows_to_frame,
)


def test_load_rows_from_csv(tmp_path, stock_form):
    path = tmp_path / 'stock.csv'
    path.write_text('入库,出库,备注\n10,3,x\n,4,y\n', encoding='utf-8')
    rows = load_rows(path, stock_form.fields)
    assert rows == [{'a_in': 10, 'a_out': 3}, {'a_in': None, 'a_out': 4}]


def test_load_rows_gbk_csv(tmp_path, stock_form):
    path = tmp_path / 'legacy.csv'
    path.write_bytes('a_in,出库\n1,2\n'.encode('gb18030'))
    assert load_rows(path, stock_form.fields) == [{'a_in': 1, 'a_out': 2}]


def test_load_rows_without_matching_columns(tmp_path, stock_form):
    path = tmp_path / 'other.csv'
    path.write_text('foo,bar\n1,2\n', encoding='utf-8')
    with pytest.raises(ValueError):
        load_rows(path, stock_form.fields)


def test_flatten_batches_oldest_first(stock_form):
    late = Batch(id='late', form_id='A', submitted_at='2024-05-01T00:00:00', batch_data=[{'a_in': 2}])
    early = Batch(id='early', form_id='A', submitted_at='2024-04-01T00:00:00', submitted_by='李四',
                  batch_data=[{'a_in': 1}, {'a_in': 1.5}])
    other = Batch(id='x', form_id='B', submitted_at='2024-01-01T00:00:00', batch_data=[{'b_price': 1}])
    rows = flatten_batches([late, other, early], stock_form)
    assert [r[META_KEY]['batch_id'] for r in rows] == ['early', 'early', 'late']
    assert rows[0][META_KEY]['submitted_by'] == '李四'
    assert META_KEY not in early.batch_data[0]


def test_rows_to_frame_coerces_numbers(stock_form):
    df = rows_to_frame([{'a_in': '5', 'a_out': 'abc'}, {'入库': 2}], stock_form.fields)
    assert list(df.columns) == ['入库', '出库', '结存']
    assert df['入库'].tolist() == [5.0, 2.0]
    assert df['出库'].tolist() == [0.0, '']


@pytest.mark.parametrize('precision, fmt', [(0, '0'), (2, '0.00'), (None, '0'), (9, '0.000000')])
def test_number_format(precision, fmt):
    assert number_format(precision) == fmt


def test_export_report_round_trip(tmp_path):
    result = ReportResult(
        columns=['品种', '重量_求和'],
        rows=[{'品种': '鲤', '重量_求和': 30.0, 'ignored': 1}, {'品种': '草', '重量_求和': 5.0}],
    )
    path = tmp_path / 'report.xlsx'
    export_report(result, path)
    df = pd.read_excel(path, sheet_name='Report')
    assert list(df.columns) == ['品种', '重量_求和']
    assert df['重量_求和'].tolist() == [30.0, 5.0]


def test_export_form_rows(tmp_path, stock_form, stock_batches):
    path = tmp_path / 'stock.xlsx'
    export_form_rows(stock_form, stock_batches, path)
    df = pd.read_excel(path, sheet_name='库存表')
    assert list(df.columns) == ['提交人', '提交时间', '入库', '出库', '结存']
    assert df.loc[0, '提交人'] == '张三'
    assert df.loc[0, '入库'] == 10
    assert pd.Timestamp(df.loc[0, '提交时间']).round('s') == pd.Timestamp('2024-03-01 08:00:00')
