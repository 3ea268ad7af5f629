import pytest

from formcalc.data_model import Batch, FormSchema


@pytest.fixture
def stock_form():
    return FormSchema.model_validate({
        'id': 'A',
        'name': '库存表',
        'fields': [
            {'id': 'a_in', 'name': '入库', 'type': 'number', 'order': 1},
            {'id': 'a_out', 'name': '出库', 'type': 'number', 'order': 2},
            {'id': 'a_bal', 'name': '结存', 'type': 'formula', 'order': 3,
             'formula': '入库 - 出库', 'displayPrecision': 2},
        ],
    })


@pytest.fixture
def price_form():
    return FormSchema.model_validate({
        'id': 'B',
        'name': '价格表',
        'fields': [
            {'id': 'b_price', 'name': '单价', 'type': 'number', 'order': 1},
            {'id': 'b_note', 'name': '备注', 'type': 'text', 'order': 2},
            {'id': 'b_old', 'name': '旧价', 'type': 'number', 'order': 3, 'active': False},
        ],
    })


@pytest.fixture
def stock_batches():
    return [
        Batch.model_validate({
            'id': 'batch-a1',
            'formId': 'A',
            'submittedAt': '2024-03-01T08:00:00',
            'submittedBy': '张三',
            'batchData': [{'a_in': 10, 'a_out': 3, 'a_bal': 0}],
        }),
    ]


@pytest.fixture
def price_batches():
    return [
        Batch.model_validate({
            'id': 'batch-b1',
            'formId': 'B',
            'submittedAt': '2024-01-01T08:00:00',
            'batchData': [{'b_price': 3, 'b_note': '旧'}],
        }),
        Batch.model_validate({
            'id': 'batch-b2',
            'formId': 'B',
            'submittedAt': '2024-02-01T08:00:00',
            'batchData': [{'b_price': 5, 'b_note': '新'}, {'b_price': 9, 'b_note': '第二行'}],
        }),
    ]
