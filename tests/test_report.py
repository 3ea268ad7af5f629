"""Tests for report: configuration checks, execution and grouping toggles."""

import pytest
from pydantic import ValidationError

from formcalc.config import EngineSettings
from formcalc.data_model import Batch, FormSchema, ReportConfig
from formcalc.errors import ReportConfigError
from formcalc.report import (
    apply_grouping,
    execute,
    execute_report,
    resolve_selected_fields,
    validate_config,
    visible_columns,
)


@pytest.fixture
def fish_config():
    return {
        'selectedForms': ['F'],
        'selectedFields': [
            {'formId': 'F', 'fieldId': 'sp', 'fieldName': '品种'},
            {'formId': 'F', 'fieldId': 'rg', 'fieldName': '区域'},
            {'formId': 'F', 'fieldId': 'w', 'fieldName': '重量'},
        ],
        'aggregations': [{'formId': 'F', 'fieldId': 'w', 'fieldName': '重量', 'function': 'SUM'}],
    }


@pytest.fixture
def fish_rows():
    return {'F': [
        {'sp': '鲤', 'rg': '东', 'w': 10},
        {'sp': '鲤', 'rg': '西', 'w': 20},
        {'sp': '草', 'rg': '东', 'w': 5},
    ]}


class TestValidation:
    def test_no_form(self):
        with pytest.raises(ReportConfigError, match='No form selected') as exc:
            validate_config({'selectedFields': ['x']})
        assert exc.value.suggestion

    def test_nothing_to_show(self):
        with pytest.raises(ReportConfigError, match='No fields selected'):
            execute({'F': []}, {'selectedForms': ['F']})

    def test_at_most_three_sort_orders(self):
        orders = [{'field': c} for c in 'abcd']
        with pytest.raises(ValidationError):
            ReportConfig.model_validate({'selectedForms': ['F'], 'sortOrders': orders})


def test_end_to_end_cross_form_total(stock_form, price_form, stock_batches):
    price = Batch.model_validate({
        'id': 'p1', 'formId': 'B', 'submittedAt': '2024-02-01T00:00:00',
        'batchData': [{'b_price': 5}],
    })
    config = {
        'selectedForms': ['A', 'B'],
        'selectedFields': [
            {'formId': 'A', 'fieldId': 'a_bal', 'fieldName': '结存'},
            {'formId': 'B', 'fieldId': 'b_price', 'fieldName': '单价'},
        ],
        'aggregations': [{'formId': 'A', 'fieldId': 'a_bal', 'fieldName': '结存', 'function': 'SUM'}],
        'calculations': [{
            'name': '总值',
            'parts': [
                {'type': 'field', 'fieldId': 'a_bal', 'fieldName': '结存'},
                {'type': 'operator', 'value': '*'},
                {'type': 'field', 'fieldId': 'b_price', 'fieldName': '单价'},
            ],
        }],
    }
    result = execute_report([stock_form, price_form], stock_batches + [price], config)
    assert result.group_keys == ['单价']
    assert result.columns == ['单价', '结存_求和', '总值']
    assert result.rows == [{'单价': 5, '结存_求和': 7.0, '总值': 35.0}]


def test_projection_without_aggregation(fish_rows):
    config = {'selectedForms': ['F'], 'selectedFields': [
        {'fieldId': 'sp', 'fieldName': '品种'}, {'fieldId': 'w', 'fieldName': '重量'},
    ]}
    result = execute(fish_rows, config)
    assert result.columns == ['品种', '重量']
    assert result.rows == [{'品种': '鲤', '重量': 10}, {'品种': '鲤', '重量': 20}, {'品种': '草', '重量': 5}]
    assert result.group_keys == ['品种', '重量']
    assert result.total == 3


def test_aggregated_field_is_not_a_group_key(fish_rows, fish_config):
    result = execute(fish_rows, fish_config)
    assert result.group_keys == ['品种', '区域']
    assert [r['重量_求和'] for r in result.rows] == [10.0, 20.0, 5.0]


def test_hidden_aggregate_usable_in_calculation(fish_rows, fish_config):
    fish_config['aggregations'][0]['show'] = 'false'
    fish_config['calculations'] = [{'name': '双倍', 'parts': [
        {'type': 'field', 'fieldId': 'w', 'fieldName': '重量'},
        {'type': 'operator', 'value': '*'},
        {'type': 'number', 'value': 2},
    ]}]
    result = execute(fish_rows, fish_config)
    assert result.columns == ['品种', '区域', '双倍']
    assert [r['双倍'] for r in result.rows] == [20.0, 40.0, 10.0]


def test_calculation_order_dependence(fish_rows, fish_config):
    later = {'name': '后', 'parts': [{'type': 'field', 'fieldId': '后', 'fieldName': '后'}]}
    first = {'name': '前', 'parts': [{'type': 'field', 'fieldId': '重量_求和', 'fieldName': '重量_求和'}]}
    chained = {'name': '链', 'parts': [
        {'type': 'field', 'fieldId': '前', 'fieldName': '前'},
        {'type': 'operator', 'value': '+'},
        {'type': 'field', 'fieldId': '尾', 'fieldName': '尾'},
    ]}
    tail = {'name': '尾', 'expression': '1'}
    fish_config['calculations'] = [later, first, chained, tail]
    (row, *_rest) = execute(fish_rows, fish_config).rows
    assert row['前'] == 10.0
    assert row['链'] == 10.0
    assert row['后'] == 0.0
    assert row['尾'] == 1.0


def test_display_precision(fish_config):
    fish_config['aggregations'] = [
        {'fieldId': 'w', 'fieldName': '重量', 'function': 'AVG', 'displayPrecision': 1},
        {'fieldId': 'w', 'fieldName': '重量', 'function': 'COUNT'},
    ]
    fish_config['selectedFields'] = fish_config['selectedFields'][:1]
    rows = {'F': [{'sp': '鲤', 'w': 1}, {'sp': '鲤', 'w': 2}, {'sp': '鲤', 'w': 2}]}
    (row,) = execute(rows, fish_config).rows
    assert row['重量_平均值'] == 1.7
    assert row['重量_计数'] == 3 and isinstance(row['重量_计数'], int)


def test_sort_orders_applied(fish_rows, fish_config):
    fish_config['sortOrders'] = [{'field': '重量_求和', 'direction': 'DESC'}]
    result = execute(fish_rows, fish_config)
    assert [r['重量_求和'] for r in result.rows] == [20.0, 10.0, 5.0]


class TestApplyGrouping:
    def test_remove_and_restore_key(self, fish_rows, fish_config):
        result = execute(fish_rows, fish_config)
        coarse = apply_grouping(result, fish_config, ['区域'])
        assert coarse.rows == [
            {'品种': '鲤', '区域': '全部', '重量_求和': 30.0},
            {'品种': '草', '区域': '全部', '重量_求和': 5.0},
        ]
        assert coarse.removed_keys == ['区域']

        restored = apply_grouping(coarse, fish_config, [])
        assert restored.rows == result.rows

    def test_calculations_recomputed_after_regroup(self, fish_rows, fish_config):
        fish_config['calculations'] = [{'name': '半', 'expression': 'w / 2'}]
        result = execute(fish_rows, fish_config)
        coarse = apply_grouping(result, fish_config, ['区域'])
        assert [r['半'] for r in coarse.rows] == [15.0, 2.5]

    def test_unknown_key_ignored(self, fish_rows, fish_config):
        result = execute(fish_rows, fish_config)
        assert apply_grouping(result, fish_config, ['不存在']).rows == result.rows

    def test_custom_placeholder(self, fish_rows, fish_config):
        settings = EngineSettings(all_placeholder='ALL')
        result = execute(fish_rows, fish_config, settings)
        coarse = apply_grouping(result, fish_config, ['区域', '品种'], settings)
        assert coarse.rows == [{'品种': 'ALL', '区域': 'ALL', '重量_求和': 35.0}]


def test_list_of_row_lists_input():
    config = {'selectedForms': ['A', 'B'], 'selectedFields': ['x', 'y']}
    result = execute([[{'x': 1}, {'x': 2}], [{'y': 'a'}]], config)
    assert result.rows == [{'x': 1, 'y': 'a'}, {'x': 2, 'y': None}]


def test_legacy_field_names_resolved(stock_form, price_form):
    config = ReportConfig.model_validate({'selectedForms': ['A', 'B'], 'selectedFields': ['结存', '单价', '旧价']})
    resolved = resolve_selected_fields(config, [stock_form, price_form])
    ids = [(f.form_id, f.field_id) for f in resolved.selected_fields]
    # 旧价 is inactive and keeps its stored name
    assert ids == [('A', 'a_bal'), ('B', 'b_price'), ('', '旧价')]


def test_visible_columns(fish_config):
    fish_config['calculations'] = [{'name': '半', 'expression': 'w / 2'}]
    assert visible_columns(fish_config) == ['品种', '区域', '重量_求和', '半']
    assert visible_columns(fish_config, group_keys=['品种']) == ['品种', '重量_求和', '半']


def test_int_beyond_float_range_aggregates_as_zero():
    config = {
        'selectedForms': ['F'],
        'selectedFields': [{'fieldId': 'k', 'fieldName': 'k'}, {'fieldId': 'v', 'fieldName': 'v'}],
        'aggregations': [{'fieldId': 'v', 'fieldName': 'v', 'function': 'SUM'}],
        'sortOrders': [{'field': 'k'}],
    }
    result = execute({'F': [{'k': 'a', 'v': 10 ** 400}, {'k': 'a', 'v': 2}]}, config)
    assert result.rows == [{'k': 'a', 'v_求和': 2.0}]


def test_int_beyond_float_range_in_projection():
    config = {'selectedForms': ['F'], 'selectedFields': ['k'], 'sortOrders': [{'field': 'k'}]}
    result = execute({'F': [{'k': 10 ** 400}, {'k': 1}]}, config)
    assert [r['k'] for r in result.rows] == [1, 10 ** 400]
