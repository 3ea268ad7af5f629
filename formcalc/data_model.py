"""Schema and report configuration models shared by every engine module."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from formcalc.config import clamp_precision

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
ValueMap = Dict[str, float]

FIELD_TYPES = ('text', 'number', 'date', 'textarea', 'select', 'formula')
NUMERIC_TYPES = ('number', 'formula')
OPERATORS = ('+', '-', '*', '/')
PARENS = ('(', ')')


class _Model(BaseModel):
    # JSON payloads use camelCase keys; Python callers may use attribute names.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FieldSchema(_Model):
    id: str
    name: str
    type: Literal['text', 'number', 'date', 'textarea', 'select', 'formula'] = 'text'
    active: bool = True
    order: int = 0
    formula: Optional[str] = None
    display_precision: Optional[int] = None
    options: Optional[List[str]] = None

    @field_validator('display_precision', mode='before')
    @classmethod
    def _clamp(cls, value):
        if value is None or value == '':
            return None
        return clamp_precision(value)

    @model_validator(mode='after')
    def _normalize(self):
        if self.type != 'formula' and self.formula is not None:
            logger.debug("[SCHEMA] Dropping formula on %s field '%s'", self.type, self.name)
            self.formula = None
        if self.type != 'select' and self.options is not None:
            self.options = None
        return self

    @property
    def precision(self) -> int:
        return 2 if self.display_precision is None else self.display_precision

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES


class FormSchema(_Model):
    id: str
    name: str
    fields: List[FieldSchema] = Field(default_factory=list)

    def active_fields(self) -> List[FieldSchema]:
        return sorted((f for f in self.fields if f.active), key=lambda f: f.order)

    def numeric_fields(self) -> List[FieldSchema]:
        return [f for f in self.active_fields() if f.is_numeric]

    def field_by_id(self, field_id) -> Optional[FieldSchema]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None

    def field_by_name(self, name) -> Optional[FieldSchema]:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class Batch(_Model):
    """One submission event: rows entered together under a schema snapshot."""

    id: str
    form_id: str
    submitted_at: datetime
    batch_data: List[Row] = Field(default_factory=list)
    fields_snapshot: Optional[List[FieldSchema]] = None
    submitted_by: Optional[str] = None

    @field_validator('submitted_at')
    @classmethod
    def _aware(cls, value):
        # Epoch inputs parse as UTC-aware; keep ISO strings comparable with them
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def fields_for(self, form: FormSchema) -> List[FieldSchema]:
        if self.fields_snapshot:
            return self.fields_snapshot
        return form.fields


class SelectedField(_Model):
    form_id: str = ''
    field_id: str
    field_name: str = ''

    @model_validator(mode='before')
    @classmethod
    def _from_name(cls, data):
        # Early report configs stored bare field names
        if isinstance(data, str):
            return {'form_id': '', 'field_id': data, 'field_name': data}
        return data

    @model_validator(mode='after')
    def _default_name(self):
        if not self.field_name:
            self.field_name = self.field_id
        return self


class AggregationSpec(_Model):
    form_id: str = ''
    field_id: str
    field_name: str = ''
    function: Literal['SUM', 'AVG', 'COUNT', 'MAX', 'MIN'] = 'SUM'
    show: bool = True
    display_precision: Optional[int] = None

    @field_validator('function', mode='before')
    @classmethod
    def _upper(cls, value):
        return value.upper() if isinstance(value, str) else value

    @field_validator('display_precision', mode='before')
    @classmethod
    def _clamp(cls, value):
        if value is None or value == '':
            return None
        return clamp_precision(value)

    @model_validator(mode='after')
    def _default_name(self):
        if not self.field_name:
            self.field_name = self.field_id
        return self


class FieldPart(_Model):
    type: Literal['field'] = 'field'
    field_id: str = ''
    field_name: str = ''


class OperatorPart(_Model):
    type: Literal['operator'] = 'operator'
    value: Literal['+', '-', '*', '/', '(', ')']


class NumberPart(_Model):
    type: Literal['number'] = 'number'
    value: str

    @field_validator('value', mode='before')
    @classmethod
    def _as_text(cls, value):
        return str(value) if isinstance(value, (int, float)) else value


CalcPart = Annotated[Union[FieldPart, OperatorPart, NumberPart], Field(discriminator='type')]


class CalculatedFieldSpec(_Model):
    name: str
    parts: List[CalcPart] = Field(default_factory=list)
    expression: Optional[str] = None
    decimal_places: int = 2

    @field_validator('decimal_places', mode='before')
    @classmethod
    def _clamp(cls, value):
        return clamp_precision(value)

    @model_validator(mode='after')
    def _parts_from_expression(self):
        # Stored configs may only carry the id-based expression string
        if not self.parts and self.expression:
            from formcalc.calculated import parts_from_expression
            self.parts = parts_from_expression(self.expression)
        return self


class SortSpec(_Model):
    field: str
    direction: Literal['asc', 'desc'] = 'asc'

    @field_validator('direction', mode='before')
    @classmethod
    def _lower(cls, value):
        return value.lower() if isinstance(value, str) else value


class ReportConfig(_Model):
    selected_forms: List[str] = Field(default_factory=list)
    selected_fields: List[SelectedField] = Field(default_factory=list)
    aggregations: List[AggregationSpec] = Field(default_factory=list)
    calculations: List[CalculatedFieldSpec] = Field(default_factory=list)
    sort_orders: List[SortSpec] = Field(default_factory=list, max_length=3)

    def aggregated_field_ids(self):
        return {agg.field_id for agg in self.aggregations}

    def default_group_keys(self) -> List[str]:
        """Selected fields that are not themselves aggregated, in selection order."""
        if not self.aggregations:
            return []
        aggregated = self.aggregated_field_ids()
        keys = []
        for f in self.selected_fields:
            if f.field_id not in aggregated and f.field_name not in keys:
                keys.append(f.field_name)
        return keys


class ReportResult(_Model):
    columns: List[str] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)
    base_rows: List[Row] = Field(default_factory=list)
    group_keys: List[str] = Field(default_factory=list)
    removed_keys: List[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.rows)
