"""Values of other forms' fields, referenced in formulas as ``FormName.FieldName``."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from formcalc.data_model import Batch, FormSchema, ValueMap
from formcalc.expression import to_number

logger = logging.getLogger(__name__)


def cross_form_key(form_name: str, field_name: str) -> str:
    return f"{form_name}.{field_name}"


class CrossFormResolver(Protocol):
    def resolve(self, forms: Iterable[FormSchema], batches: Iterable[Batch], current_form_id) -> ValueMap:
        ...


class LatestBatchFirstRowResolver:
    """
    Take each referenced value from the first row of the form's most recent batch.

    This is a snapshot, not an aggregate: rows after the first and older
    batches are ignored. Forms without a batch resolve every field to 0.
    """

    def resolve(self, forms, batches, current_form_id) -> ValueMap:
        latest = latest_batches(batches)
        values = {}
        for form in forms:
            if form.id == current_form_id:
                continue
            batch = latest.get(form.id)
            first_row = batch.batch_data[0] if batch is not None and batch.batch_data else None
            for field in _referenceable_fields(form):
                raw = None
                if first_row is not None:
                    raw = first_row.get(field.id)
                    if raw is None:
                        raw = first_row.get(field.name)
                values[cross_form_key(form.name, field.name)] = to_number(raw)
        logger.debug("[CROSS] Resolved %d cross-form values for form %s", len(values), current_form_id)
        return values


def _referenceable_fields(form):
    # Only input number fields are published; formula fields of other forms read as 0
    return [f for f in form.active_fields() if f.type == 'number']


def latest_batches(batches):
    """form_id -> most recently submitted batch. Equal timestamps keep the first one seen."""
    latest = {}
    for batch in batches:
        current = latest.get(batch.form_id)
        if current is None or batch.submitted_at > current.submitted_at:
            latest[batch.form_id] = batch
    return latest


DEFAULT_RESOLVER = LatestBatchFirstRowResolver()


def build_cross_form_values(forms, batches, current_form_id, resolver: Optional[CrossFormResolver] = None) -> ValueMap:
    resolver = resolver or DEFAULT_RESOLVER
    return resolver.resolve(list(forms), list(batches), current_form_id)
