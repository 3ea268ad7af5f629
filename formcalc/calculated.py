"""
Report-only calculated fields.

A calculated field is an ordered list of parts (field / operator / number)
assembled by the user in the report builder. Field parts refer to columns
of the report output (a selected field, an aggregate column or an earlier
calculated field); evaluation shares the formula parser, so ``*`` and
``/`` bind tighter than ``+`` and ``-``.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional

from formcalc.data_model import (
    CalculatedFieldSpec,
    FieldPart,
    NumberPart,
    OperatorPart,
    OPERATORS,
    PARENS,
)
from formcalc.errors import CalculationBuildError
from formcalc.expression import Token, compute_tokens, to_number

logger = logging.getLogger(__name__)

_NUMBER_TEXT_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)$")


def resolve_field_part(part: FieldPart, row: Mapping, aliases: Optional[Mapping[str, str]] = None) -> float:
    """
    Value of a field part in an output row.

    Looked up by field name first, then through ``aliases`` (field id ->
    output column, e.g. the aggregate column of an aggregated field), then
    by field id. Missing columns resolve to 0.
    """
    for key in (part.field_name, (aliases or {}).get(part.field_id), part.field_id):
        if key and key in row:
            return to_number(row[key])
    logger.debug("[CALC] Column for '%s' not found -> 0", part.field_name or part.field_id)
    return 0.0


def _strip_dangling(parts):
    parts = list(parts)
    while parts and isinstance(parts[-1], OperatorPart) and parts[-1].value != ')':
        parts.pop()
    return parts


def evaluate_parts(parts, row, aliases=None, precision: int = 2) -> float:
    """
    Evaluate a calculated field's parts against one output row.

    Trailing operators are ignored ("A +" evaluates as "A"). Any other
    malformed sequence, a division by zero or a non-finite result gives 0.
    """
    tokens = []
    values: Dict[str, float] = {}
    for i, part in enumerate(_strip_dangling(parts)):
        if isinstance(part, FieldPart):
            key = f"#{i}"
            values[key] = resolve_field_part(part, row, aliases)
            tokens.append(Token('NAME', key))
        elif isinstance(part, NumberPart):
            tokens.append(Token('NUMBER', part.value, to_number(part.value)))
        elif part.value == '(':
            tokens.append(Token('LPAREN', '('))
        elif part.value == ')':
            tokens.append(Token('RPAREN', ')'))
        else:
            tokens.append(Token('OP', part.value))
    return compute_tokens(tokens, values, precision)


def evaluate_calculation(spec: CalculatedFieldSpec, row, aliases=None) -> float:
    return evaluate_parts(spec.parts, row, aliases, spec.decimal_places)


# ── Expression strings ─────────────────────────────────────

def parts_from_expression(expression: str, known_fields: Optional[Mapping[str, str]] = None) -> List:
    """
    Recover parts from a stored, space-separated expression string.

    Tokens are operators/parentheses, numbers, or field ids; ``known_fields``
    maps field id -> field name for display.
    """
    known_fields = known_fields or {}
    parts = []
    for token in (expression or '').split():
        if token in OPERATORS or token in PARENS:
            parts.append(OperatorPart(value=token))
        elif _is_number(token):
            parts.append(NumberPart(value=token))
        else:
            parts.append(FieldPart(field_id=token, field_name=known_fields.get(token, token)))
    return parts


def _is_number(text):
    return bool(_NUMBER_TEXT_RE.match(text))


def expression_from_parts(parts) -> str:
    """Space-separated expression using field ids (the stored form)."""
    return ' '.join(p.field_id if isinstance(p, FieldPart) else p.value for p in parts)


def display_expression(parts) -> str:
    """Space-separated expression using field names (what the user sees)."""
    return ' '.join((p.field_name or p.field_id) if isinstance(p, FieldPart) else p.value for p in parts)


# ── Builder ────────────────────────────────────────────────

class CalculatedFieldBuilder:
    """
    Assemble calculated-field parts one click at a time.

    Operands (fields, numbers) and binary operators must alternate; "("
    may open wherever an operand may appear and ")" may close after an
    operand. Invalid appends raise CalculationBuildError, so a built
    expression is never ambiguous.
    """

    def __init__(self, parts=None):
        self._parts = []
        for part in parts or []:
            self._append(part)

    @property
    def parts(self):
        return list(self._parts)

    @property
    def expression(self):
        return expression_from_parts(self._parts)

    @property
    def display(self):
        return display_expression(self._parts)

    def _expects_operand(self):
        if not self._parts:
            return True
        last = self._parts[-1]
        return isinstance(last, OperatorPart) and last.value != ')'

    def _open_parens(self):
        depth = 0
        for p in self._parts:
            if isinstance(p, OperatorPart) and p.value == '(':
                depth += 1
            elif isinstance(p, OperatorPart) and p.value == ')':
                depth -= 1
        return depth

    def _append(self, part):
        if isinstance(part, (FieldPart, NumberPart)):
            if not self._expects_operand():
                raise CalculationBuildError("An operand must follow an operator")
        elif part.value == '(':
            if not self._expects_operand():
                raise CalculationBuildError("'(' must start the expression or follow an operator")
        elif part.value == ')':
            if self._expects_operand():
                raise CalculationBuildError("')' must follow an operand")
            if self._open_parens() <= 0:
                raise CalculationBuildError("Unmatched ')'")
        elif self._expects_operand():
            raise CalculationBuildError(f"Operator '{part.value}' must follow an operand")
        self._parts.append(part)
        return self

    def add_field(self, field_id, field_name=''):
        return self._append(FieldPart(field_id=field_id, field_name=field_name or field_id))

    def add_operator(self, operator):
        if operator not in OPERATORS and operator not in PARENS:
            raise CalculationBuildError(f"Unsupported operator '{operator}'")
        return self._append(OperatorPart(value=operator))

    def add_number(self, number):
        text = str(number).strip()
        if not _is_number(text):
            raise CalculationBuildError(f"'{number}' is not a number")
        return self._append(NumberPart(value=text))

    def remove_last(self):
        if self._parts:
            self._parts.pop()
        return self

    def clear(self):
        self._parts = []
        return self

    def is_complete(self):
        return bool(self._parts) and not self._expects_operand() and self._open_parens() == 0

    def build(self, name, decimal_places=2) -> CalculatedFieldSpec:
        if not name or not str(name).strip():
            raise CalculationBuildError("Calculated field needs a name")
        if not self.is_complete():
            raise CalculationBuildError(f"Incomplete expression: '{self.display}'")
        return CalculatedFieldSpec(
            name=str(name).strip(),
            parts=self.parts,
            expression=self.expression,
            decimal_places=decimal_places,
        )
