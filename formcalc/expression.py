"""
Formula evaluation for formula fields.

Formulas are arithmetic over field names, e.g. ``入库 - 出库`` or
``原料表.单价 * 数量``. Names are matched against the schema the user
defined (longest name first), numbers and the operators ``+ - * / ( )``
are parsed into a small AST and interpreted. Nothing is ever passed to
``eval``.

Evaluation is total: unresolved names, syntax errors, division by zero
and non-finite results all produce 0 so formula cells always show a value.
"""

from __future__ import annotations

import logging
import math
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

from formcalc.config import clamp_precision

logger = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r'\d+\.?\d*|\.\d+')
_WHITESPACE_RE = re.compile(r'\s+')
_SYMBOLS = '+-*/()'

# Nested parentheses deeper than this are rejected before recursion gets close to the interpreter limit
MAX_DEPTH = 100


class ExpressionError(ValueError):
    """Raised internally when a formula cannot be tokenized, parsed or computed."""


class Token(NamedTuple):
    kind: str       # NAME | NUMBER | OP | LPAREN | RPAREN
    text: str
    value: float = 0.0


# ── Value coercion ─────────────────────────────────────────

def to_number(value) -> float:
    """Coerce a cell value to float; anything that is not a finite number becomes 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            # ints past the float range, e.g. a huge JSON literal
            return 0.0
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    return number if math.isfinite(number) else 0.0


def round_half_up(value: float, precision: int) -> float:
    """Round like a spreadsheet would (2.0055 -> 2.01), not banker's rounding."""
    precision = clamp_precision(precision)
    if not math.isfinite(value):
        return 0.0
    if abs(value) >= 1e15:
        # Beyond double precision's fractional digits there is nothing to round
        return float(value)
    try:
        # 15 significant digits drop binary representation noise before rounding
        dec = Decimal(format(value, '.15g'))
        quantum = Decimal(1).scaleb(-precision)
        result = float(dec.quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0.0
    return 0.0 if result == 0 else result


# ── Tokenizer ──────────────────────────────────────────────

class _NameTable:
    """Known names, tried longest first, plus whitespace-stripped aliases."""

    def __init__(self, names: Iterable[str]):
        exact = {n for n in names if n and n.strip()}
        self.exact = sorted(exact, key=len, reverse=True)
        aliases = {}
        for name in exact:
            compact = _WHITESPACE_RE.sub('', name)
            if compact and compact != name and compact not in exact:
                aliases.setdefault(compact, name)
        self.aliases = aliases
        self.alias_keys = sorted(aliases, key=len, reverse=True)

    def match(self, text: str, pos: int):
        """Return (matched_text, canonical_name) for the longest name at ``pos``."""
        best = None
        for name in self.exact:
            if text.startswith(name, pos):
                best = (name, name)
                break
        for alias in self.alias_keys:
            if best is not None and len(alias) <= len(best[0]):
                break
            if text.startswith(alias, pos):
                best = (alias, self.aliases[alias])
                break
        return best


def tokenize(formula: str, names: Iterable[str]) -> List[Token]:
    table = names if isinstance(names, _NameTable) else _NameTable(names)
    tokens = []
    pos = 0
    length = len(formula)
    while pos < length:
        ch = formula[pos]
        if ch.isspace():
            pos += 1
            continue
        name_match = table.match(formula, pos)
        number_match = _NUMBER_RE.match(formula, pos)
        if number_match and (name_match is None or len(number_match.group()) > len(name_match[0])):
            text = number_match.group()
            tokens.append(Token('NUMBER', text, float(text)))
            pos = number_match.end()
        elif name_match is not None:
            tokens.append(Token('NAME', name_match[1]))
            pos += len(name_match[0])
        elif ch in '+-*/':
            tokens.append(Token('OP', ch))
            pos += 1
        elif ch == '(':
            tokens.append(Token('LPAREN', ch))
            pos += 1
        elif ch == ')':
            tokens.append(Token('RPAREN', ch))
            pos += 1
        else:
            end = pos
            while end < length and not formula[end].isspace() and formula[end] not in _SYMBOLS:
                end += 1
            raise ExpressionError(f"Unresolved token '{formula[pos:max(end, pos + 1)]}'")
    return tokens


def referenced_names(formula: str, names: Iterable[str]) -> List[str]:
    """Names a formula refers to, in order of first appearance; [] if it does not tokenize."""
    if not isinstance(formula, str):
        return []
    try:
        tokens = tokenize(formula, names)
    except ExpressionError:
        return []
    seen = []
    for tok in tokens:
        if tok.kind == 'NAME' and tok.text not in seen:
            seen.append(tok.text)
    return seen


# ── Parser / interpreter ───────────────────────────────────

class Num(NamedTuple):
    value: float


class Var(NamedTuple):
    name: str


class UnaryOp(NamedTuple):
    op: str
    operand: object


class BinOp(NamedTuple):
    op: str
    left: object
    right: object


class _Parser:
    """
    Recursive descent over:

        expr   := term (('+' | '-') term)*
        term   := unary (('*' | '/') unary)*
        unary  := ('+' | '-') unary | atom
        atom   := NUMBER | NAME | '(' expr ')'
    """

    def __init__(self, tokens: Sequence[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def parse(self):
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._expr()
        if self.pos != len(self.tokens):
            raise ExpressionError(f"Unexpected '{self.tokens[self.pos].text}'")
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _expr(self):
        node = self._term()
        tok = self._peek()
        while tok is not None and tok.kind == 'OP' and tok.text in '+-':
            self.pos += 1
            node = BinOp(tok.text, node, self._term())
            tok = self._peek()
        return node

    def _term(self):
        node = self._unary()
        tok = self._peek()
        while tok is not None and tok.kind == 'OP' and tok.text in '*/':
            self.pos += 1
            node = BinOp(tok.text, node, self._unary())
            tok = self._peek()
        return node

    def _unary(self):
        tok = self._peek()
        if tok is not None and tok.kind == 'OP' and tok.text in '+-':
            self.pos += 1
            self._enter()
            node = UnaryOp(tok.text, self._unary())
            self.depth -= 1
            return node
        return self._atom()

    def _atom(self):
        tok = self._peek()
        if tok is None:
            raise ExpressionError("Unexpected end of expression")
        self.pos += 1
        if tok.kind == 'NUMBER':
            return Num(tok.value)
        if tok.kind == 'NAME':
            return Var(tok.text)
        if tok.kind == 'LPAREN':
            self._enter()
            node = self._expr()
            closing = self._peek()
            if closing is None or closing.kind != 'RPAREN':
                raise ExpressionError("Missing ')'")
            self.pos += 1
            self.depth -= 1
            return node
        raise ExpressionError(f"Unexpected '{tok.text}'")

    def _enter(self):
        self.depth += 1
        if self.depth > MAX_DEPTH:
            raise ExpressionError("Expression nested too deeply")


def parse(tokens: Sequence[Token]):
    return _Parser(tokens).parse()


def interpret(node, values: Dict[str, float]) -> float:
    if isinstance(node, Num):
        return node.value
    if isinstance(node, Var):
        return values.get(node.name, 0.0)
    if isinstance(node, UnaryOp):
        operand = interpret(node.operand, values)
        return -operand if node.op == '-' else operand
    left = interpret(node.left, values)
    right = interpret(node.right, values)
    if node.op == '+':
        return left + right
    if node.op == '-':
        return left - right
    if node.op == '*':
        return left * right
    if right == 0:
        raise ZeroDivisionError("division by zero")
    return left / right


def compute_tokens(tokens: Sequence[Token], values: Dict[str, float], precision: int = 2) -> float:
    """Parse and interpret an already tokenized expression with the zero-fallback policy."""
    try:
        result = interpret(parse(tokens), values)
    except ZeroDivisionError:
        logger.debug("[EVAL] Division by zero -> 0")
        return round_half_up(0.0, precision)
    except (ExpressionError, ArithmeticError, RecursionError) as e:
        logger.debug("[EVAL] %s -> 0", e)
        return round_half_up(0.0, precision)
    if not math.isfinite(result):
        logger.debug("[EVAL] Non-finite result (%s) -> 0", result)
        return round_half_up(0.0, precision)
    return round_half_up(result, precision)


# ── Public entry points ────────────────────────────────────

def build_value_map(row, fields=None, cross_form_values=None) -> Dict[str, float]:
    """
    Name -> number map for one row.

    With a field list, each field's value is read by id (falling back to its
    name); without one, the row's own keys are taken as names.
    """
    row = row or {}
    values = {}
    if fields is None:
        for key, raw in row.items():
            values[str(key)] = to_number(raw)
    else:
        for field in fields:
            raw = row.get(field.id)
            if raw is None:
                raw = row.get(field.name)
            values[field.name] = to_number(raw)
    for key, raw in (cross_form_values or {}).items():
        values[key] = to_number(raw)
    return values


def evaluate_with(formula, values: Dict[str, float], precision: int = 2) -> float:
    """Evaluate ``formula`` against a ready name -> number map."""
    precision = clamp_precision(precision)
    if not isinstance(formula, str) or not formula.strip():
        return round_half_up(0.0, precision)
    try:
        tokens = tokenize(formula, values.keys())
    except ExpressionError as e:
        logger.debug("[EVAL] %s in formula %r -> 0", e, formula)
        return round_half_up(0.0, precision)
    return compute_tokens(tokens, values, precision)


def evaluate(formula, row=None, fields=None, cross_form_values=None, precision: int = 2) -> float:
    """
    Evaluate a formula for one data row.

    Args:
        formula: Formula text using field names, e.g. "入库 - 出库".
        row: Mapping of field id -> raw value.
        fields: Field definitions of the row's form (names used in formulas).
        cross_form_values: Mapping "FormName.FieldName" -> value from other forms.
        precision: Decimal digits of the result, clamped to 0..6.

    Returns:
        A finite float; 0 when the formula cannot be computed.
    """
    try:
        values = build_value_map(row, fields, cross_form_values)
    except (AttributeError, TypeError) as e:
        logger.debug("[EVAL] Unusable row %r: %s -> 0", row, e)
        values = dict((k, to_number(v)) for k, v in (cross_form_values or {}).items())
    return evaluate_with(formula, values, precision)
