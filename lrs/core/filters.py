"""Injection-safe range-scan predicates.

The storage collaborator accepts a filter expression in a small OData
subset::

    verb eq 'http://adlnet.gov/expapi/verbs/completed' and registration eq 'r-1'

Caller data only ever ends up inside the single-quoted literals.  Field
names must look like identifiers, operators come from a fixed allow-list,
and values get control characters stripped, are truncated, and have
their quotes doubled (in that order, so truncation can never split an
escaped ``''`` pair).

``parse_filter`` is the other half: store implementations use it to turn
the string back into conditions they can evaluate or translate to SQL.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from typing import NamedTuple

from lrs.core.errors import ValidationError

OPERATORS = ("eq", "ne", "gt", "ge", "lt", "le")
CONJUNCTIONS = ("and", "or")
MAX_VALUE_LENGTH = 1000

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTROL = re.compile(r"[\x00-\x1f\x7f]")


class Condition(NamedTuple):
    field: str
    value: object
    operator: str = "eq"


def sanitize_value(value: object) -> str:
    if value is None:
        return ""
    text = _CONTROL.sub("", str(value))[:MAX_VALUE_LENGTH]
    return text.replace("'", "''")


def build_filter(
    conditions: Iterable[Condition | tuple], conjunction: str = "and"
) -> str:
    """Join conditions into one predicate.  Empty string means "no filter".

    Conditions with an empty field or a ``None`` value are skipped.
    """
    conj = conjunction.lower()
    if conj not in CONJUNCTIONS:
        raise ValidationError(f"Invalid filter conjunction: {conjunction!r}")

    parts: list[str] = []
    for raw in conditions:
        cond = Condition(*raw)
        if not cond.field or cond.value is None:
            continue
        if not _FIELD_RE.match(cond.field):
            raise ValidationError(f"Invalid filter field name: {cond.field!r}")
        if cond.operator not in OPERATORS:
            raise ValidationError(f"Invalid filter operator: {cond.operator!r}")
        parts.append(f"{cond.field} {cond.operator} '{sanitize_value(cond.value)}'")

    return f" {conj} ".join(parts)


# ---------------------------------------------------------------------------
# Parsing (store side)
# ---------------------------------------------------------------------------


class Comparison(NamedTuple):
    field: str
    operator: str
    value: str


# Disjunctive normal form: OR of AND-groups.  "and" binds tighter than "or".
ParsedFilter = list[list[Comparison]]

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<literal>'(?:[^']|'')*')|(?P<word>[A-Za-z_][A-Za-z0-9_]*))"
)


def parse_filter(expression: str) -> ParsedFilter:
    """Parse a ``build_filter`` expression.  Empty input parses to ``[]``."""
    if not expression or not expression.strip():
        return []

    tokens = _tokenize(expression)
    groups: ParsedFilter = [[]]
    pos = 0
    while True:
        if pos + 3 > len(tokens):
            raise ValidationError(f"Truncated filter expression: {expression!r}")
        field, op, literal = tokens[pos : pos + 3]
        if field[0] != "word" or not _FIELD_RE.match(field[1]):
            raise ValidationError(f"Expected field name in filter: {field[1]!r}")
        if op[0] != "word" or op[1] not in OPERATORS:
            raise ValidationError(f"Invalid filter operator: {op[1]!r}")
        if literal[0] != "literal":
            raise ValidationError(f"Expected quoted value in filter: {literal[1]!r}")
        value = literal[1][1:-1].replace("''", "'")
        groups[-1].append(Comparison(field[1], op[1], value))
        pos += 3

        if pos == len(tokens):
            return groups
        conj = tokens[pos]
        if conj[0] != "word" or conj[1].lower() not in CONJUNCTIONS:
            raise ValidationError(f"Expected 'and'/'or' in filter: {conj[1]!r}")
        if conj[1].lower() == "or":
            groups.append([])
        pos += 1


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    while pos < len(expression):
        if expression[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ValidationError(f"Malformed filter expression near: {expression[pos:]!r}")
        kind = "literal" if match.group("literal") is not None else "word"
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


def compare(actual: object, operator: str, expected: str) -> bool:
    """Evaluate one comparison against an entity property (string semantics)."""
    if actual is None:
        return operator == "ne"
    text = actual if isinstance(actual, str) else str(actual)
    if operator == "eq":
        return text == expected
    if operator == "ne":
        return text != expected
    if operator == "gt":
        return text > expected
    if operator == "ge":
        return text >= expected
    if operator == "lt":
        return text < expected
    if operator == "le":
        return text <= expected
    raise ValidationError(f"Invalid filter operator: {operator!r}")


def matches(parsed: Sequence[Sequence[Comparison]], properties: dict) -> bool:
    if not parsed:
        return True
    return any(
        all(compare(properties.get(c.field), c.operator, c.value) for c in group)
        for group in parsed
    )
