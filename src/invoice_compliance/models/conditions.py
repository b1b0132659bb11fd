"""Legal-mention predicates.

Country tables express conditional mentions either as a dotted path string
(``transaction.isIntraEU``) or as a structured mapping::

    {and: [transaction.isIntraEU, {property: customer.countryCode, operator: in, value: [DE, AT]}]}

Both shapes are parsed into a closed set of condition variants. Paths are
looked up in a fixed table, so a typo in a YAML file evaluates to false
instead of reaching into arbitrary attributes.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from invoice_compliance.models.context import TransactionContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathCheck:
    path: str


@dataclass(frozen=True)
class Compare:
    property: str
    operator: str
    value: Any = None


@dataclass(frozen=True)
class And:
    items: tuple[Condition, ...]


@dataclass(frozen=True)
class Or:
    items: tuple[Condition, ...]


@dataclass(frozen=True)
class Not:
    item: Condition


@dataclass(frozen=True)
class Unknown:
    raw: Any


Condition = PathCheck | Compare | And | Or | Not | Unknown

OPERATORS = frozenset(
    {"equals", "not_equals", "in", "not_in", "gt", "gte", "lt", "lte", "contains", "matches", "exists"}
)

_Accessor = Callable[[TransactionContext], Any]

_PATHS: dict[str, _Accessor] = {
    "supplier.country_code": lambda c: c.supplier.country_code,
    "supplier.vat_number": lambda c: c.supplier.vat_number,
    "supplier.is_vat_registered": lambda c: c.supplier.is_vat_registered,
    "supplier.vat_exempt": lambda c: c.supplier.vat_exempt,
    "customer.country_code": lambda c: c.customer.country_code,
    "customer.vat_number": lambda c: c.customer.vat_number,
    "customer.is_vat_registered": lambda c: c.customer.is_vat_registered,
    "customer.is_public_entity": lambda c: c.customer.is_public_entity,
    "transaction.type": lambda c: c.transaction.type,
    "transaction.nature": lambda c: c.transaction.nature,
    "transaction.is_domestic": lambda c: c.transaction.is_domestic,
    "transaction.is_intra_eu": lambda c: c.transaction.is_intra_eu,
    "transaction.is_export": lambda c: c.transaction.is_export,
    "place.delivery": lambda c: c.place.delivery,
    "place.performance": lambda c: c.place.performance,
    "place.taxation": lambda c: c.place.taxation,
}

# Spellings used by older country tables
_LEGACY_PATHS = {
    "company.exemptVat": "supplier.vat_exempt",
    "company.exempt_vat": "supplier.vat_exempt",
    "supplier.countryCode": "supplier.country_code",
    "supplier.vatNumber": "supplier.vat_number",
    "supplier.isVatRegistered": "supplier.is_vat_registered",
    "customer.countryCode": "customer.country_code",
    "customer.vatNumber": "customer.vat_number",
    "customer.isVatRegistered": "customer.is_vat_registered",
    "customer.isPublicEntity": "customer.is_public_entity",
    "transaction.isDomestic": "transaction.is_domestic",
    "transaction.isIntraEU": "transaction.is_intra_eu",
    "transaction.isExport": "transaction.is_export",
}


def canonical_path(path: str) -> str | None:
    """Map a (possibly legacy) dotted path to its canonical name, or None if unknown."""
    path = _LEGACY_PATHS.get(path, path)
    return path if path in _PATHS else None


def parse_condition(raw: Any) -> Condition:
    """Parse a YAML condition value into a Condition variant."""
    if isinstance(raw, str):
        path = canonical_path(raw.strip())
        return PathCheck(path) if path else Unknown(raw)
    if isinstance(raw, dict):
        if len(raw) == 1 and "and" in raw and isinstance(raw["and"], list):
            return And(tuple(parse_condition(r) for r in raw["and"]))
        if len(raw) == 1 and "or" in raw and isinstance(raw["or"], list):
            return Or(tuple(parse_condition(r) for r in raw["or"]))
        if len(raw) == 1 and "not" in raw:
            return Not(parse_condition(raw["not"]))
        if "property" in raw and raw.get("operator") in OPERATORS:
            path = canonical_path(str(raw["property"]))
            if path:
                return Compare(path, raw["operator"], raw.get("value"))
    return Unknown(raw)


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return actual is not None
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "in":
        return isinstance(expected, list | tuple | set) and actual in expected
    if operator == "not_in":
        return isinstance(expected, list | tuple | set) and actual not in expected
    if operator == "contains":
        return actual is not None and expected is not None and str(expected) in str(actual)
    if operator == "matches":
        return actual is not None and re.search(str(expected), str(actual)) is not None
    if actual is None or expected is None:
        return False
    try:
        if operator == "gt":
            return actual > expected
        if operator == "gte":
            return actual >= expected
        if operator == "lt":
            return actual < expected
        if operator == "lte":
            return actual <= expected
    except TypeError:
        return False
    return False


def evaluate(condition: Condition, context: TransactionContext) -> bool:
    """Evaluate *condition* against *context*. Never raises."""
    match condition:
        case PathCheck(path=path):
            return bool(_PATHS[path](context))
        case Compare(property=prop, operator=op, value=value):
            try:
                return _compare(_PATHS[prop](context), op, value)
            except re.error:
                logger.warning("Invalid regex in condition on %s: %r", prop, value)
                return False
        case And(items=items):
            return all(evaluate(i, context) for i in items)
        case Or(items=items):
            return any(evaluate(i, context) for i in items)
        case Not(item=item):
            return not evaluate(item, context)
        case Unknown(raw=raw):
            logger.warning("Unknown legal-mention condition %r, treating as false", raw)
            return False
    return False
