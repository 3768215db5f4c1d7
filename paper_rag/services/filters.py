# =============================================================================
# Metadata Filter Expressions
# =============================================================================
#
# A small, store-agnostic filter language for narrowing vector search:
#
#   Eq(field, value)                      field == value
#   Range(field, gt=, gte=, lt=, lte=)    numeric bounds (any subset)
#   In(field, values)                     field is one of values
#   And(clauses)                          every clause holds
#
# Each backend translates the expression into its own syntax
# (to_chroma_where() here, SQLAlchemy clauses in PgVectorIndex), so the
# retrieval tool never depends on a particular vector store.
#
# Callers may also pass a Mongo-style mapping, parsed by parse_filter():
#   {"source": "attention.html"}
#   {"ordinal": {"$gte": 2, "$lt": 10}}
#   {"source": {"$in": ["a", "b"]}}
#   {"$and": [{...}, {...}]}
# =============================================================================

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from paper_rag.errors import InputValidationError

Scalar = Union[str, int, float, bool]


@dataclass(frozen=True)
class Eq:
    field: str
    value: Scalar


@dataclass(frozen=True)
class Range:
    field: str
    gt: float | None = None
    gte: float | None = None
    lt: float | None = None
    lte: float | None = None

    def __post_init__(self) -> None:
        if all(bound is None for bound in (self.gt, self.gte, self.lt, self.lte)):
            raise InputValidationError(
                f"Range filter on '{self.field}' needs at least one bound"
            )

    def bounds(self) -> list[tuple[str, float]]:
        """Non-empty bounds as (operator, value) pairs."""
        return [
            (op, value)
            for op, value in (
                ("gt", self.gt), ("gte", self.gte),
                ("lt", self.lt), ("lte", self.lte),
            )
            if value is not None
        ]


@dataclass(frozen=True)
class In:
    field: str
    values: tuple[Scalar, ...]

    def __post_init__(self) -> None:
        if not self.values:
            raise InputValidationError(
                f"In filter on '{self.field}' needs at least one value"
            )


@dataclass(frozen=True)
class And:
    clauses: tuple[FilterExpression, ...]

    def __post_init__(self) -> None:
        if not self.clauses:
            raise InputValidationError("And filter needs at least one clause")


FilterExpression = Union[Eq, Range, In, And]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_RANGE_OPERATORS = {"$gt": "gt", "$gte": "gte", "$lt": "lt", "$lte": "lte"}


def parse_filter(
    raw: FilterExpression | Mapping[str, Any] | None,
) -> FilterExpression | None:
    """
    Normalise a filter given either as an expression or as a mapping.

    Raises:
        InputValidationError: Unknown operator or malformed value.
    """
    if raw is None or isinstance(raw, (Eq, Range, In, And)):
        return raw
    if not isinstance(raw, Mapping):
        raise InputValidationError(
            f"Filter must be a mapping or filter expression, got {type(raw).__name__}"
        )
    if not raw:
        return None

    clauses: list[FilterExpression] = []
    for key, value in raw.items():
        if key == "$and":
            if not isinstance(value, (list, tuple)):
                raise InputValidationError("'$and' expects a list of filters")
            clauses.extend(
                clause for clause in (parse_filter(item) for item in value)
                if clause is not None
            )
        elif key.startswith("$"):
            raise InputValidationError(f"Unsupported filter operator '{key}'")
        elif isinstance(value, Mapping):
            clauses.extend(_parse_field_operators(key, value))
        else:
            clauses.append(Eq(key, _scalar(key, value)))

    if len(clauses) == 1:
        return clauses[0]
    return And(tuple(clauses))


def _parse_field_operators(
    field: str,
    operators: Mapping[str, Any],
) -> list[FilterExpression]:
    clauses: list[FilterExpression] = []
    bounds: dict[str, float] = {}
    for op, value in operators.items():
        if op == "$eq":
            clauses.append(Eq(field, _scalar(field, value)))
        elif op == "$in":
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise InputValidationError(f"'$in' on '{field}' expects a list")
            clauses.append(In(field, tuple(_scalar(field, v) for v in value)))
        elif op in _RANGE_OPERATORS:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InputValidationError(
                    f"'{op}' on '{field}' expects a number, got {value!r}"
                )
            bounds[_RANGE_OPERATORS[op]] = value
        else:
            raise InputValidationError(
                f"Unsupported operator '{op}' on field '{field}'"
            )
    if bounds:
        clauses.append(Range(field, **bounds))
    return clauses


def _scalar(field: str, value: Any) -> Scalar:
    if isinstance(value, (str, int, float, bool)):
        return value
    raise InputValidationError(
        f"Filter value for '{field}' must be str, int, float or bool, "
        f"got {type(value).__name__}"
    )


# ---------------------------------------------------------------------------
# Evaluation & Translation
# ---------------------------------------------------------------------------


def matches(expr: FilterExpression | None, metadata: Mapping[str, Any]) -> bool:
    """Evaluate `expr` against a metadata mapping. None matches everything."""
    if expr is None:
        return True
    if isinstance(expr, And):
        return all(matches(clause, metadata) for clause in expr.clauses)
    if expr.field not in metadata:
        return False

    value = metadata[expr.field]
    if isinstance(expr, Eq):
        return value == expr.value
    if isinstance(expr, In):
        return value in expr.values
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    checks = {
        "gt": lambda bound: value > bound,
        "gte": lambda bound: value >= bound,
        "lt": lambda bound: value < bound,
        "lte": lambda bound: value <= bound,
    }
    return all(checks[op](bound) for op, bound in expr.bounds())


def to_chroma_where(expr: FilterExpression | None) -> dict | None:
    """Translate an expression into a ChromaDB `where` clause."""
    if expr is None:
        return None
    if isinstance(expr, And):
        translated = [to_chroma_where(clause) for clause in expr.clauses]
        return translated[0] if len(translated) == 1 else {"$and": translated}
    if isinstance(expr, Eq):
        return {expr.field: {"$eq": expr.value}}
    if isinstance(expr, In):
        return {expr.field: {"$in": list(expr.values)}}

    conditions = [{expr.field: {f"${op}": bound}} for op, bound in expr.bounds()]
    return conditions[0] if len(conditions) == 1 else {"$and": conditions}
