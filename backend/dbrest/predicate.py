from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List

from .query_filter import FilterClause, Operator

PLACEHOLDER = "?"

_REGEX_OPERATORS = {
    "postgresql": "~",
    "mysql": "REGEXP",
    "mariadb": "REGEXP",
    "sqlite": "REGEXP",
}


def regex_operator_for(dialect_name: str) -> str:
    """Return the regex-match operator for a SQLAlchemy dialect name."""
    return _REGEX_OPERATORS.get((dialect_name or "").lower(), "REGEXP")


@dataclass
class CompiledPredicate:
    where_sql: str = ""
    params: List[Any] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.where_sql)


def compile_predicate(filters: Iterable[FilterClause], *, regex_operator: str = "REGEXP") -> CompiledPredicate:
    """
    Render filter clauses as ``field op ?`` joined by AND/OR, in input order.

    Each clause carries its own join keyword; the first one has nothing to join
    to so its keyword is dropped. Repeated fields are kept, which is how ranges
    are expressed (``age>=18&age<65``).
    """
    pieces: List[str] = []
    params: List[Any] = []
    for clause in filters:
        op = clause.comparison.operator
        op_text = regex_operator if op is Operator.REGEX else op.value
        fragment = f"{clause.field} {op_text} {PLACEHOLDER}"
        if pieces:
            fragment = f"{clause.join.value} {fragment}"
        pieces.append(fragment)
        params.append(clause.comparison.value)
    return CompiledPredicate(" ".join(pieces), params)
