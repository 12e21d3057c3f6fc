"""URL query string -> filter clauses, sort order and pagination.

Grammar, one fragment per ``&``::

    [|]field<op>value      op in  !=  >=  <=  =  >  <  ≈
    sort=a,-b              "-" prefix sorts descending
    limit=<positive int>
    offset=<non-negative int>

Fragments that do not fit are skipped rather than rejected; each one is kept
as an :class:`IgnoredToken` on the parsed result so callers can log them.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union
from urllib.parse import unquote

log = logging.getLogger(__name__)

# Large enough to mean "no limit" on PostgreSQL (bigint), MySQL and SQLite.
UNBOUNDED_LIMIT = 2**63 - 1

RESERVED_PARAMS = ("sort", "limit", "offset")
OR_MARKER = "|"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_INTEGER = re.compile(r"^[+-]?\d+$")
_DECIMAL = re.compile(r"^[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?$")


class Operator(str, Enum):
    # Declaration order is the search order: two-character operators must be
    # tried before their one-character prefixes.
    NE = "!="
    GTE = ">="
    LTE = "<="
    EQ = "="
    GT = ">"
    LT = "<"
    REGEX = "≈"


class JoinKind(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class Comparison:
    operator: Operator
    value: Union[str, int, float]


@dataclass(frozen=True)
class FilterClause:
    field: str
    comparison: Comparison
    join: JoinKind = JoinKind.AND


@dataclass(frozen=True)
class ControlParam:
    name: str
    value: str


@dataclass(frozen=True)
class IgnoredToken:
    raw: str
    reason: str


ParsedToken = Union[FilterClause, ControlParam, IgnoredToken]


@dataclass
class ParsedQuery:
    filters: List[FilterClause] = field(default_factory=list)
    sort: List[Tuple[str, str]] = field(default_factory=list)
    limit: Optional[int] = None
    offset: Optional[int] = None
    ignored: List[IgnoredToken] = field(default_factory=list)


def is_identifier(name: str) -> bool:
    return isinstance(name, str) and bool(_IDENTIFIER.match(name))


def coerce_number(text: str) -> Optional[Union[int, float]]:
    """Return ``text`` as an int or float when the whole string is numeric, else None."""
    if not isinstance(text, str):
        return None
    candidate = text.strip()
    if not candidate:
        return None
    if _INTEGER.match(candidate):
        return int(candidate)
    if _DECIMAL.match(candidate):
        return float(candidate)
    return None


def coerce_value(text: str) -> Union[str, int, float]:
    number = coerce_number(text)
    return text if number is None else number


def parse_path_id(raw_id: Optional[str]) -> Optional[Union[int, float]]:
    """A ``/api/<resource>/<id>`` segment counts only when it is fully numeric."""
    if raw_id is None:
        return None
    return coerce_number(str(raw_id))


def _find_operator(part: str) -> Optional[Operator]:
    for op in Operator:
        if op.value in part:
            return op
    return None


def parse_token(part: str) -> ParsedToken:
    """Classify a single decoded ``&``-separated fragment."""
    op = _find_operator(part)
    if op is None:
        return IgnoredToken(part, "no operator")

    key, _, raw_value = part.partition(op.value)
    join = JoinKind.AND
    if key.startswith(OR_MARKER):
        join = JoinKind.OR
        key = key[len(OR_MARKER):]

    if key in RESERVED_PARAMS:
        if op is not Operator.EQ:
            return IgnoredToken(part, f"{key} only accepts '='")
        return ControlParam(key, raw_value)

    if not is_identifier(key):
        return IgnoredToken(part, "invalid field name")

    value: Union[str, int, float] = raw_value
    if op is not Operator.REGEX:
        value = coerce_value(raw_value)
    return FilterClause(key, Comparison(op, value), join)


def _parse_sort(raw: str) -> List[Tuple[str, str]]:
    order: List[Tuple[str, str]] = []
    for item in raw.split(","):
        name = item.strip()
        direction = "ASC"
        if name.startswith("-"):
            name = name[1:]
            direction = "DESC"
        if not is_identifier(name):
            log.debug("dropping sort entry %r", item)
            continue
        order.append((name, direction))
    return order


def _parse_count(raw: str, *, minimum: int) -> Optional[int]:
    number = coerce_number(raw)
    if not isinstance(number, int) or number < minimum:
        return None
    return number


def _apply_control(parsed: ParsedQuery, param: ControlParam) -> None:
    if param.name == "sort":
        parsed.sort = _parse_sort(param.value)
        return
    if param.name == "limit":
        limit = _parse_count(param.value, minimum=1)
        if limit is None:
            parsed.ignored.append(IgnoredToken(f"limit={param.value}", "limit must be a positive integer"))
        else:
            parsed.limit = limit
        return
    offset = _parse_count(param.value, minimum=0)
    if offset is None:
        parsed.ignored.append(IgnoredToken(f"offset={param.value}", "offset must be a non-negative integer"))
    else:
        parsed.offset = offset


def parse_query_string(raw: Optional[str]) -> ParsedQuery:
    """Parse everything after the ``?`` of a request URL."""
    parsed = ParsedQuery()
    if not raw:
        return parsed
    if raw.startswith("?"):
        raw = raw[1:]

    for chunk in raw.split("&"):
        if not chunk:
            continue
        token = parse_token(unquote(chunk))
        if isinstance(token, FilterClause):
            parsed.filters.append(token)
        elif isinstance(token, ControlParam):
            _apply_control(parsed, token)
        else:
            parsed.ignored.append(token)

    # OFFSET needs a LIMIT in front of it in most dialects
    if parsed.offset is not None and parsed.limit is None:
        parsed.limit = UNBOUNDED_LIMIT

    if parsed.ignored:
        log.debug("ignored query fragments: %s", ", ".join(repr(t.raw) for t in parsed.ignored))
    return parsed
