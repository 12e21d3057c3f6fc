"""Per-request CRUD state machine for ``/api/<resource>[/<id>]``.

ResolveKind -> Authorize -> ValidateMethod -> read|create|update|delete -> Respond,
stopping at the first failure. An unknown resource is reported as 404 before
the access gate is consulted, so the gate only ever sees real tables and
views. PATCH is handled as PUT from the start.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .acl import AccessGate
from .db import QueryError, Statement
from .errors import ApiError, BadRequestError, ForbiddenError, MethodNotAllowedError, NotFoundError
from .passwords import PasswordHasher
from .predicate import compile_predicate
from .query_filter import Comparison, FilterClause, Operator, ParsedQuery, is_identifier, parse_path_id, parse_query_string
from .schema import ResourceKind

log = logging.getLogger(__name__)

ID_COLUMN = "id"

TABLE_METHODS = ("get", "post", "put", "delete")
VIEW_METHODS = ("get",)


@dataclass
class RestRequest:
    method: str
    resource: str
    raw_id: Optional[str] = None
    query_string: str = ""
    body: Any = None
    user: Optional[Mapping[str, Any]] = None


@dataclass
class DispatchResult:
    payload: Any
    status: int = 200


@dataclass
class DispatcherSettings:
    identity_table: str = "users"
    password_field: str = "password"
    strict_columns: bool = False
    regex_operator: str = "REGEXP"


def normalize_method(method: str) -> str:
    method = (method or "").lower()
    return "put" if method == "patch" else method


class Dispatcher:
    def __init__(
        self,
        catalog: Any,
        gate: AccessGate,
        runner: Callable[[Statement], Any],
        *,
        hasher: Optional[PasswordHasher] = None,
        settings: Optional[DispatcherSettings] = None,
    ):
        self.catalog = catalog
        self.gate = gate
        self.runner = runner
        self.hasher = hasher
        self.settings = settings or DispatcherSettings()
        self._handlers: Dict[str, Callable[[RestRequest, Any], DispatchResult]] = {
            "get": self.read,
            "post": self.create,
            "put": self.update,
            "delete": self.delete,
        }

    # -------- state machine --------

    def dispatch(self, request: RestRequest) -> DispatchResult:
        name = request.resource
        method = normalize_method(request.method)

        kind = self.catalog.resolve(name)
        if kind is None:
            raise NotFoundError(f"{name} is not a table or view.")

        is_table = kind is ResourceKind.TABLE
        is_view = kind is ResourceKind.VIEW
        if not self.gate.allow(request, name, method, is_table, is_view):
            raise ForbiddenError("Forbidden.")

        allowed = TABLE_METHODS if is_table else VIEW_METHODS
        if method not in allowed:
            raise MethodNotAllowedError(f"{method}-method not allowed on {kind.value} {name}.")

        record_id = parse_path_id(request.raw_id)
        return self._handlers[method](request, record_id)

    def _run(self, statement: Statement) -> Any:
        try:
            return self.runner(statement)
        except QueryError as e:
            # a stale cached listing is one way to end up here
            invalidate = getattr(self.catalog, "invalidate", None)
            if invalidate is not None:
                invalidate()
            raise BadRequestError(e.message) from e

    # -------- verbs --------

    def read(self, request: RestRequest, record_id: Any) -> DispatchResult:
        parsed = parse_query_string(request.query_string)
        if record_id is None:
            referenced = [clause.field for clause in parsed.filters] + [name for name, _ in parsed.sort]
            self._check_columns(request.resource, referenced)
        statement = self.build_select(request.resource, parsed, record_id)
        rows = self._run(statement)
        if record_id is None:
            return DispatchResult(rows)
        if not rows:
            return DispatchResult(None, 404)
        return DispatchResult(rows[0])

    def create(self, request: RestRequest, record_id: Any) -> DispatchResult:
        body = self._body_columns(request)
        # any path segment counts here, numeric or not
        if request.raw_id is not None or ID_COLUMN in body:
            raise BadRequestError("Do not use id:s with post requests!")
        if not body:
            raise BadRequestError("The request body must contain at least one column.")
        self._hash_password(request.resource, body)
        self._check_columns(request.resource, body)
        columns = list(body)
        placeholders = ", ".join("?" for _ in columns)
        statement = Statement(
            f"INSERT INTO {request.resource} ({', '.join(columns)}) VALUES ({placeholders})",
            [body[c] for c in columns],
        )
        return DispatchResult(self._run(statement))

    def update(self, request: RestRequest, record_id: Any) -> DispatchResult:
        if record_id is None:
            raise BadRequestError("You must provide an id in the URL with put requests!")
        body = self._body_columns(request)
        if ID_COLUMN in body:
            raise BadRequestError("You should not provide an id in the request body!")
        if not body:
            raise BadRequestError("The request body must contain at least one column.")
        self._hash_password(request.resource, body)
        self._check_columns(request.resource, body)
        columns = list(body)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        statement = Statement(
            f"UPDATE {request.resource} SET {assignments} WHERE {ID_COLUMN} = ?",
            [body[c] for c in columns] + [record_id],
        )
        return DispatchResult(self._run(statement))

    def delete(self, request: RestRequest, record_id: Any) -> DispatchResult:
        if record_id is None:
            raise BadRequestError("You must provide an id in the URL with delete requests!")
        statement = Statement(f"DELETE FROM {request.resource} WHERE {ID_COLUMN} = ?", [record_id])
        return DispatchResult(self._run(statement))

    # -------- statement building --------

    def build_select(self, resource: str, parsed: ParsedQuery, record_id: Any = None) -> Statement:
        filters: List[FilterClause] = parsed.filters
        if record_id is not None:
            # an id in the path replaces the query string filters entirely
            filters = [FilterClause(ID_COLUMN, Comparison(Operator.EQ, record_id))]
        predicate = compile_predicate(filters, regex_operator=self.settings.regex_operator)

        parts = [f"SELECT * FROM {resource}"]
        if predicate:
            parts.append(f"WHERE {predicate.where_sql}")
        if parsed.sort:
            parts.append("ORDER BY " + ", ".join(f"{name} {direction}" for name, direction in parsed.sort))
        if parsed.limit is not None:
            parts.append(f"LIMIT {int(parsed.limit)}")
        if parsed.offset is not None:
            parts.append(f"OFFSET {int(parsed.offset)}")
        return Statement(" ".join(parts), list(predicate.params))

    def _body_columns(self, request: RestRequest) -> Dict[str, Any]:
        body = request.body
        if body is None:
            body = {}
        if not isinstance(body, Mapping):
            raise BadRequestError("The request body must be a JSON object.")
        for key in body:
            if not is_identifier(key):
                raise BadRequestError(f"Invalid column name: {key!r}")
        return dict(body)

    def _hash_password(self, resource: str, body: Dict[str, Any]) -> None:
        field_name = self.settings.password_field
        if resource != self.settings.identity_table or body.get(field_name) is None:
            return
        if self.hasher is None:
            raise ApiError("Server misconfiguration: password salt is not set.", 500)
        body[field_name] = self.hasher.hash(str(body[field_name]))

    def _check_columns(self, resource: str, names: Iterable[str]) -> None:
        if not self.settings.strict_columns:
            return
        known = self.catalog.columns(resource)
        unknown = [name for name in dict.fromkeys(names) if name not in known]
        if unknown:
            raise BadRequestError(f"Unknown column(s) for {resource}: {', '.join(unknown)}")
