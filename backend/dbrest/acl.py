# backend/dbrest/acl.py
from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from typing import Any, Iterable, List, Mapping, Optional, Protocol

log = logging.getLogger(__name__)

ANONYMOUS_ROLE = "anonymous"
DEFAULT_USER_ROLE = "user"


class AccessGate(Protocol):
    def allow(self, request: Any, resource: str, method: str, is_table: bool, is_view: bool) -> bool:
        ...


def _as_patterns(value: Any) -> List[str]:
    if value is None:
        return ["*"]
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


class AclRule:
    """
    One allow rule from configuration::

        {"roles": ["admin"], "resources": ["*"], "methods": ["*"]}
        {"roles": ["anonymous"], "resources": ["products", "v_*"], "methods": ["get"], "kinds": ["view"]}

    Every field takes shell-style patterns; a missing field matches anything.
    """

    def __init__(self, raw: Mapping[str, Any]):
        self.roles = _as_patterns(raw.get("roles"))
        self.resources = _as_patterns(raw.get("resources"))
        self.methods = [m.lower() for m in _as_patterns(raw.get("methods"))]
        self.kinds = [k.lower() for k in _as_patterns(raw.get("kinds"))]

    @staticmethod
    def _matches(candidate: str, patterns: Iterable[str]) -> bool:
        return any(fnmatchcase(candidate, pattern) for pattern in patterns)

    def matches(self, role: str, resource: str, method: str, kind: str) -> bool:
        return (
            self._matches(role, self.roles)
            and self._matches(resource, self.resources)
            and self._matches(method, self.methods)
            and self._matches(kind, self.kinds)
        )

    def __repr__(self) -> str:
        return f"AclRule(roles={self.roles!r}, resources={self.resources!r}, methods={self.methods!r}, kinds={self.kinds!r})"


class RuleBasedAccessGate:
    """Allow a request when any configured rule matches the caller's role, the resource and the method."""

    def __init__(self, rules: Optional[Iterable[Mapping[str, Any]]], *, role_field: str = "role"):
        self.open = rules is None
        self.rules = [AclRule(rule) for rule in (rules or [])]
        self.role_field = role_field
        if self.open:
            log.warning("No acl rules configured: every resource is open to every caller")

    def role_of(self, user: Optional[Mapping[str, Any]]) -> str:
        if not user:
            return ANONYMOUS_ROLE
        role = user.get(self.role_field)
        if role is None or str(role).strip() == "":
            return DEFAULT_USER_ROLE
        return str(role).strip()

    def allow(self, request: Any, resource: str, method: str, is_table: bool, is_view: bool) -> bool:
        if self.open:
            return True
        role = self.role_of(getattr(request, "user", None))
        kind = "view" if is_view else "table" if is_table else ""
        for rule in self.rules:
            if rule.matches(role, resource, method, kind):
                return True
        log.info("acl denied role=%s method=%s resource=%s", role, method, resource)
        return False
