# backend/dbrest/schema.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    TABLE = "table"
    VIEW = "view"


@dataclass(frozen=True)
class ResourceDescriptor:
    name: str
    kind: ResourceKind


class SchemaCatalog:
    """
    Answers "is this name a table, a view, or nothing?" from the live database.

    With ``ttl_seconds=0`` (the default) every lookup reflects the current
    schema. A positive TTL caches the listing; a name missing from the cache is
    re-checked against the database once before it is reported unknown, so a
    freshly created table is visible on the very next request.
    """

    def __init__(
        self,
        engine_getter: Callable[[], Engine],
        *,
        schema: Optional[str] = None,
        ttl_seconds: float = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine_getter = engine_getter
        self._schema = schema
        self._ttl = float(ttl_seconds or 0)
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Dict[str, ResourceKind]] = None
        self._cached_at = 0.0

    def _load(self) -> Dict[str, ResourceKind]:
        insp = sa_inspect(self._engine_getter())
        kinds: Dict[str, ResourceKind] = {}
        for name in insp.get_table_names(schema=self._schema):
            kinds[name] = ResourceKind.TABLE
        for name in insp.get_view_names(schema=self._schema):
            kinds[name] = ResourceKind.VIEW
        log.debug("schema listing: %d tables/views", len(kinds))
        return kinds

    def _snapshot(self, *, force: bool = False) -> Dict[str, ResourceKind]:
        if self._ttl <= 0:
            return self._load()
        with self._lock:
            fresh = self._cached is not None and (self._clock() - self._cached_at) < self._ttl
            if force or not fresh:
                self._cached = self._load()
                self._cached_at = self._clock()
            return dict(self._cached)

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    def list_resources(self) -> List[ResourceDescriptor]:
        return [ResourceDescriptor(name, kind) for name, kind in sorted(self._snapshot().items())]

    def resolve(self, name: str) -> Optional[ResourceKind]:
        kind = self._snapshot().get(name)
        if kind is None and self._ttl > 0:
            kind = self._snapshot(force=True).get(name)
        return kind

    def columns(self, name: str) -> Set[str]:
        insp = sa_inspect(self._engine_getter())
        return {col["name"] for col in insp.get_columns(name, schema=self._schema)}
