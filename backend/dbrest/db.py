# backend/dbrest/db.py
from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import StatementError

from .config_loader import config_dir, load_env_files

log = logging.getLogger(__name__)

# Module-level singleton
_ENGINE: Optional[Engine] = None
_INIT_LOCK = threading.Lock()


@dataclass
class Statement:
    """SQL with ``?`` placeholders plus the values for them, left to right."""

    sql: str
    params: List[Any] = field(default_factory=list)

    def placeholder_count(self) -> int:
        return self.sql.count("?")


class QueryError(Exception):
    """A statement the database refused; ``message`` is safe to show to the client."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _from_db_json() -> dict[str, str]:
    """
    Optional: read config/db.json (non-secret) for connection parts if envs are missing.
        {"DB_USER": "app", "DB_NAME": "app", "DB_HOST": "127.0.0.1", "DB_PORT": 5432}
    """
    path = config_dir() / "db.json"
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        log.warning("Failed to read %s", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        return {}
    log.debug("db cfg loaded json file %s", path)
    return {str(k): str(v) for k, v in data.items()}


def build_db_url() -> str:
    """
    Decide the effective DATABASE_URL.
    Precedence:
      1) DATABASE_URL
      2) DB_* envs (or PG*), possibly backed by config/db.json
    """
    load_env_files()

    url = os.getenv("DATABASE_URL")
    if url:
        return url

    cfg = {
        "DB_USER": os.getenv("DB_USER") or os.getenv("PGUSER"),
        "DB_PASSWORD": os.getenv("DB_PASSWORD") or os.getenv("PGPASSWORD"),
        "DB_NAME": os.getenv("DB_NAME") or os.getenv("PGDATABASE"),
        "DB_HOST": os.getenv("DB_HOST") or os.getenv("PGHOST"),
        "DB_PORT": os.getenv("DB_PORT") or os.getenv("PGPORT"),
    }
    if any(v is None for v in cfg.values()):
        json_fallback = _from_db_json()
        for k in cfg:
            if cfg[k] is None and k in json_fallback:
                cfg[k] = json_fallback[k]

    user = cfg["DB_USER"] or "app"
    pwd = cfg["DB_PASSWORD"] or "app"
    name = cfg["DB_NAME"] or "app"
    host = cfg["DB_HOST"] or "127.0.0.1"
    port = str(cfg["DB_PORT"] or "5432")

    # URL-encode password in case it has special chars
    return f"postgresql+psycopg://{user}:{quote_plus(pwd)}@{host}:{port}/{name}"


def _sqlite_regexp(pattern: Any, value: Any) -> bool:
    if pattern is None or value is None:
        return False
    return re.search(str(pattern), str(value)) is not None


def install_sqlite_regexp(engine: Engine) -> None:
    """SQLite parses ``x REGEXP y`` but ships no implementation; provide one per connection."""

    @event.listens_for(engine, "connect")
    def _register_regexp(dbapi_conn: Any, _connection_record: Any) -> None:
        dbapi_conn.create_function("REGEXP", 2, _sqlite_regexp)


def _create_engine(db_url: str) -> Engine:
    echo = bool(int(os.getenv("SQLALCHEMY_ECHO", "0")))
    if db_url.startswith("sqlite"):
        log.info("Creating DB engine url=%s echo=%s", db_url, echo)
        engine = create_engine(db_url, echo=echo)
        install_sqlite_regexp(engine)
        return engine

    pool_size = int(os.getenv("SQLALCHEMY_POOL_SIZE", "5"))
    max_overflow = int(os.getenv("SQLALCHEMY_MAX_OVERFLOW", "10"))
    pool_pre_ping = bool(int(os.getenv("SQLALCHEMY_POOL_PRE_PING", "1")))
    log.info(
        "Creating DB engine url=%s echo=%s pool_size=%s max_overflow=%s pre_ping=%s",
        re.sub(r"://([^:/@]+):[^@]*@", r"://\1:***@", db_url),
        echo,
        pool_size,
        max_overflow,
        pool_pre_ping,
    )
    return create_engine(
        db_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
    )


def get_engine() -> Engine:
    """
    Return a process-wide SQLAlchemy Engine (with pooling).
    Creates it on first use, thread-safe.
    """
    global _ENGINE
    if _ENGINE is not None:
        return _ENGINE

    with _INIT_LOCK:
        if _ENGINE is None:
            _ENGINE = _create_engine(build_db_url())
        return _ENGINE


def configure_engine(target: Union[str, Engine]) -> Engine:
    """Install a specific engine (or build one from a URL) instead of the env-derived default."""
    global _ENGINE
    with _INIT_LOCK:
        if _ENGINE is not None and _ENGINE is not target:
            _ENGINE.dispose()
        if isinstance(target, str):
            _ENGINE = _create_engine(target)
        else:
            _ENGINE = target
            if target.dialect.name == "sqlite":
                install_sqlite_regexp(target)
        return _ENGINE


def dispose_engine() -> None:
    """Close all pooled connections (useful in tests or graceful shutdown)."""
    global _ENGINE
    with _INIT_LOCK:
        if _ENGINE is not None:
            _ENGINE.dispose()
            _ENGINE = None


def get_db_conn() -> Connection:
    """
    Get a SQLAlchemy Connection from the global Engine.
    Caller is responsible for closing it (use 'with' for convenience).
    """
    return get_engine().connect()


def ping_db() -> bool:
    """Quick health check."""
    try:
        with get_db_conn() as conn:
            conn.execute(text("select 1"))
        return True
    except Exception:
        log.exception("DB ping failed")
        return False


def bind_placeholders(sql: str, params: Sequence[Any]) -> Tuple[str, Dict[str, Any]]:
    """Rewrite ``?`` placeholders as ``:p0, :p1, ...`` for ``sqlalchemy.text``."""
    pieces = sql.split("?")
    if len(pieces) - 1 != len(params):
        raise ValueError(f"statement has {len(pieces) - 1} placeholders but {len(params)} parameters")
    out = [pieces[0]]
    bound: Dict[str, Any] = {}
    for index, (value, rest) in enumerate(zip(params, pieces[1:])):
        name = f"p{index}"
        bound[name] = value
        out.append(f":{name}")
        out.append(rest)
    return "".join(out), bound


_BACKGROUND = re.compile(r"\s*\(Background on this error at:[^)]*\)")


def _primary_message(orig: BaseException) -> Optional[str]:
    # psycopg exposes the bare server message; str(orig) adds LINE/caret context
    diag = getattr(orig, "diag", None)
    primary = getattr(diag, "message_primary", None)
    return primary if isinstance(primary, str) and primary else None


def scrub_error_message(exc: BaseException) -> str:
    """Driver message without any statement text from the driver or SQLAlchemy."""
    orig = getattr(exc, "orig", None)
    message = _primary_message(orig) if orig is not None else None
    if message is None:
        message = str(orig) if orig is not None else str(exc)
    # everything from "[SQL: ..." on is the statement and its parameters
    message = message.split("[SQL:", 1)[0]
    # libpq quotes the offending statement as "LINE n: ..." plus a caret line
    message = message.split("\nLINE ", 1)[0]
    message = _BACKGROUND.sub("", message)
    return message.strip() or exc.__class__.__name__


def _write_metadata(result: Any) -> Dict[str, Any]:
    try:
        insert_id = result.lastrowid
    except AttributeError:
        insert_id = None
    return {"affectedRows": result.rowcount, "insertId": insert_id}


def run_statement(statement: Statement, engine: Optional[Engine] = None) -> Union[List[Dict[str, Any]], Dict[str, Any]]:
    """
    Execute one statement in its own transaction.

    Returns a list of row dicts when the statement produces rows, otherwise
    ``{"affectedRows": n, "insertId": id}``. Database failures are raised as
    :class:`QueryError` with the SQL stripped out of the message.
    """
    sql, bound = bind_placeholders(statement.sql, statement.params)
    log.debug("SQL %s (%d params)", statement.sql, len(statement.params))
    engine = engine or get_engine()
    try:
        with engine.begin() as conn:
            result = conn.execute(text(sql), bound)
            if result.returns_rows:
                return [dict(row) for row in result.mappings().all()]
            return _write_metadata(result)
    # sqlite3 raises a bare OverflowError for integers beyond 64 bits
    except (StatementError, OverflowError) as e:
        message = scrub_error_message(e)
        log.warning("Statement failed: %s", message)
        raise QueryError(message) from e
