from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from flask_cors import CORS

from . import db
from .acl import RuleBasedAccessGate
from .config_loader import initialize_app_config
from .dispatcher import Dispatcher, DispatcherSettings
from .errors import register_error_handlers
from .logging_setup import start_log
from .passwords import PasswordHasher
from .predicate import regex_operator_for
from .rest_api import bp as bp_rest
from .schema import SchemaCatalog
from .user_login import bp as bp_auth

log = logging.getLogger(__name__)


def _build_services(app: Flask) -> dict[str, Any]:
    """Wire the per-app collaborators from app.config."""
    cfg = app.config
    salt = cfg.get("PASSWORD_SALT")
    hasher = PasswordHasher(salt) if salt else None
    catalog = SchemaCatalog(db.get_engine, ttl_seconds=cfg["SCHEMA_CACHE_SECONDS"])
    gate = RuleBasedAccessGate(cfg["ACL_RULES"], role_field=cfg["ROLE_FIELD"])
    settings = DispatcherSettings(
        identity_table=cfg["IDENTITY_TABLE"],
        password_field=cfg["PASSWORD_FIELD"],
        strict_columns=cfg["STRICT_COLUMNS"],
        regex_operator=regex_operator_for(db.get_engine().dialect.name),
    )
    dispatcher = Dispatcher(catalog, gate, db.run_statement, hasher=hasher, settings=settings)
    return {
        "catalog": catalog,
        "gate": gate,
        "hasher": hasher,
        "dispatcher": dispatcher,
    }


def create_app(overrides: Optional[Mapping[str, Any]] = None) -> Flask:
    """Instantiate and fully configure the Flask application instance."""
    app = Flask(__name__)

    # Delegate configuration loading so the logic stays in one place.
    cfg = initialize_app_config(app, overrides)

    if cfg.get("START_LOG", True):
        dev = os.getenv("FLASK_ENV") == "development" or app.debug
        start_log(app_name="dbrest", level=logging.DEBUG if dev else None)

    if cfg.get("DATABASE_ENGINE") is not None:
        db.configure_engine(cfg["DATABASE_ENGINE"])
    elif cfg.get("DATABASE_URL"):
        db.configure_engine(cfg["DATABASE_URL"])

    # The browser frontend may be served from another origin.
    CORS(app, supports_credentials=True)

    app.extensions["dbrest"] = _build_services(app)

    # Static /api/login and /api/health win over the generic /api/<resource> rule.
    app.register_blueprint(bp_auth)
    app.register_blueprint(bp_rest)

    register_error_handlers(app)

    @app.get("/api/health")
    def health():
        """Quick database reachability check for monitoring."""
        if not db.ping_db():
            return jsonify(ok=False, error="Database unreachable."), 503
        return jsonify(ok=True)

    log.info("dbrest app created")
    return app


if __name__ == "__main__":
    create_app().run()
