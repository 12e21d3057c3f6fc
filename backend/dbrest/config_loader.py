# backend/dbrest/config_loader.py
from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ENV = REPO_ROOT / "backend" / ".env"
ROOT_ENV = REPO_ROOT / ".env"

DEFAULTS: dict[str, Any] = {
    "IDENTITY_TABLE": "users",
    "PASSWORD_FIELD": "password",
    "LOGIN_FIELD": "email",
    "ROLE_FIELD": "role",
    "SCHEMA_CACHE_SECONDS": 0,
    "STRICT_COLUMNS": False,
    "ACL_RULES": None,
    "PASSWORD_SALT": None,
    "SECRET_KEY": None,
}

# appconfig.json keys are lower case; app.config keys are upper case
_APPCONFIG_KEYS = {
    "identity_table": "IDENTITY_TABLE",
    "password_field": "PASSWORD_FIELD",
    "login_field": "LOGIN_FIELD",
    "role_field": "ROLE_FIELD",
    "schema_cache_seconds": "SCHEMA_CACHE_SECONDS",
    "strict_columns": "STRICT_COLUMNS",
    "acl": "ACL_RULES",
}


def config_dir() -> Path:
    override = os.getenv("DBREST_CONFIG_DIR")
    if override:
        return Path(override).expanduser().resolve()
    return REPO_ROOT / "config"


def load_env_files() -> None:
    """Load backend/.env then root .env without clobbering the real environment."""
    if BACKEND_ENV.exists():
        log.debug("loading %s", BACKEND_ENV)
        load_dotenv(BACKEND_ENV, override=False)
    if ROOT_ENV.exists():
        log.debug("loading %s", ROOT_ENV)
        load_dotenv(ROOT_ENV, override=False)


def _read_json_file(path: Path) -> dict:
    """Read a JSON object from disk; a missing or broken file yields an empty mapping."""
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        log.warning("Could not read %s; falling back to defaults", path, exc_info=True)
        return {}
    if not isinstance(data, dict):
        log.warning("%s does not contain a JSON object; ignoring it", path)
        return {}
    return data


def load_app_config() -> dict:
    return _read_json_file(config_dir() / "appconfig.json")


def load_secrets() -> dict:
    return _read_json_file(config_dir() / "secrets.json")


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return False


def _coerce_non_negative(value: Any, fallback: float) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return fallback
    if numeric < 0:
        return fallback
    return numeric


def _normalize_acl_rules(raw: Any) -> Optional[list[dict]]:
    """Accept either a bare rule list or ``{"rules": [...]}``; anything else means no ACL."""
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        raw = raw.get("rules")
    if not isinstance(raw, list):
        log.warning("acl configuration is not a list of rules; ignoring it")
        return None
    rules = [dict(rule) for rule in raw if isinstance(rule, Mapping)]
    if len(rules) != len(raw):
        log.warning("Dropped %d acl entries that were not objects", len(raw) - len(rules))
    return rules


def build_config(overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """
    Resolve the effective settings.

    Precedence, lowest first: DEFAULTS, appconfig.json, secrets.json, the
    environment (after .env files are loaded), then ``overrides``.
    """
    load_env_files()
    cfg: dict[str, Any] = dict(DEFAULTS)

    app_cfg = load_app_config()
    for json_key, cfg_key in _APPCONFIG_KEYS.items():
        if json_key in app_cfg:
            cfg[cfg_key] = app_cfg[json_key]

    secrets = load_secrets()
    salt = secrets.get("user_password_salt")
    if isinstance(salt, str) and salt:
        cfg["PASSWORD_SALT"] = salt
    session_secret = secrets.get("session_secret")
    if isinstance(session_secret, str) and session_secret:
        cfg["SECRET_KEY"] = session_secret

    if os.getenv("PASSWORD_SALT"):
        cfg["PASSWORD_SALT"] = os.getenv("PASSWORD_SALT")
    if os.getenv("SECRET_KEY"):
        cfg["SECRET_KEY"] = os.getenv("SECRET_KEY")
    if os.getenv("DATABASE_URL"):
        cfg["DATABASE_URL"] = os.getenv("DATABASE_URL")

    if overrides:
        cfg.update(overrides)

    cfg["SCHEMA_CACHE_SECONDS"] = _coerce_non_negative(cfg.get("SCHEMA_CACHE_SECONDS"), 0)
    cfg["STRICT_COLUMNS"] = _coerce_bool(cfg.get("STRICT_COLUMNS"))
    cfg["ACL_RULES"] = _normalize_acl_rules(cfg.get("ACL_RULES"))

    if not cfg.get("PASSWORD_SALT"):
        log.error("No password salt configured (secrets.json user_password_salt or PASSWORD_SALT)")
    if not cfg.get("SECRET_KEY"):
        # Same fallback the login sessions always had: the salt doubles as the signing key.
        cfg["SECRET_KEY"] = cfg.get("PASSWORD_SALT")
    return cfg


def initialize_app_config(app: Any, overrides: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
    """Populate a Flask app with the resolved settings and return them."""
    cfg = build_config(overrides)
    app.config.update(cfg)
    return cfg
