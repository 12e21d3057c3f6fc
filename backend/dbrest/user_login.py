# backend/dbrest/user_login.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request, session

from .db import QueryError, Statement, run_statement
from .errors import ApiError, BadRequestError, UnauthorizedError
from .query_filter import is_identifier

log = logging.getLogger(__name__)

bp = Blueprint("auth", __name__, url_prefix="/api")

SESSION_USER_KEY = "user"

# -------- Utilities --------


def current_user() -> Optional[Dict[str, Any]]:
    """The logged-in user row (password removed) or None."""
    user = session.get(SESSION_USER_KEY)
    return user if isinstance(user, dict) else None


def _public_user(row: Dict[str, Any]) -> Dict[str, Any]:
    password_field = current_app.config["PASSWORD_FIELD"]
    return {k: v for k, v in row.items() if k != password_field}


def _find_user(login_value: Any, password: str) -> Optional[Dict[str, Any]]:
    cfg = current_app.config
    table = cfg["IDENTITY_TABLE"]
    login_field = cfg["LOGIN_FIELD"]
    password_field = cfg["PASSWORD_FIELD"]
    for identifier in (table, login_field, password_field):
        if not is_identifier(identifier):
            raise ValueError(f"Invalid identity configuration value: {identifier!r}")

    hasher = current_app.extensions["dbrest"]["hasher"]
    statement = Statement(
        f"SELECT * FROM {table} WHERE {login_field} = ? AND {password_field} = ?",
        [login_value, hasher.hash(password)],
    )
    rows = run_statement(statement)
    return rows[0] if rows else None


# -------- Session lifetime / refresh --------


@bp.record_once
def _configure_session_lifetime(setup_state):
    """
    Ensure the app uses a 30-day permanent session lifetime unless configured otherwise.
    Flask refreshes permanent sessions on each request while
    SESSION_REFRESH_EACH_REQUEST=True (default).
    """
    app = setup_state.app
    if not app.config.get("PERMANENT_SESSION_LIFETIME"):
        app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=30)


@bp.before_app_request
def _refresh_permanent_session():
    if session.get(SESSION_USER_KEY):
        session.permanent = True
        session.modified = True


# -------- Routes --------


@bp.route("/login", methods=["POST"])
def login():
    """
    Body: JSON { "<LOGIN_FIELD>": "...", "password": "..." }
    Looks the user up in the identity table with the hashed password.
      * On success: stores the user (minus password) in the session and returns it
      * On failure: 401
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequestError("Expected JSON body.")

    login_field = current_app.config["LOGIN_FIELD"]
    login_value = data.get(login_field)
    password = data.get("password")
    if login_value in (None, "") or password is None:
        raise BadRequestError(f"Missing '{login_field}' or 'password'.")

    if current_app.extensions["dbrest"]["hasher"] is None:
        raise ApiError("Server misconfiguration: password salt is not set.", 500)

    try:
        row = _find_user(login_value, str(password))
    except QueryError as e:
        raise BadRequestError(e.message) from e

    if row is None:
        # Avoid leaking which logins exist
        log.info("failed login for %s=%r", login_field, login_value)
        raise UnauthorizedError("Invalid login or password.")

    user = _public_user(row)
    session[SESSION_USER_KEY] = user
    session.permanent = True
    return jsonify(user), 200


@bp.route("/login", methods=["GET"])
def whoami():
    user = current_user()
    if user is None:
        raise UnauthorizedError("Not logged in.")
    return jsonify(user), 200


@bp.route("/login", methods=["DELETE"])
def logout():
    session.pop(SESSION_USER_KEY, None)
    return jsonify(ok=True), 200
