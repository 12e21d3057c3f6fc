# backend/dbrest/rest_api.py
from __future__ import annotations

import logging
from typing import Any, Optional

from flask import Blueprint, current_app, jsonify, request

from .dispatcher import RestRequest
from .errors import BadRequestError
from .user_login import current_user

log = logging.getLogger(__name__)

bp = Blueprint("rest", __name__, url_prefix="/api")

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def _request_body() -> Any:
    """Decoded JSON body, None when there is none; broken JSON is a 400."""
    if not request.get_data(cache=True):
        return None
    body = request.get_json(force=True, silent=True)
    if body is None:
        raise BadRequestError("Invalid JSON body.")
    return body


@bp.route("/<resource>", methods=METHODS)
@bp.route("/<resource>/<record_id>", methods=METHODS)
def resource_api(resource: str, record_id: Optional[str] = None):
    """Generic table/view endpoint; see dispatcher.Dispatcher for the rules."""
    rest_request = RestRequest(
        method=request.method,
        resource=resource,
        raw_id=record_id,
        # request.args would mangle operators such as ">=" so the raw string is parsed instead
        query_string=request.query_string.decode("utf-8", errors="replace"),
        body=_request_body() if request.method in ("POST", "PUT", "PATCH") else None,
        user=current_user(),
    )
    dispatcher = current_app.extensions["dbrest"]["dispatcher"]
    result = dispatcher.dispatch(rest_request)
    return jsonify(result.payload), result.status
