# backend/dbrest/errors.py
from __future__ import annotations

from flask import jsonify, request
from flask.signals import got_request_exception
from werkzeug.exceptions import HTTPException

# app.logger and the module loggers all propagate to the root logger set up by
# start_log(), so everything below ends up in the same console/file output.


class ApiError(Exception):
    """A request failure that maps directly onto an HTTP status and ``{"error": ...}`` body."""

    status = 400

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_payload(self) -> dict:
        return {"error": self.message}


class BadRequestError(ApiError):
    status = 400


class UnauthorizedError(ApiError):
    status = 401


class ForbiddenError(ApiError):
    status = 403


class NotFoundError(ApiError):
    status = 404


class MethodNotAllowedError(ApiError):
    status = 405


def register_error_handlers(app):
    setup_signals(app)

    @app.errorhandler(ApiError)
    def handle_api_error(e: ApiError):
        app.logger.info("%s %s -> %s: %s", request.method, request.path, e.status, e.message)
        return jsonify(e.to_payload()), e.status

    @app.errorhandler(HTTPException)
    def handle_http(e: HTTPException):
        app.logger.warning("HTTP %s on %s %s", e.code, request.method, request.path)
        # Werkzeug's description is the human readable part; keep the uniform error shape.
        return jsonify(error=e.description or e.name), e.code

    @app.errorhandler(Exception)
    def handle_uncaught(e: Exception):
        app.logger.exception("Unhandled exception")
        return jsonify(error="Internal Server Error"), 500

    @app.teardown_request
    def log_teardown(exc):
        if exc is not None:
            app.logger.exception("Teardown exception", exc_info=exc)
        return None


def setup_signals(app):
    def on_exc(sender, exception, **extra):
        # ApiError is an expected outcome, not worth a stack trace
        if isinstance(exception, ApiError):
            return
        app.logger.exception("Signal caught exception", exc_info=exception)

    got_request_exception.connect(on_exc, app, weak=False)
