"""Logging setup shared by the web app and the CLI."""

from __future__ import annotations

import logging
import sys
import uuid

from flask import Flask, g, has_request_context, request

LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"
REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdFilter(logging.Filter):
    """Attach the current request's correlation id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = None
        if has_request_context():
            request_id = getattr(g, "request_id", None)
        record.request_id = request_id or "-"
        return True


def current_request_id() -> str | None:
    if not has_request_context():
        return None
    return getattr(g, "request_id", None)


def configure_logging(app: Flask) -> None:
    level = app.config.get("LOG_LEVEL", "INFO")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RequestIdFilter())

    # Flask names the app logger after the import package, so module loggers
    # under examhub.* share this handler.
    app.logger.handlers = [handler]
    app.logger.setLevel(level)

    @app.before_request
    def assign_request_id() -> None:
        incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
        g.request_id = incoming[:64] or str(uuid.uuid4())

    @app.after_request
    def echo_request_id(response):
        request_id = current_request_id()
        if request_id:
            response.headers[REQUEST_ID_HEADER] = request_id
        return response


__all__ = ["RequestIdFilter", "configure_logging", "current_request_id", "REQUEST_ID_HEADER"]
