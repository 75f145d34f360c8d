"""Logging and request correlation shared by the policy server.

Log records can be emitted either as plain text or as one JSON object per
line.  Each HTTP request gets a request id (taken from the incoming
``X-Request-ID`` header when present) that is attached to every record
logged while the request is handled and echoed back on the response.
"""
from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import FastAPI, Request

PLAIN_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


class JsonFormatter(logging.Formatter):
    """Emit JSON log records with request correlation."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self._service_name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", None) or get_request_id()
        if request_id:
            payload["request_id"] = request_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        return True


@dataclass(frozen=True)
class ObservabilitySettings:
    service_name: str = "mta-sts-server"
    request_id_header: str = "X-Request-ID"
    log_level: str = "INFO"
    json_logs: bool = False


def configure_logging(settings: ObservabilitySettings) -> None:
    """Install a single stream handler on the root logger."""
    root_logger = logging.getLogger()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.json_logs:
        formatter: logging.Formatter = JsonFormatter(settings.service_name)
    else:
        formatter = logging.Formatter(PLAIN_FORMAT)
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)
        if not any(isinstance(f, RequestContextFilter) for f in handler.filters):
            handler.addFilter(RequestContextFilter())
        handler.setLevel(level)
    root_logger.setLevel(level)


def configure_observability(
    app: FastAPI, settings: ObservabilitySettings | None = None
) -> ObservabilitySettings:
    """Attach request-id propagation to ``app``."""
    settings = settings or ObservabilitySettings()
    app.state.observability = settings

    @app.middleware("http")
    async def _request_context(request: Request, call_next):
        request_id = request.headers.get(settings.request_id_header) or uuid.uuid4().hex
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _request_id_ctx.reset(token)
        response.headers.setdefault(settings.request_id_header, request_id)
        return response

    return settings
