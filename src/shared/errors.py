"""Shared error taxonomy and exception handlers."""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Iterable

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

NOT_WHITELISTED = "not whitelisted"
RESOLUTION_FAILED = "resolution failed"
NOT_A_CNAME = "not a cname of canonical host"
RATE_LIMITED = "rate limited"
STORAGE_FAILURE = "storage failure"
INVALID_HOSTNAME = "invalid hostname"


class MtaStsError(Exception):
    """Base class for all errors raised by the policy server."""


class ConfigurationConflict(MtaStsError):
    """Startup options are missing, invalid or mutually exclusive.

    Fatal: the process must not start serving.
    """

    def __init__(self, errors: Iterable[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class HostPolicyDenied(MtaStsError):
    """Certificate issuance for a hostname is not allowed."""

    reason = "denied"

    def __init__(self, hostname: str, reason: str | None = None, detail: str = ""):
        self.hostname = hostname
        if reason is not None:
            self.reason = reason
        self.detail = detail
        message = f"{hostname}: {self.reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ResolutionFailure(HostPolicyDenied):
    """CNAME lookup failed or did not point at the canonical host."""

    reason = RESOLUTION_FAILED


class RateLimited(HostPolicyDenied):
    """An issuance attempt was made too recently for this hostname."""

    reason = RATE_LIMITED


class StorageFailure(MtaStsError):
    """The attempt tracker could not read or write its records."""


class UpstreamFetchFailure(MtaStsError):
    """The mirrored policy could not be fetched from upstream."""


class CertificateIssuanceError(MtaStsError):
    """A certificate could not be obtained for a hostname."""


def _status_phrase(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def register_error_handlers(app: FastAPI) -> None:
    """Register handlers that answer with short plain-text bodies."""

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> PlainTextResponse:
        message = (
            exc.detail
            if isinstance(exc.detail, str) and exc.detail
            else _status_phrase(exc.status_code)
        )
        response = PlainTextResponse(message, status_code=exc.status_code)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> PlainTextResponse:
        logger.exception(
            "Unhandled exception method=%s path=%s",
            request.method,
            request.url.path,
        )
        return PlainTextResponse("Internal Server Error", status_code=500)
