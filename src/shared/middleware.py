"""Shared FastAPI app factory with secure defaults."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from .errors import register_error_handlers
from .observability import ObservabilitySettings, configure_observability


@dataclass(frozen=True)
class SecuritySettings:
    """Runtime configuration for the security headers middleware."""

    enable_https: bool = False


def add_security_middleware(
    app: FastAPI, security_settings: SecuritySettings | None = None
) -> SecuritySettings:
    settings = security_settings or SecuritySettings()

    @app.middleware("http")
    async def _security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # HSTS is ignored by browsers over plain HTTP.
        if settings.enable_https:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
            )
        return response

    return settings


def create_app(
    *,
    security_settings: SecuritySettings | None = None,
    observability_settings: ObservabilitySettings | None = None,
    **kwargs: Any,
) -> FastAPI:
    kwargs.setdefault("docs_url", None)
    kwargs.setdefault("redoc_url", None)
    kwargs.setdefault("openapi_url", None)
    app = FastAPI(**kwargs)
    add_security_middleware(app, security_settings=security_settings)
    configure_observability(app, settings=observability_settings)
    register_error_handlers(app)
    return app
