"""Transport wiring: plain HTTP, or HTTPS with on-demand certificates."""

import asyncio
import logging
import ssl
from typing import Optional

import uvicorn
from fastapi import FastAPI

from src.shared.config_schema import HostAuthMode, ServerConfig
from src.shared.observability import ObservabilitySettings

from .attempt_store import create_attempt_store
from .cert_issuer import CertbotIssuer
from .host_policy import create_host_policy
from .policy_api import create_liveness_app, create_policy_app
from .sts_policy import create_policy_provider
from .tls_gate import OnDemandCertificates

logger = logging.getLogger(__name__)

LISTEN_HOST = "0.0.0.0"


class SslContextConfig(uvicorn.Config):
    """uvicorn config that serves TLS from a prebuilt ``ssl.SSLContext``."""

    def __init__(self, app, ssl_context: ssl.SSLContext, **kwargs):
        super().__init__(app, **kwargs)
        self._ssl_context = ssl_context

    def load(self) -> None:
        super().load()
        self.ssl = self._ssl_context


def build_policy_app(config: ServerConfig) -> FastAPI:
    provider = create_policy_provider(config.sts_policy)
    return create_policy_app(
        provider,
        enable_https=not config.tls.serve_http,
        observability_settings=ObservabilitySettings(
            log_level=config.log_level.value, json_logs=config.json_logs
        ),
    )


def build_certificate_gate(config: ServerConfig) -> OnDemandCertificates:
    store = None
    if config.host_policy.active_mode is HostAuthMode.CNAME:
        store = create_attempt_store(config)
    host_policy = create_host_policy(config.host_policy, store=store)
    issuer = CertbotIssuer(
        certs_dir=config.tls.certs_dir,
        email=config.tls.acme_email,
        staging=config.tls.staging,
        acme_endpoint=config.tls.acme_endpoint,
        http_port=config.tls.acme_http_port,
    )
    return OnDemandCertificates(host_policy, issuer)


def _server(app: FastAPI, port: int, ssl_context: Optional[ssl.SSLContext] = None):
    options = dict(host=LISTEN_HOST, port=port, log_config=None, access_log=False)
    if ssl_context is None:
        return uvicorn.Server(uvicorn.Config(app, **options))
    return uvicorn.Server(SslContextConfig(app, ssl_context, **options))


async def serve(config: ServerConfig) -> None:
    """Serve until shut down."""
    app = build_policy_app(config)
    if config.tls.serve_http:
        logger.info("Serving HTTP on port %s", config.port)
        await _server(app, config.port).serve()
        return

    gate = build_certificate_gate(config)
    https = _server(app, config.tls.https_port, ssl_context=gate.server_context())
    # Answers 404 everywhere so container hosts can check liveness.
    liveness = _server(create_liveness_app(), config.port)
    logger.info(
        "Serving HTTPS on port %s, liveness on port %s",
        config.tls.https_port,
        config.port,
    )
    try:
        await asyncio.gather(https.serve(), liveness.serve())
    finally:
        gate.close()
