"""HTTP endpoint publishing the MTA-STS policy document."""

import logging
from typing import Optional

from fastapi import FastAPI, Request, Response

from src.shared.config_schema import STS_POLICY_PATH
from src.shared.middleware import SecuritySettings, create_app
from src.shared.observability import ObservabilitySettings

from .sts_policy import StsPolicyProvider

logger = logging.getLogger(__name__)


def create_policy_app(
    provider: StsPolicyProvider,
    *,
    enable_https: bool = False,
    observability_settings: Optional[ObservabilitySettings] = None,
) -> FastAPI:
    """Build the app serving ``provider``'s document at the well-known path."""
    app = create_app(
        security_settings=SecuritySettings(enable_https=enable_https),
        observability_settings=observability_settings,
        title="mta-sts-server",
    )
    app.state.policy_provider = provider

    @app.api_route(STS_POLICY_PATH, methods=["GET", "HEAD"])
    async def mta_sts_policy(request: Request) -> Response:
        remote = request.client.host if request.client else "-"
        logger.info(
            "%s : %s : %s",
            remote,
            request.headers.get("host", ""),
            request.headers.get("user-agent", ""),
        )
        body = await provider.get_policy()
        return Response(content=body, media_type="text/plain")

    return app


def create_liveness_app() -> FastAPI:
    """An app with no routes: every path answers 404.

    Lets container hosts check that the process is up while the policy itself
    is served over HTTPS.
    """
    return create_app(title="mta-sts-server-liveness")
