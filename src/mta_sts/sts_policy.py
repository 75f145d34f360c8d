"""MTA-STS policy documents: generated locally or relayed from upstream."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import httpx

from src.shared.config_schema import StsMode, StsPolicyConfig
from src.shared.errors import UpstreamFetchFailure
from src.shared.http_client import AsyncHttpClient, FetchedResponse, ResponseTooLarge

logger = logging.getLogger(__name__)

CRLF = "\r\n"
MAX_POLICY_BYTES = 64 * 1024


def render_sts_policy(mode: StsMode, max_age: int, mx: Sequence[str]) -> bytes:
    """Render a policy as CRLF-terminated ``key: value`` lines.

    ``mx`` lines follow in the order given.
    """
    mode_value = mode.value if isinstance(mode, StsMode) else str(mode)
    lines = ["version: STSv1", f"mode: {mode_value}", f"max_age: {max_age}"]
    lines.extend(f"mx: {pattern}" for pattern in mx)
    return "".join(f"{line}{CRLF}" for line in lines).encode("utf-8")


class StsPolicyProvider(ABC):
    @abstractmethod
    async def get_policy(self) -> bytes:
        """Return the document body to serve for one request."""


class LocalStsPolicy(StsPolicyProvider):
    """Policy generated once from static configuration."""

    def __init__(self, mode: StsMode, max_age: int, mx: Sequence[str]):
        self._document = render_sts_policy(mode, max_age, mx)

    @property
    def document(self) -> bytes:
        return self._document

    async def get_policy(self) -> bytes:
        return self._document


class MirrorStsPolicy(StsPolicyProvider):
    """Relay another domain's policy, fetched fresh on every request.

    The upstream body is passed through byte for byte. The whole fetch,
    body included, must finish within ``timeout`` seconds and the body may
    not exceed ``max_bytes``. When the upstream cannot be fetched the failure
    is logged and an empty body is served.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_bytes: int = MAX_POLICY_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not url.startswith("https://"):
            raise ValueError(f"mirror target must use https: {url}")
        self.url = url
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport

    async def _get(self) -> FetchedResponse:
        async with AsyncHttpClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            return await client.async_get(self.url, max_bytes=self.max_bytes)

    async def fetch(self) -> bytes:
        """
        Fetch the upstream document.

        Raises:
            UpstreamFetchFailure: On timeout, connection error, an oversized
                body or a non-2xx status.
        """
        try:
            response = await asyncio.wait_for(self._get(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamFetchFailure(
                f"Error fetching {self.url}: no complete response within {self.timeout}s"
            ) from e
        except (ResponseTooLarge, httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamFetchFailure(f"Error fetching {self.url}: {e}") from e
        if not response.is_success:
            raise UpstreamFetchFailure(
                f"Error fetching {self.url}: HTTP {response.status_code}"
            )
        return response.content

    async def get_policy(self) -> bytes:
        try:
            return await self.fetch()
        except UpstreamFetchFailure as e:
            logger.error("%s; serving empty policy", e)
            return b""


def create_policy_provider(
    config: StsPolicyConfig, transport: Optional[httpx.AsyncBaseTransport] = None
) -> StsPolicyProvider:
    if config.mirror_url:
        logger.info("Mirroring MTA-STS policy from %s", config.mirror_url)
        return MirrorStsPolicy(
            config.mirror_url,
            timeout=config.mirror_timeout_seconds,
            transport=transport,
        )
    logger.info(
        "Serving local MTA-STS policy: mode=%s max_age=%s mx=%s",
        config.mode.value,
        config.max_age,
        ",".join(config.mx),
    )
    return LocalStsPolicy(config.mode, config.max_age, config.mx)
