"""HTTP client abstraction providing async context-managed HTTP functionality.

This module provides a thin wrapper over httpx.AsyncClient with proper
connection lifecycle management, bounded timeouts and logging.

Usage Example:
    async with AsyncHttpClient(timeout=10.0) as client:
        response = await client.async_get(
            "https://mta-sts.example.com/.well-known/mta-sts.txt", max_bytes=65536
        )
        if response.is_success:
            body = response.content
"""

import io
import logging
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "mta-sts-server/1.0"
DEFAULT_MAX_BYTES = 1024 * 1024


class ResponseTooLarge(Exception):
    """The response body exceeded the caller's size limit."""


@dataclass(frozen=True)
class FetchedResponse:
    """A fully read response."""

    status_code: int
    headers: httpx.Headers
    content: bytes

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class AsyncHttpClient:
    """Async context-managed HTTP client using httpx.AsyncClient.

    Attributes:
        timeout (float): Default timeout in seconds for HTTP requests
        follow_redirects (bool): Whether to follow HTTP redirects
        verify (bool): Whether to verify TLS certificates
    """

    def __init__(
        self,
        timeout: float = 10.0,
        follow_redirects: bool = False,
        verify: bool = True,
        max_connections: int = 20,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the HTTP client with configuration.

        Args:
            timeout: Timeout in seconds applied to connect, read, write and pool
            follow_redirects: Whether to automatically follow redirects
            verify: Whether to verify TLS certificates
            max_connections: Maximum number of connections in the pool
            transport: Optional httpx transport, mainly for tests
        """
        if timeout is None or timeout <= 0:
            raise ValueError("timeout must be a positive number of seconds")
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self.verify = verify
        self.max_connections = max_connections
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "AsyncHttpClient":
        """Enter the async context and initialize the HTTP client."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=self.follow_redirects,
            verify=self.verify,
            limits=httpx.Limits(max_connections=self.max_connections),
            headers={"User-Agent": USER_AGENT},
            transport=self.transport,
        )
        logger.debug(f"HTTP client initialized with timeout={self.timeout}s")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit the async context and close the HTTP client."""
        if self._client:
            try:
                await self._client.aclose()
            except httpx.HTTPError as e:
                logger.error(f"Error closing HTTP client: {e}")
            finally:
                self._client = None

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def async_get(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> FetchedResponse:
        """Make an async GET request, reading at most ``max_bytes`` of body.

        Args:
            url: The URL to fetch
            headers: Optional headers to include
            timeout: Optional per-operation timeout override for this request
            max_bytes: Largest decoded body accepted

        Returns:
            FetchedResponse: Status, headers and the full body

        Raises:
            RuntimeError: If the client is used outside its context
            ResponseTooLarge: If the body exceeds ``max_bytes``
            httpx.TimeoutException: If the request times out
            httpx.RequestError: For network-related errors
        """
        if not self.is_available:
            raise RuntimeError("HTTP client is not available or not initialized")

        request_timeout = timeout if timeout is not None else self.timeout
        try:
            logger.debug(f"Making GET request to {url}")
            async with self._client.stream(
                "GET", url, headers=headers, timeout=request_timeout
            ) as response:
                body = io.BytesIO()
                async for chunk in response.aiter_bytes():
                    if body.tell() + len(chunk) > max_bytes:
                        raise ResponseTooLarge(
                            f"Response from {url} exceeds {max_bytes} bytes"
                        )
                    body.write(chunk)
            content = body.getvalue()
            logger.debug(
                f"Received response: {response.status_code} from {url} "
                f"(Content-Length: {len(content)} bytes)"
            )
            return FetchedResponse(
                status_code=response.status_code,
                headers=response.headers,
                content=content,
            )
        except httpx.TimeoutException as e:
            logger.error(f"Timeout making GET request to {url}: {e}")
            raise
        except httpx.RequestError as e:
            logger.error(f"Request error making GET request to {url}: {e}")
            raise
