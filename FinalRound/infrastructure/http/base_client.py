"""
Base async HTTP client with retry, timeout, and error handling.

Shared by the payment-processor gateway and the mail provider client.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from FinalRound.observability.logging import get_logger

logger = get_logger(__name__)


class BaseHTTPClient(ABC):
    """
    Abstract base class for outbound HTTP clients.

    Provides:
    - Bounded timeout on every request
    - Retries on transport errors and 5xx responses only; 4xx responses
      are returned to the caller immediately since repeating them cannot help
    - Lazily created, reusable httpx.AsyncClient

    Subclasses implement `_get_base_url()` and optionally override
    `_get_default_headers()`.
    """

    DEFAULT_TIMEOUT = 15.0
    DEFAULT_RETRIES = 2
    DEFAULT_RETRY_DELAY = 0.5

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Request timeout in seconds.
            retries: Extra attempts after the first one fails.
            retry_delay: Base delay between retries (linear backoff).
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.timeout = timeout
        self.retries = max(0, retries)
        self.retry_delay = retry_delay
        self._transport = transport
        self._async_client: Optional[httpx.AsyncClient] = None

    @abstractmethod
    def _get_base_url(self) -> str:
        """Return the base URL for this client."""
        pass

    def _get_default_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _get_async_client(self) -> httpx.AsyncClient:
        if self._async_client is None:
            self._async_client = httpx.AsyncClient(
                base_url=self._get_base_url(),
                timeout=self.timeout,
                headers=self._get_default_headers(),
                transport=self._transport,
            )
        return self._async_client

    @staticmethod
    def _should_retry(response: Optional[httpx.Response]) -> bool:
        return response is None or 500 <= response.status_code <= 599

    async def arequest(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> httpx.Response:
        """
        Make an HTTP request with retry logic.

        Returns the final httpx.Response (possibly non-2xx); status handling
        is left to the caller.

        Raises:
            httpx.TransportError: If every attempt failed at the transport level
        """
        client = self._get_async_client()
        attempts = self.retries + 1
        last_error: Optional[Exception] = None
        response: Optional[httpx.Response] = None

        for attempt in range(attempts):
            try:
                response = await client.request(method, path, **kwargs)
                last_error = None
                if not self._should_retry(response):
                    return response
                logger.warning(
                    "HTTP %s %s returned %s (attempt %d/%d)",
                    method, path, response.status_code, attempt + 1, attempts,
                )
            except httpx.TransportError as e:
                last_error = e
                response = None
                logger.warning(
                    "HTTP %s %s failed (attempt %d/%d): %s",
                    method, path, attempt + 1, attempts, e,
                )
            if attempt < attempts - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        if last_error is not None:
            logger.error("All %d attempts failed for %s %s", attempts, method, path)
            raise last_error
        return response

    async def apost(self, path: str, **kwargs) -> httpx.Response:
        return await self.arequest("POST", path, **kwargs)

    async def aclose(self) -> None:
        """Close async client."""
        if self._async_client is not None:
            await self._async_client.aclose()
            self._async_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


__all__ = ["BaseHTTPClient"]
