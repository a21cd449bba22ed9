"""HTTP client for the metered scraping provider (ScrapingBee-style API)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from pricesync.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ProviderConfigError(RuntimeError):
    """Raised when provider credentials are missing."""
    pass


class ProviderTimeoutError(RuntimeError):
    """Raised when the provider does not answer within the timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(f"Request timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class ProviderRequestError(RuntimeError):
    """Raised on transport failures talking to the provider."""
    pass


@dataclass
class ProviderResponse:
    """Raw provider response."""

    status_code: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ScrapingProviderClient:
    """Thin async wrapper over the provider's single GET endpoint."""

    def __init__(
        self,
        config: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: Settings with provider URL, key and defaults
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.scrapingbee_api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def fetch(
        self,
        url: str,
        render_js: Optional[bool] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProviderResponse:
        """
        Fetch a page through the provider.

        Args:
            url: Target page URL
            render_js: Ask the provider to render JavaScript (defaults to config)
            timeout_ms: Hard timeout for the whole request (defaults to config)

        Returns:
            ProviderResponse for any HTTP status

        Raises:
            ProviderConfigError: If no API key is configured
            ProviderTimeoutError: If the timeout expires
            ProviderRequestError: On transport failures
        """
        if not self.is_configured:
            raise ProviderConfigError("Scraping provider API key not configured")

        if render_js is None:
            render_js = self.config.scraping_render_js
        if timeout_ms is None:
            timeout_ms = self.config.scraping_timeout_ms

        params = {
            "api_key": self.config.scrapingbee_api_key,
            "url": url,
            "render_js": "true" if render_js else "false",
        }

        client = await self._get_client()
        try:
            resp = await client.get(
                self.config.scraping_api_base_url,
                params=params,
                timeout=httpx.Timeout(timeout_ms / 1000),
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(timeout_ms) from e
        except httpx.HTTPError as e:
            raise ProviderRequestError(str(e) or e.__class__.__name__) from e

        return ProviderResponse(status_code=resp.status_code, text=resp.text)

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
