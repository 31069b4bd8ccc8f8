"""
HTTP quote provider.

Prices an asset by asking a swap-routing API for a 1-token -> base quote.
The endpoint is expected to answer

    GET {base_url}/quote?tokenIn=<asset>&tokenOut=<base>&amountIn=1

with JSON containing either "amountOut" or "price".
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from errors import QuoteUnavailableError
from executor import QuoteProvider
from retry import QUOTE_RETRY_CONFIG, RetryConfig, retry_http_request

logger = logging.getLogger(__name__)


class HTTPQuoteProvider(QuoteProvider):
    """aiohttp-backed QuoteProvider with retry and a shared session."""

    def __init__(
        self,
        base_url: str,
        name: str = "http",
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.timeout = timeout
        self.retry_config = retry_config or QUOTE_RETRY_CONFIG
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def parse_price(data: dict) -> Optional[float]:
        """Extract a price from a quote payload"""
        for key in ("amountOut", "price", "amount_out"):
            value = data.get(key)
            if value is None:
                continue
            try:
                price = float(value)
            except (TypeError, ValueError):
                return None
            return price if price > 0 else None
        return None

    async def get_price(self, asset: str, base: str) -> float:
        session = await self._get_session()
        params = {"tokenIn": asset, "tokenOut": base, "amountIn": "1"}

        try:
            resp = await retry_http_request(
                session, "GET", f"{self.base_url}/quote",
                config=self.retry_config,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise QuoteUnavailableError(asset, f"{self.name}: {type(e).__name__}: {e}")

        async with resp:
            if resp.status != 200:
                raise QuoteUnavailableError(asset, f"{self.name}: HTTP {resp.status}")
            data = await resp.json()

        price = self.parse_price(data) if isinstance(data, dict) else None
        if price is None:
            raise QuoteUnavailableError(asset, f"{self.name}: no usable price in response")
        return price
