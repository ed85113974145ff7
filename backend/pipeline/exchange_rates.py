"""
Exchange Rates
==============
Live currency conversion for providers that settle in a currency other
than the store's (PayPal and Stripe settle in USD, prices are in KES).

Lookup failures fail closed with ProviderError: no rate, no payment.
"""

import asyncio
import time
from typing import Dict, Optional, Tuple

import httpx
import structlog

from pipeline.errors import ProviderError

logger = structlog.get_logger().bind(component="exchange_rates")


class ExchangeRateClient:
    """open.er-api.com style ``GET {base_url}/{FROM}`` -> ``{"rates": {...}}``"""

    def __init__(
        self,
        base_url: str = "https://open.er-api.com/v6/latest",
        timeout_seconds: float = 15.0,
        cache_ttl_seconds: int = 600,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._cache: Dict[Tuple[str, str], Tuple[float, float]] = {}
        self._cache_ttl = cache_ttl_seconds
        self._lock = asyncio.Lock()

    async def close(self):
        await self._client.aclose()

    async def rate(self, source: str, target: str) -> float:
        source, target = source.upper(), target.upper()
        if source == target:
            return 1.0

        key = (source, target)
        async with self._lock:
            cached = self._cache.get(key)
            if cached and time.monotonic() < cached[1]:
                return cached[0]

        try:
            response = await self._client.get(f"{self.base_url}/{source}")
            response.raise_for_status()
            payload = response.json()
        except httpx.TimeoutException as e:
            logger.error("exchange_rate_timeout", source=source, target=target)
            raise ProviderError("exchange rate lookup timed out", provider="exchange_rates") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("exchange_rate_failed", source=source, target=target, error=str(e))
            raise ProviderError("exchange rate lookup failed", provider="exchange_rates") from e

        value = (payload.get("rates") or {}).get(target)
        if not isinstance(value, (int, float)) or value <= 0:
            logger.error("exchange_rate_missing", source=source, target=target)
            raise ProviderError(
                f"no {source}->{target} exchange rate available",
                provider="exchange_rates",
            )

        async with self._lock:
            self._cache[key] = (float(value), time.monotonic() + self._cache_ttl)
        logger.info("exchange_rate_resolved", source=source, target=target, rate=value)
        return float(value)

    async def convert(self, amount: float, source: str, target: str) -> float:
        """Convert and round to 2 decimals."""
        rate = await self.rate(source, target)
        return round(amount * rate, 2)
