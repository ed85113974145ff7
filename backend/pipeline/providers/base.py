"""
Provider Adapter Contract
=========================
Every payment provider is wrapped in a ``PaymentAdapter`` that speaks the
same small vocabulary:

- initiate: create the provider-side payment, return its reference
- confirm: synchronous server-to-provider confirmation of a reference
- decode_webhook: verify authenticity, then normalize the payload
- fetch_recurring_handle / disable_recurring: subscription housekeeping

Adapters never touch entity state. The gateway persists references and
the reconciliation engine decides transitions.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx
import structlog

from pipeline.errors import ProviderError, ValidationError
from schemas.commerce import (
    ConfirmationResult,
    Order,
    Payer,
    ProviderKind,
    ProviderSession,
    Subscription,
)

Purchase = Union[Order, Subscription]


class PaymentAdapter(ABC):
    """Uniform provider contract"""

    kind: ProviderKind
    settlement_currency: str = "USD"

    @abstractmethod
    async def initiate(
        self,
        entity: Purchase,
        amount: float,
        currency: str,
        payer: Payer,
    ) -> ProviderSession:
        pass

    @abstractmethod
    async def confirm(self, reference: str, payer_id: Optional[str] = None) -> ConfirmationResult:
        pass

    @abstractmethod
    async def decode_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> List[ConfirmationResult]:
        """Raise SignatureError if the payload cannot be authenticated."""
        pass

    async def fetch_recurring_handle(self, email: str) -> Dict[str, str]:
        """Provider fields identifying the recurring plan for ``email``."""
        return {}

    async def disable_recurring(self, subscription: Subscription) -> bool:
        """Stop provider-side billing. Returns False if there was nothing to disable."""
        return False

    async def close(self) -> None:
        pass


class HttpJsonMixin:
    """httpx JSON calls with provider errors mapped to ProviderError."""

    _client: httpx.AsyncClient
    kind: ProviderKind

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        log = structlog.get_logger().bind(component=f"{self.kind.value}_adapter")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.error("provider_timeout", method=method, url=url)
            raise ProviderError(f"{self.kind.value} request timed out", provider=self.kind.value) from e
        except httpx.HTTPError as e:
            log.error("provider_unreachable", method=method, url=url, error=str(e))
            raise ProviderError(f"{self.kind.value} is unreachable", provider=self.kind.value) from e

        try:
            payload = response.json() if response.content else {}
        except ValueError as e:
            raise ProviderError(
                f"{self.kind.value} returned a non-JSON response",
                provider=self.kind.value,
            ) from e

        if response.is_error:
            log.warning(
                "provider_rejected",
                method=method,
                url=url,
                status=response.status_code,
                body=payload,
            )
            raise ProviderError(
                f"{self.kind.value} rejected the request ({response.status_code})",
                provider=self.kind.value,
                detail={"status": response.status_code, "body": payload},
            )
        return payload


class AdapterRegistry:
    """ProviderKind -> adapter dispatch"""

    def __init__(self, adapters: Optional[List[PaymentAdapter]] = None):
        self._adapters: Dict[ProviderKind, PaymentAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentAdapter) -> None:
        self._adapters[adapter.kind] = adapter

    def resolve(self, provider: Union[str, ProviderKind]) -> PaymentAdapter:
        try:
            kind = ProviderKind(provider)
        except ValueError:
            raise ValidationError(f"unknown payment provider: {provider}")
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise ValidationError(f"payment provider not configured: {kind.value}")
        return adapter

    def __iter__(self):
        return iter(self._adapters.values())

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
