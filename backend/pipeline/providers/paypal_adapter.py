"""
PayPal Adapter
==============
REST v2 checkout with a two-phase flow:

1. initiate  -> order with intent=AUTHORIZE, payer approves at PayPal
2. confirm   -> authorize the approved order, then capture the authorization
3. webhooks  -> verified through /v1/notifications/verify-webhook-signature

The PayPal order id is the stable transaction id for both the redirect
path and the webhook path.
"""

import json
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
import structlog

from pipeline.errors import ProviderError, SignatureError, ValidationError
from pipeline.providers.base import HttpJsonMixin, PaymentAdapter, Purchase
from schemas.commerce import (
    ConfirmationResult,
    Payer,
    PaymentOutcome,
    ProviderKind,
    ProviderSession,
    ReferenceKind,
    Subscription,
)

logger = structlog.get_logger().bind(component="paypal_adapter")

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

# webhook event type -> outcome for checkout orders
ORDER_EVENTS = {
    "PAYMENT.AUTHORIZATION.CREATED": PaymentOutcome.AUTHORIZED,
    "PAYMENT.CAPTURE.COMPLETED": PaymentOutcome.SUCCEEDED,
    "PAYMENT.CAPTURE.DENIED": PaymentOutcome.FAILED,
    "PAYMENT.AUTHORIZATION.VOIDED": PaymentOutcome.VOIDED,
}


def _payments(order: Dict[str, Any], kind: str) -> List[Dict[str, Any]]:
    found = []
    for unit in order.get("purchase_units") or []:
        found.extend((unit.get("payments") or {}).get(kind) or [])
    return found


def _amount(resource: Dict[str, Any]) -> Tuple[Optional[float], Optional[str]]:
    amount = resource.get("amount") or {}
    value = amount.get("value")
    return (float(value) if value is not None else None), amount.get("currency_code")


class PayPalAdapter(HttpJsonMixin, PaymentAdapter):
    kind = ProviderKind.PAYPAL
    settlement_currency = "USD"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        return_url: str,
        cancel_url: str,
        webhook_id: str = "",
        base_url: str = "https://api-m.sandbox.paypal.com",
        brand_name: str = "Commerce",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.webhook_id = webhook_id
        self.brand_name = brand_name
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._token: Optional[Tuple[str, float]] = None

    async def close(self) -> None:
        await self._client.aclose()

    async def _headers(self, **extra: str) -> Dict[str, str]:
        if self._token is None or time.monotonic() >= self._token[1]:
            payload = await self._request(
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
            token = payload.get("access_token")
            if not token:
                raise ProviderError("PayPal returned no access token", provider=self.kind.value)
            # refresh a minute before PayPal expires it
            ttl = max(int(payload.get("expires_in", 300)) - 60, 0)
            self._token = (token, time.monotonic() + ttl)
        return {"Authorization": f"Bearer {self._token[0]}", **extra}

    # =========================================================================
    # INITIATE
    # =========================================================================

    async def initiate(
        self,
        entity: Purchase,
        amount: float,
        currency: str,
        payer: Payer,
    ) -> ProviderSession:
        body = {
            "intent": "AUTHORIZE",
            "purchase_units": [{
                "reference_id": entity.id,
                "description": entity.plan_title[:127],
                "amount": {"currency_code": currency, "value": f"{amount:.2f}"},
            }],
            "application_context": {
                "brand_name": self.brand_name,
                "landing_page": "LOGIN",
                "user_action": "PAY_NOW",
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
        }
        order = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers=await self._headers(
                Prefer="return=representation",
                **{"PayPal-Request-Id": f"{entity.id}-{entity.version}"},
            ),
        )

        order_id = order.get("id")
        if not order_id:
            raise ProviderError("PayPal returned no order id", provider=self.kind.value)

        approve_url = next(
            (link["href"] for link in order.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info("paypal_order_created", entity_id=entity.id, paypal_order_id=order_id, amount=amount)
        return ProviderSession(
            provider=self.kind,
            reference=order_id,
            redirect_url=approve_url,
            amount=amount,
            currency=currency,
        )

    # =========================================================================
    # AUTHORIZE + CAPTURE
    # =========================================================================

    async def confirm(self, reference: str, payer_id: Optional[str] = None) -> ConfirmationResult:
        order = await self._request(
            "GET", f"/v2/checkout/orders/{reference}", headers=await self._headers()
        )
        status = order.get("status")
        log = logger.bind(paypal_order_id=reference, paypal_status=status)

        if status == "VOIDED":
            return self._result(PaymentOutcome.VOIDED, reference, None, None)

        if status == "APPROVED":
            order = await self._request(
                "POST",
                f"/v2/checkout/orders/{reference}/authorize",
                json={},
                headers=await self._headers(),
            )
            log.info("paypal_order_authorized")
        elif status != "COMPLETED":
            raise ValidationError(f"PayPal order {reference} has not been approved by the payer")

        captures = _payments(order, "captures")
        completed = next((c for c in captures if c.get("status") == "COMPLETED"), None)
        if completed:
            return self._result(PaymentOutcome.SUCCEEDED, reference, *_amount(completed))

        authorizations = _payments(order, "authorizations")
        live = next((a for a in authorizations if a.get("status") in ("CREATED", "PENDING")), None)
        if live is None:
            log.warning("paypal_no_live_authorization")
            return self._result(PaymentOutcome.FAILED, reference, None, None)

        capture = await self._request(
            "POST",
            f"/v2/payments/authorizations/{live['id']}/capture",
            json={"final_capture": True},
            headers=await self._headers(),
        )
        capture_status = capture.get("status")
        log.info("paypal_capture_attempted", capture_status=capture_status)

        if capture_status == "COMPLETED":
            return self._result(PaymentOutcome.SUCCEEDED, reference, *_amount(capture))
        if capture_status == "PENDING":
            return self._result(PaymentOutcome.AUTHORIZED, reference, *_amount(live))
        return self._result(PaymentOutcome.FAILED, reference, *_amount(live))

    def _result(
        self,
        outcome: PaymentOutcome,
        reference: str,
        amount: Optional[float],
        currency: Optional[str],
        source_event: str = "orders.confirm",
    ) -> ConfirmationResult:
        return ConfirmationResult(
            provider=self.kind,
            outcome=outcome,
            reference=reference,
            transaction_id=reference,
            amount=amount,
            currency=currency,
            source_event=source_event,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def _verify(self, event: Dict[str, Any], headers: Mapping[str, str]) -> None:
        if not self.webhook_id:
            raise SignatureError("PayPal webhook id is not configured")
        fields = {}
        for field, header in TRANSMISSION_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise SignatureError(f"missing PayPal header {header}")
            fields[field] = value

        result = await self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={**fields, "webhook_id": self.webhook_id, "webhook_event": event},
            headers=await self._headers(),
        )
        if result.get("verification_status") != "SUCCESS":
            raise SignatureError("invalid PayPal webhook signature")

    async def decode_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> List[ConfirmationResult]:
        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise SignatureError("webhook body is not valid JSON") from e

        await self._verify(event, headers)

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}

        if event_type in ORDER_EVENTS:
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            if not order_id:
                logger.info("paypal_event_without_order", event_type=event_type)
                return []
            return [self._result(ORDER_EVENTS[event_type], order_id, *_amount(resource), source_event=event_type)]

        if event_type == "CHECKOUT.ORDER.VOIDED" and resource.get("id"):
            return [self._result(PaymentOutcome.VOIDED, resource["id"], None, None, source_event=event_type)]

        if event_type == "PAYMENT.SALE.COMPLETED" and resource.get("billing_agreement_id"):
            amount = resource.get("amount") or {}
            return [ConfirmationResult(
                provider=self.kind,
                outcome=PaymentOutcome.RENEWED,
                reference=resource["billing_agreement_id"],
                reference_kind=ReferenceKind.RECURRING,
                transaction_id=resource.get("id") or resource["billing_agreement_id"],
                amount=float(amount["total"]) if amount.get("total") else None,
                currency=amount.get("currency"),
                source_event=event_type,
            )]

        if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED" and resource.get("id"):
            return [ConfirmationResult(
                provider=self.kind,
                outcome=PaymentOutcome.RENEWAL_FAILED,
                reference=resource["id"],
                reference_kind=ReferenceKind.RECURRING,
                transaction_id=event.get("id") or resource["id"],
                source_event=event_type,
            )]

        logger.info("paypal_event_ignored", event_type=event_type)
        return []

    # =========================================================================
    # RECURRING
    # =========================================================================

    async def disable_recurring(self, subscription: Subscription) -> bool:
        # Only billing-plan subscriptions ("I-...") bill on their own
        sub_id = subscription.paypal_subscription_id
        if not sub_id or not sub_id.startswith("I-"):
            return False
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{sub_id}/cancel",
            json={"reason": "Cancelled by customer"},
            headers=await self._headers(),
        )
        logger.info("paypal_subscription_cancelled", subscription_id=subscription.id)
        return True
