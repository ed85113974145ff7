"""
Stripe Adapter
==============
Checkout Sessions with manual capture:

- initiate: Checkout Session, PaymentIntent created with capture_method=manual
- confirm: retrieve the session, capture the PaymentIntent if it is
  waiting for capture
- webhooks: ``stripe.Webhook.construct_event`` verifies Stripe-Signature
  BEFORE anything is parsed

The SDK is synchronous; calls run in a worker thread. The PaymentIntent id
is the stable transaction id.
"""

import asyncio
from typing import Any, Dict, List, Mapping, Optional

import stripe
import structlog

from pipeline.errors import ProviderError, SignatureError, ValidationError
from pipeline.providers.base import PaymentAdapter, Purchase
from schemas.commerce import (
    ConfirmationResult,
    Payer,
    PaymentOutcome,
    ProviderKind,
    ProviderSession,
    ReferenceKind,
)

logger = structlog.get_logger().bind(component="stripe_adapter")

SIGNATURE_HEADER = "stripe-signature"

# webhook event type -> (outcome, keyed by)
SESSION_EVENTS = {
    "checkout.session.async_payment_succeeded": PaymentOutcome.SUCCEEDED,
    "checkout.session.async_payment_failed": PaymentOutcome.FAILED,
    "checkout.session.expired": PaymentOutcome.FAILED,
}
INTENT_EVENTS = {
    "payment_intent.amount_capturable_updated": PaymentOutcome.AUTHORIZED,
    "payment_intent.succeeded": PaymentOutcome.SUCCEEDED,
    "payment_intent.payment_failed": PaymentOutcome.FAILED,
    "payment_intent.canceled": PaymentOutcome.VOIDED,
}


def _intent_id(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if value:
        return value.get("id")
    return None


class StripeAdapter(PaymentAdapter):
    kind = ProviderKind.STRIPE

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        currency: str = "USD",
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.settlement_currency = currency

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            logger.error("stripe_call_failed", error=str(e), error_type=type(e).__name__)
            raise ProviderError(f"Stripe request failed: {e.user_message or type(e).__name__}", provider=self.kind.value) from e

    # =========================================================================
    # CHECKOUT SESSION CREATION
    # =========================================================================

    async def initiate(
        self,
        entity: Purchase,
        amount: float,
        currency: str,
        payer: Payer,
    ) -> ProviderSession:
        metadata = {"entity_type": entity.entity_type.value, "entity_id": entity.id}
        session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": currency.lower(),
                    "product_data": {"name": entity.plan_title},
                    "unit_amount": int(round(amount * 100)),
                },
                "quantity": 1,
            }],
            payment_intent_data={"capture_method": "manual", "metadata": metadata},
            success_url=self.success_url,
            cancel_url=self.cancel_url,
            customer_email=payer.email,
            client_reference_id=entity.id,
            metadata=metadata,
            idempotency_key=f"checkout_{entity.id}_{entity.version}",
        )

        logger.info("checkout_created", stripe_session_id=session["id"], entity_id=entity.id)
        return ProviderSession(
            provider=self.kind,
            reference=session["id"],
            redirect_url=session.get("url"),
            amount=amount,
            currency=currency,
        )

    # =========================================================================
    # CONFIRM / CAPTURE
    # =========================================================================

    async def confirm(self, reference: str, payer_id: Optional[str] = None) -> ConfirmationResult:
        session = await self._call(
            stripe.checkout.Session.retrieve, reference, expand=["payment_intent"]
        )
        if session.get("status") == "expired":
            return self._result(PaymentOutcome.FAILED, reference, reference)

        intent = session.get("payment_intent")
        if isinstance(intent, str):
            intent = await self._call(stripe.PaymentIntent.retrieve, intent)
        if not intent:
            raise ValidationError(f"checkout session {reference} has not been paid")

        status = intent.get("status")
        if status == "requires_capture":
            intent = await self._call(stripe.PaymentIntent.capture, intent["id"])
            status = intent.get("status")
            logger.info("payment_intent_captured", payment_intent_id=intent["id"], status=status)

        if status == "succeeded":
            outcome = PaymentOutcome.SUCCEEDED
        elif status == "requires_capture":
            outcome = PaymentOutcome.AUTHORIZED
        elif status == "canceled":
            outcome = PaymentOutcome.VOIDED
        else:
            raise ValidationError(f"payment for {reference} is not complete (status: {status})")

        received = intent.get("amount_received") or intent.get("amount")
        return self._result(
            outcome,
            reference,
            intent["id"],
            amount=received / 100 if received is not None else None,
            currency=(intent.get("currency") or "").upper() or None,
        )

    def _result(
        self,
        outcome: PaymentOutcome,
        reference: str,
        intent_id: Optional[str],
        reference_kind: ReferenceKind = ReferenceKind.CHECKOUT,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        source_event: str = "checkout.confirm",
    ) -> ConfirmationResult:
        return ConfirmationResult(
            provider=self.kind,
            outcome=outcome,
            reference=reference,
            reference_kind=reference_kind,
            transaction_id=intent_id or reference,
            amount=amount,
            currency=currency,
            updates={"stripe_payment_intent_id": intent_id} if intent_id else {},
            source_event=source_event,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def decode_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> List[ConfirmationResult]:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            raise SignatureError("missing Stripe signature")

        # CRITICAL: Verify signature BEFORE parsing
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise SignatureError("invalid Stripe signature") from e
        except ValueError as e:
            logger.warning("webhook_payload_invalid", error=str(e))
            raise SignatureError("invalid Stripe payload") from e

        event_type = event.get("type", "")
        obj: Dict[str, Any] = (event.get("data") or {}).get("object") or {}
        object_id = obj.get("id")
        if not object_id:
            logger.warning("stripe_event_without_object_id", event_type=event_type)
            return []

        if event_type == "checkout.session.completed":
            # paid immediately unless the intent is waiting for manual capture
            outcome = (
                PaymentOutcome.SUCCEEDED
                if obj.get("payment_status") == "paid"
                else PaymentOutcome.AUTHORIZED
            )
            return [self._result(outcome, object_id, _intent_id(obj.get("payment_intent")), source_event=event_type)]

        if event_type in SESSION_EVENTS:
            return [self._result(
                SESSION_EVENTS[event_type],
                object_id,
                _intent_id(obj.get("payment_intent")),
                source_event=event_type,
            )]

        if event_type in INTENT_EVENTS:
            received = obj.get("amount_received") or obj.get("amount")
            return [self._result(
                INTENT_EVENTS[event_type],
                object_id,
                object_id,
                reference_kind=ReferenceKind.PAYMENT_INTENT,
                amount=received / 100 if received is not None else None,
                currency=(obj.get("currency") or "").upper() or None,
                source_event=event_type,
            )]

        logger.info("stripe_event_ignored", event_type=event_type)
        return []
