"""
Paystack Adapter
================
- Transaction initialize (plan-based for subscriptions)
- Transaction verify for the redirect callback
- HMAC-SHA512 webhook verification over the raw body
- Subscription code lookup and disable for recurring plans

Amounts go over the wire in minor units (x100). Paystack success is
final: there is no separate authorization step.
"""

import hashlib
import hmac
import json
from typing import Dict, List, Mapping, Optional
from urllib.parse import quote

import httpx
import structlog

from pipeline.errors import ProviderError, SignatureError, ValidationError
from pipeline.providers.base import HttpJsonMixin, PaymentAdapter, Purchase
from schemas.commerce import (
    ConfirmationResult,
    EntityType,
    Payer,
    PaymentOutcome,
    ProviderKind,
    ProviderSession,
    ReferenceKind,
    Subscription,
)

logger = structlog.get_logger().bind(component="paystack_adapter")

SIGNATURE_HEADER = "x-paystack-signature"

FAILED_STATUSES = {"failed", "abandoned", "reversed"}


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    return hmac.new(secret_key.encode(), raw_body, hashlib.sha512).hexdigest()


class PaystackAdapter(HttpJsonMixin, PaymentAdapter):
    kind = ProviderKind.PAYSTACK

    def __init__(
        self,
        secret_key: str,
        callback_url: str,
        currency: str = "KES",
        plans: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 15.0,
        base_url: str = "https://api.paystack.co",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.settlement_currency = currency
        self.plans = {k.lower(): v for k, v in (plans or {}).items()}
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._auth = {"Authorization": f"Bearer {secret_key}"}

    async def close(self) -> None:
        await self._client.aclose()

    def _unwrap(self, payload: dict, action: str) -> dict:
        if not payload.get("status"):
            logger.warning("paystack_call_failed", action=action, message=payload.get("message"))
            raise ProviderError(
                f"Paystack {action} failed: {payload.get('message', 'unknown error')}",
                provider=self.kind.value,
            )
        return payload.get("data") or {}

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
            "email": payer.email,
            "amount": int(round(amount * 100)),
            "currency": currency,
            "callback_url": self.callback_url,
            "metadata": {
                "name": payer.name,
                "docId": entity.id,
                "type": entity.entity_type.value,
            },
        }

        if entity.entity_type == EntityType.SUBSCRIPTION:
            plan_code = self.plans.get(entity.plan_name.value.lower())
            if not plan_code:
                raise ValidationError(f"no Paystack plan configured for {entity.plan_name.value}")
            customer = await self._request(
                "POST",
                "/customer",
                json={"email": payer.email, "first_name": payer.name},
                headers=self._auth,
            )
            self._unwrap(customer, "customer creation")
            body["plan"] = plan_code

        payload = await self._request(
            "POST", "/transaction/initialize", json=body, headers=self._auth
        )
        data = self._unwrap(payload, "initialize")

        reference = data.get("reference")
        if not reference:
            raise ProviderError("Paystack returned no transaction reference", provider=self.kind.value)

        logger.info(
            "paystack_initialized",
            entity_id=entity.id,
            reference=reference,
            amount=body["amount"],
        )
        access_code = data.get("access_code")
        return ProviderSession(
            provider=self.kind,
            reference=reference,
            redirect_url=data.get("authorization_url"),
            access_code=access_code,
            amount=amount,
            currency=currency,
            extra_fields={"paystack_access_code": access_code} if access_code else {},
        )

    # =========================================================================
    # VERIFY
    # =========================================================================

    async def confirm(self, reference: str, payer_id: Optional[str] = None) -> ConfirmationResult:
        payload = await self._request(
            "GET", f"/transaction/verify/{quote(reference, safe='')}", headers=self._auth
        )
        data = self._unwrap(payload, "verify")
        status = (data.get("status") or "").lower()

        if status == "success":
            outcome = PaymentOutcome.SUCCEEDED
        elif status in FAILED_STATUSES:
            outcome = PaymentOutcome.FAILED
        else:
            raise ValidationError(f"payment {reference} is not complete (status: {status or 'unknown'})")

        return ConfirmationResult(
            provider=self.kind,
            outcome=outcome,
            reference=reference,
            transaction_id=data.get("reference") or reference,
            amount=(data["amount"] / 100) if data.get("amount") is not None else None,
            currency=data.get("currency"),
            source_event="transaction.verify",
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            raise SignatureError("missing Paystack signature")
        expected = compute_signature(self.secret_key, raw_body)
        if not hmac.compare_digest(expected, signature):
            raise SignatureError("invalid Paystack signature")

    async def decode_webhook(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> List[ConfirmationResult]:
        self.verify_signature(raw_body, headers)

        try:
            event = json.loads(raw_body)
        except ValueError as e:
            raise ValidationError("webhook body is not valid JSON") from e

        event_type = event.get("event", "")
        data = event.get("data") or {}

        if event_type == "charge.success":
            reference = data.get("reference")
            if not reference:
                return []
            outcome = (
                PaymentOutcome.SUCCEEDED
                if (data.get("status") or "success") == "success"
                else PaymentOutcome.FAILED
            )
            return [ConfirmationResult(
                provider=self.kind,
                outcome=outcome,
                reference=reference,
                transaction_id=reference,
                amount=(data["amount"] / 100) if data.get("amount") is not None else None,
                currency=data.get("currency"),
                source_event=event_type,
            )]

        if event_type == "subscription.create":
            email = (data.get("customer") or {}).get("email")
            code = data.get("subscription_code")
            if not email or not code:
                return []
            updates = {"paystack_subscription_code": code}
            if data.get("email_token"):
                updates["paystack_email_token"] = data["email_token"]
            return [ConfirmationResult(
                provider=self.kind,
                outcome=PaymentOutcome.LINKED,
                reference=email,
                reference_kind=ReferenceKind.CUSTOMER_EMAIL,
                transaction_id=code,
                updates=updates,
                source_event=event_type,
            )]

        if event_type in ("invoice.update", "invoice.payment_failed"):
            code = (data.get("subscription") or {}).get("subscription_code")
            if not code:
                return []
            transaction = data.get("transaction") or {}
            txn = transaction.get("reference") or data.get("invoice_code") or code
            if event_type == "invoice.payment_failed":
                outcome = PaymentOutcome.RENEWAL_FAILED
            elif data.get("paid") or data.get("status") == "success":
                outcome = PaymentOutcome.RENEWED
            else:
                return []
            return [ConfirmationResult(
                provider=self.kind,
                outcome=outcome,
                reference=code,
                reference_kind=ReferenceKind.RECURRING,
                transaction_id=txn,
                amount=(data["amount"] / 100) if data.get("amount") is not None else None,
                source_event=event_type,
            )]

        logger.info("paystack_event_ignored", event_type=event_type)
        return []

    # =========================================================================
    # RECURRING
    # =========================================================================

    async def fetch_recurring_handle(self, email: str) -> Dict[str, str]:
        payload = await self._request("GET", "/subscription", params={"perPage": 100}, headers=self._auth)
        subscriptions = payload.get("data") or []
        matches = [
            s for s in subscriptions
            if ((s.get("customer") or {}).get("email") or "").lower() == email.lower()
        ]
        matches.sort(key=lambda s: s.get("status") != "active")
        for match in matches:
            if match.get("subscription_code"):
                handle = {"paystack_subscription_code": match["subscription_code"]}
                if match.get("email_token"):
                    handle["paystack_email_token"] = match["email_token"]
                return handle
        return {}

    async def disable_recurring(self, subscription: Subscription) -> bool:
        if not subscription.paystack_subscription_code or not subscription.paystack_email_token:
            return False
        payload = await self._request(
            "POST",
            "/subscription/disable",
            json={
                "code": subscription.paystack_subscription_code,
                "token": subscription.paystack_email_token,
            },
            headers=self._auth,
        )
        self._unwrap(payload, "subscription disable")
        logger.info("paystack_subscription_disabled", subscription_id=subscription.id)
        return True
