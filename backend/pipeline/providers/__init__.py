"""Payment provider adapters."""

from config import Settings
from pipeline.providers.base import AdapterRegistry, PaymentAdapter
from pipeline.providers.paypal_adapter import PayPalAdapter
from pipeline.providers.paystack_adapter import PaystackAdapter
from pipeline.providers.stripe_adapter import StripeAdapter


def build_registry(settings: Settings) -> AdapterRegistry:
    """Adapters for every provider with credentials configured."""
    registry = AdapterRegistry()

    if settings.stripe_secret_key:
        registry.register(StripeAdapter(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=f"{settings.app_url}/stripe-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.app_url}/checkout?cancelled=stripe",
            currency=settings.stripe_currency,
        ))

    if settings.paypal_client_id and settings.paypal_client_secret:
        registry.register(PayPalAdapter(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            return_url=f"{settings.app_url}/paypal-success",
            cancel_url=f"{settings.app_url}/checkout?cancelled=paypal",
            base_url=settings.paypal_base_url,
            timeout_seconds=settings.http_timeout_seconds,
        ))

    if settings.paystack_secret_key:
        registry.register(PaystackAdapter(
            secret_key=settings.paystack_secret_key,
            callback_url=f"{settings.app_url}/paystack-success",
            currency=settings.paystack_currency,
            plans=settings.paystack_plans,
            timeout_seconds=settings.http_timeout_seconds,
        ))

    return registry


__all__ = [
    "AdapterRegistry",
    "PaymentAdapter",
    "PayPalAdapter",
    "PaystackAdapter",
    "StripeAdapter",
    "build_registry",
]
