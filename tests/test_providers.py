import json
import unittest
from unittest import mock

import httpx
import stripe

from factories import make_order, make_subscription, rates_client
from pipeline.errors import ProviderError, SignatureError, ValidationError
from pipeline.exchange_rates import ExchangeRateClient
from pipeline.providers.base import AdapterRegistry
from pipeline.providers.paypal_adapter import PayPalAdapter
from pipeline.providers.paystack_adapter import PaystackAdapter, compute_signature
from pipeline.providers.stripe_adapter import StripeAdapter
from schemas.commerce import Payer, PaymentOutcome, ProviderKind, ReferenceKind

SECRET = "sk_test_paystack"


class RecordingTransport:
    """httpx.MockTransport handler routing on (method, path)."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": f"no route for {key}"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)

    def paths(self):
        return [r.url.path for r in self.requests]


def paystack(routes, plans=None):
    transport = RecordingTransport(routes)
    adapter = PaystackAdapter(
        secret_key=SECRET,
        callback_url="https://shop.example.com/paystack-success",
        plans=plans or {},
        client=httpx.AsyncClient(base_url="https://api.paystack.co", transport=httpx.MockTransport(transport)),
    )
    return adapter, transport


class PaystackAdapterTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_initiate_order_in_minor_units(self):
        adapter, transport = paystack({
            ("POST", "/transaction/initialize"): (200, {
                "status": True,
                "data": {"reference": "ps_ref_1", "access_code": "ac_1", "authorization_url": "https://checkout.paystack.com/ac_1"},
            }),
        })
        order = make_order()

        session = await adapter.initiate(order, 50000.0, "KES", Payer(email="client@example.com", name="Jane"))

        self.assertEqual(session.reference, "ps_ref_1")
        self.assertEqual(session.access_code, "ac_1")
        self.assertEqual(session.extra_fields, {"paystack_access_code": "ac_1"})
        sent = json.loads(transport.requests[0].content)
        self.assertEqual(sent["amount"], 5000000)
        self.assertEqual(sent["metadata"]["docId"], order.id)
        self.assertEqual(transport.requests[0].headers["authorization"], f"Bearer {SECRET}")
        await adapter.close()

    async def test_subscription_needs_a_configured_plan(self):
        adapter, transport = paystack({})
        with self.assertRaises(ValidationError):
            await adapter.initiate(make_subscription(), 3000.0, "KES", Payer(email="client@example.com"))
        self.assertEqual(transport.requests, [])
        await adapter.close()

    async def test_subscription_creates_customer_then_plan_checkout(self):
        adapter, transport = paystack({
            ("POST", "/customer"): (200, {"status": True, "data": {"customer_code": "CUS_1"}}),
            ("POST", "/transaction/initialize"): (200, {"status": True, "data": {"reference": "ps_ref_2"}}),
        }, plans={"Basic": "PLN_basic"})

        await adapter.initiate(make_subscription(), 3000.0, "KES", Payer(email="client@example.com"))

        self.assertEqual(transport.paths(), ["/customer", "/transaction/initialize"])
        self.assertEqual(json.loads(transport.requests[1].content)["plan"], "PLN_basic")
        await adapter.close()

    async def test_verify_success(self):
        adapter, _ = paystack({
            ("GET", "/transaction/verify/ps_ref_1"): (200, {
                "status": True,
                "data": {"status": "success", "reference": "ps_ref_1", "amount": 5000000, "currency": "KES"},
            }),
        })

        result = await adapter.confirm("ps_ref_1")

        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(result.amount, 50000.0)
        self.assertEqual(result.transaction_id, "ps_ref_1")
        await adapter.close()

    async def test_verify_incomplete_payment(self):
        adapter, _ = paystack({
            ("GET", "/transaction/verify/ps_ref_1"): (200, {"status": True, "data": {"status": "ongoing"}}),
        })
        with self.assertRaises(ValidationError):
            await adapter.confirm("ps_ref_1")
        await adapter.close()

    async def test_provider_error_is_mapped(self):
        adapter, _ = paystack({
            ("GET", "/transaction/verify/ps_ref_1"): (500, {"status": False, "message": "boom"}),
        })
        with self.assertRaises(ProviderError):
            await adapter.confirm("ps_ref_1")
        await adapter.close()

    async def test_webhook_signature(self):
        adapter, _ = paystack({})
        body = json.dumps({
            "event": "charge.success",
            "data": {"reference": "ps_ref_1", "status": "success", "amount": 5000000, "currency": "KES"},
        }).encode()

        results = await adapter.decode_webhook(body, {"x-paystack-signature": compute_signature(SECRET, body)})
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(results[0].reference, "ps_ref_1")

        with self.assertRaises(SignatureError):
            await adapter.decode_webhook(body, {"x-paystack-signature": compute_signature("wrong", body)})
        with self.assertRaises(SignatureError):
            await adapter.decode_webhook(body, {})
        await adapter.close()

    async def test_subscription_create_links_by_email(self):
        adapter, _ = paystack({})
        body = json.dumps({
            "event": "subscription.create",
            "data": {
                "subscription_code": "SUB_1",
                "email_token": "tok",
                "customer": {"email": "client@example.com"},
            },
        }).encode()

        [result] = await adapter.decode_webhook(body, {"x-paystack-signature": compute_signature(SECRET, body)})

        self.assertEqual(result.outcome, PaymentOutcome.LINKED)
        self.assertEqual(result.reference_kind, ReferenceKind.CUSTOMER_EMAIL)
        self.assertEqual(result.updates, {"paystack_subscription_code": "SUB_1", "paystack_email_token": "tok"})
        await adapter.close()

    async def test_disable_needs_code_and_token(self):
        adapter, transport = paystack({
            ("POST", "/subscription/disable"): (200, {"status": True, "message": "Subscription disabled"}),
        })

        self.assertFalse(await adapter.disable_recurring(make_subscription(paystack_subscription_code="SUB_1")))
        self.assertTrue(await adapter.disable_recurring(
            make_subscription(paystack_subscription_code="SUB_1", paystack_email_token="tok")
        ))
        self.assertEqual(transport.paths(), ["/subscription/disable"])
        await adapter.close()


def paypal(routes, webhook_id="WH-1"):
    routes = {("POST", "/v1/oauth2/token"): (200, {"access_token": "A21", "expires_in": 3600}), **routes}
    transport = RecordingTransport(routes)
    adapter = PayPalAdapter(
        client_id="client",
        client_secret="secret",
        return_url="https://shop.example.com/paypal-success",
        cancel_url="https://shop.example.com/checkout",
        webhook_id=webhook_id,
        client=httpx.AsyncClient(base_url="https://api-m.sandbox.paypal.com", transport=httpx.MockTransport(transport)),
    )
    return adapter, transport


PAYPAL_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-transmission-id": "tx-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2024-03-15T10:30:00Z",
}


class PayPalAdapterTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_initiate_returns_approve_link(self):
        adapter, transport = paypal({
            ("POST", "/v2/checkout/orders"): (201, {
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O19"}],
            }),
        })

        session = await adapter.initiate(make_order(), 385.0, "USD", Payer(email="client@example.com"))

        self.assertEqual(session.reference, "5O190127TN364715T")
        self.assertTrue(session.redirect_url.startswith("https://www.sandbox.paypal.com/"))
        sent = json.loads(transport.requests[-1].content)
        self.assertEqual(sent["intent"], "AUTHORIZE")
        self.assertEqual(sent["purchase_units"][0]["amount"], {"currency_code": "USD", "value": "385.00"})
        await adapter.close()

    async def test_confirm_authorizes_then_captures(self):
        adapter, transport = paypal({
            ("GET", "/v2/checkout/orders/ORDER-1"): (200, {"id": "ORDER-1", "status": "APPROVED"}),
            ("POST", "/v2/checkout/orders/ORDER-1/authorize"): (201, {
                "id": "ORDER-1",
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"authorizations": [
                    {"id": "AUTH-1", "status": "CREATED", "amount": {"value": "385.00", "currency_code": "USD"}},
                ]}}],
            }),
            ("POST", "/v2/payments/authorizations/AUTH-1/capture"): (201, {
                "id": "CAP-1",
                "status": "COMPLETED",
                "amount": {"value": "385.00", "currency_code": "USD"},
            }),
        })

        result = await adapter.confirm("ORDER-1")

        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(result.transaction_id, "ORDER-1")
        self.assertEqual(result.amount, 385.0)
        self.assertEqual(transport.paths().count("/v2/payments/authorizations/AUTH-1/capture"), 1)
        await adapter.close()

    async def test_confirm_completed_order_does_not_capture_again(self):
        adapter, transport = paypal({
            ("GET", "/v2/checkout/orders/ORDER-1"): (200, {
                "id": "ORDER-1",
                "status": "COMPLETED",
                "purchase_units": [{"payments": {"captures": [
                    {"id": "CAP-1", "status": "COMPLETED", "amount": {"value": "385.00", "currency_code": "USD"}},
                ]}}],
            }),
        })

        result = await adapter.confirm("ORDER-1")

        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)
        self.assertFalse(any("/capture" in path for path in transport.paths()))
        await adapter.close()

    async def test_unapproved_order(self):
        adapter, _ = paypal({
            ("GET", "/v2/checkout/orders/ORDER-1"): (200, {"id": "ORDER-1", "status": "CREATED"}),
        })
        with self.assertRaises(ValidationError):
            await adapter.confirm("ORDER-1")
        await adapter.close()

    async def test_webhook_verified_and_decoded(self):
        adapter, transport = paypal({
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "SUCCESS"}),
        })
        body = json.dumps({
            "id": "WH-EVT-1",
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {
                "id": "CAP-1",
                "amount": {"value": "385.00", "currency_code": "USD"},
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            },
        }).encode()

        [result] = await adapter.decode_webhook(body, PAYPAL_HEADERS)

        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(result.reference, "ORDER-1")
        verify = json.loads(transport.requests[-1].content)
        self.assertEqual(verify["webhook_id"], "WH-1")
        self.assertEqual(verify["transmission_id"], "tx-1")
        await adapter.close()

    async def test_webhook_failed_verification(self):
        adapter, _ = paypal({
            ("POST", "/v1/notifications/verify-webhook-signature"): (200, {"verification_status": "FAILURE"}),
        })
        body = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {}}).encode()

        with self.assertRaises(SignatureError):
            await adapter.decode_webhook(body, PAYPAL_HEADERS)
        with self.assertRaises(SignatureError):
            await adapter.decode_webhook(body, {})
        await adapter.close()

    async def test_disable_only_for_billing_plan_subscriptions(self):
        adapter, transport = paypal({
            ("POST", "/v1/billing/subscriptions/I-ABC/cancel"): (204, {}),
        })

        self.assertFalse(await adapter.disable_recurring(make_subscription(paypal_subscription_id="5O190127")))
        self.assertEqual(transport.requests, [])
        self.assertTrue(await adapter.disable_recurring(make_subscription(paypal_subscription_id="I-ABC")))
        await adapter.close()


def stripe_adapter() -> StripeAdapter:
    return StripeAdapter(
        secret_key="sk_test_stripe",
        webhook_secret="whsec_test",
        success_url="https://shop.example.com/stripe-success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://shop.example.com/checkout",
    )


class StripeAdapterTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_initiate_uses_manual_capture(self):
        adapter = stripe_adapter()
        with mock.patch("stripe.checkout.Session.create") as create:
            create.return_value = {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}
            session = await adapter.initiate(make_order(), 385.0, "USD", Payer(email="client@example.com"))

        self.assertEqual(session.reference, "cs_test_1")
        kwargs = create.call_args.kwargs
        self.assertEqual(kwargs["payment_intent_data"]["capture_method"], "manual")
        self.assertEqual(kwargs["line_items"][0]["price_data"]["unit_amount"], 38500)
        self.assertEqual(kwargs["api_key"], "sk_test_stripe")

    async def test_confirm_captures_authorized_intent_once(self):
        adapter = stripe_adapter()
        session = {
            "id": "cs_test_1",
            "status": "complete",
            "payment_intent": {"id": "pi_1", "status": "requires_capture", "amount": 38500, "currency": "usd"},
        }
        with mock.patch("stripe.checkout.Session.retrieve", return_value=session), \
                mock.patch("stripe.PaymentIntent.capture") as capture:
            capture.return_value = {"id": "pi_1", "status": "succeeded", "amount_received": 38500, "currency": "usd"}
            result = await adapter.confirm("cs_test_1")

        capture.assert_called_once()
        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)
        self.assertEqual(result.transaction_id, "pi_1")
        self.assertEqual(result.amount, 385.0)
        self.assertEqual(result.updates, {"stripe_payment_intent_id": "pi_1"})

    async def test_confirm_succeeded_intent_is_not_captured(self):
        adapter = stripe_adapter()
        session = {"id": "cs_test_1", "payment_intent": {"id": "pi_1", "status": "succeeded", "amount_received": 38500}}
        with mock.patch("stripe.checkout.Session.retrieve", return_value=session), \
                mock.patch("stripe.PaymentIntent.capture") as capture:
            result = await adapter.confirm("cs_test_1")

        capture.assert_not_called()
        self.assertEqual(result.outcome, PaymentOutcome.SUCCEEDED)

    async def test_sdk_errors_become_provider_errors(self):
        adapter = stripe_adapter()
        with mock.patch("stripe.checkout.Session.retrieve", side_effect=stripe.APIConnectionError("down")):
            with self.assertRaises(ProviderError):
                await adapter.confirm("cs_test_1")

    async def test_webhook_bad_signature(self):
        adapter = stripe_adapter()
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")
        with mock.patch("stripe.Webhook.construct_event", side_effect=error):
            with self.assertRaises(SignatureError):
                await adapter.decode_webhook(b"{}", {"stripe-signature": "t=1,v1=bad"})

        with self.assertRaises(SignatureError):
            await adapter.decode_webhook(b"{}", {})

    async def test_webhook_session_completed_awaiting_capture(self):
        adapter = stripe_adapter()
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1", "payment_status": "unpaid", "payment_intent": "pi_1"}},
        }
        with mock.patch("stripe.Webhook.construct_event", return_value=event):
            [result] = await adapter.decode_webhook(b"{}", {"stripe-signature": "t=1,v1=ok"})

        self.assertEqual(result.outcome, PaymentOutcome.AUTHORIZED)
        self.assertEqual(result.reference, "cs_test_1")
        self.assertEqual(result.updates, {"stripe_payment_intent_id": "pi_1"})

    async def test_webhook_intent_event_keyed_by_intent(self):
        adapter = stripe_adapter()
        event = {
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_1", "amount": 38500, "currency": "usd"}},
        }
        with mock.patch("stripe.Webhook.construct_event", return_value=event):
            [result] = await adapter.decode_webhook(b"{}", {"stripe-signature": "t=1,v1=ok"})

        self.assertEqual(result.outcome, PaymentOutcome.FAILED)
        self.assertEqual(result.reference_kind, ReferenceKind.PAYMENT_INTENT)

    async def test_webhook_cancelled_intent_is_a_void(self):
        adapter = stripe_adapter()
        event = {"type": "payment_intent.canceled", "data": {"object": {"id": "pi_1", "amount": 38500}}}
        with mock.patch("stripe.Webhook.construct_event", return_value=event):
            [result] = await adapter.decode_webhook(b"{}", {"stripe-signature": "t=1,v1=ok"})

        self.assertEqual(result.outcome, PaymentOutcome.VOIDED)

    async def test_webhook_object_without_id_is_ignored(self):
        adapter = stripe_adapter()
        for event_type in ("checkout.session.completed", "checkout.session.expired", "payment_intent.succeeded"):
            event = {"type": event_type, "data": {"object": {"payment_status": "paid", "amount": 38500}}}
            with mock.patch("stripe.Webhook.construct_event", return_value=event):
                self.assertEqual(await adapter.decode_webhook(b"{}", {"stripe-signature": "t=1,v1=ok"}), [])


class RegistryAndRatesTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_registry_dispatch(self):
        adapter = stripe_adapter()
        registry = AdapterRegistry([adapter])

        self.assertIs(registry.resolve("stripe"), adapter)
        self.assertIs(registry.resolve(ProviderKind.STRIPE), adapter)
        with self.assertRaises(ValidationError):
            registry.resolve("paypal")
        with self.assertRaises(ValidationError):
            registry.resolve("bitcoin")

    async def test_rates_are_cached(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json={"rates": {"USD": 0.0077}})

        rates = ExchangeRateClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        self.assertEqual(await rates.convert(50000, "KES", "USD"), 385.0)
        self.assertEqual(await rates.convert(10000, "kes", "usd"), 77.0)
        self.assertEqual(await rates.convert(10000, "KES", "KES"), 10000)
        self.assertEqual(calls, ["/v6/latest/KES"])
        await rates.close()

    async def test_rate_failure_is_a_provider_error(self):
        rates = rates_client(fail=True)
        with self.assertRaises(ProviderError):
            await rates.rate("KES", "USD")
        await rates.close()

    async def test_missing_rate_is_a_provider_error(self):
        rates = rates_client(rates={"EUR": 0.007})
        with self.assertRaises(ProviderError):
            await rates.rate("KES", "USD")
        await rates.close()


if __name__ == "__main__":
    unittest.main()
