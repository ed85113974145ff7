import asyncio
import unittest

import jwt
from fastapi.testclient import TestClient

from factories import FakeAdapter, FakeUploads, make_order, make_package, rates_client, recording_notifier, success
from api.commerce_routes import snake_keys
from api.server import create_app
from config import Settings
from pipeline.providers.base import AdapterRegistry
from schemas.commerce import OrderStatus, PaymentStatus, ProviderKind
from storage.repositories import EntityStore

SECRET = "test-secret"


def bearer(sub: str = "user-1", role: str = "user", email: str = "client@example.com") -> dict:
    token = jwt.encode({"sub": sub, "role": role, "email": email}, SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


CLIENT_AUTH = bearer()
ADMIN_AUTH = bearer("admin-1", "admin", "admin@example.com")


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.store = EntityStore.in_memory()
        self.adapter = FakeAdapter(ProviderKind.PAYSTACK, settlement_currency="KES")
        self.notifier = recording_notifier()
        settings = Settings(
            store_backend="memory",
            expiry_sweep_enabled=False,
            auth_jwt_secret=SECRET,
            log_json=False,
        )
        app = create_app(
            settings=settings,
            store=self.store,
            adapters=AdapterRegistry([self.adapter]),
            rates=rates_client(),
            notifier=self.notifier,
            uploads=FakeUploads(),
        )
        self.client = TestClient(app)
        self.client.__enter__()
        self.package = self.seed(self.store.packages, make_package())

    def tearDown(self):
        self.client.__exit__(None, None, None)

    def seed(self, repository, entity):
        return asyncio.run(repository.save(entity))

    def fetch(self, repository, entity_id):
        return asyncio.run(repository.get(entity_id))


class SnakeKeysTestCase(unittest.TestCase):
    def test_camel_and_snake_keys(self):
        self.assertEqual(
            snake_keys({"fileUrls": 1, "paymentStatus": 2, "links": 3, "end_date": 4}),
            {"file_urls": 1, "payment_status": 2, "links": 3, "end_date": 4},
        )

    def test_acronyms_stay_one_word(self):
        self.assertEqual(snake_keys({"fileURLs": 1, "stripeSessionID": 2}), {"file_urls": 1, "stripe_session_id": 2})


class HealthAndAuthTestCase(ApiTestCase):
    def test_health(self):
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["providers"], ["paystack"])
        self.assertIn("X-Response-Time-Ms", response.headers)
        self.assertIn("X-Request-ID", response.headers)

    def test_missing_token(self):
        response = self.client.get("/orders")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "unauthenticated")

    def test_token_signed_with_another_secret(self):
        token = jwt.encode({"sub": "user-1"}, "not-the-secret", algorithm="HS256")
        response = self.client.get("/orders", headers={"Authorization": f"Bearer {token}"})
        self.assertEqual(response.status_code, 401)

    def test_client_on_admin_routes(self):
        self.assertEqual(self.client.get("/admin/orders", headers=CLIENT_AUTH).status_code, 403)
        response = self.client.post("/packages", json={"title": "Nope", "price": 1}, headers=CLIENT_AUTH)
        self.assertEqual(response.status_code, 403)


class OrderFlowTestCase(ApiTestCase):
    def create_order(self) -> dict:
        response = self.client.post(
            "/orders",
            json={
                "planId": self.package.id,
                "name": "Jane Client",
                "email": "client@example.com",
                "fileUrls": ["https://files.example.com/brief.pdf"],
            },
            headers=CLIENT_AUTH,
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_create_snapshots_package(self):
        order = self.create_order()

        self.assertEqual(order["plan_title"], "Business Site")
        self.assertEqual(order["price"], 50000.0)
        self.assertEqual(order["status"], "pending")
        self.assertEqual(order["file_urls"], ["https://files.example.com/brief.pdf"])

    def test_patch_drops_protected_fields(self):
        order = self.create_order()

        response = self.client.patch(
            f"/orders/{order['id']}",
            json={"description": "Five pages", "price": 1, "paymentStatus": "captured"},
            headers=CLIENT_AUTH,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["description"], "Five pages")
        self.assertEqual(body["price"], 50000.0)
        self.assertEqual(body["payment_status"], "unpaid")

    def test_initiate_then_verify(self):
        order = self.create_order()

        initiated = self.client.post(
            "/payments/paystack/initiate",
            json={"type": "order", "entityId": order["id"]},
            headers=CLIENT_AUTH,
        )
        self.assertEqual(initiated.status_code, 200)
        session = initiated.json()
        self.assertEqual(session["reference"], "ref-1")
        self.assertEqual(session["redirectUrl"], "https://pay.example.com/ref-1")
        self.assertEqual(session["currency"], "KES")

        self.adapter.confirm_results["ref-1"] = success(ProviderKind.PAYSTACK, "ref-1")
        verified = self.client.post("/payments/paystack/verify", json={"reference": "ref-1"}, headers=CLIENT_AUTH)

        self.assertEqual(verified.status_code, 200)
        self.assertEqual(verified.json(), {
            "success": True,
            "type": "order",
            "status": "inprogress",
            "paymentStatus": "captured",
            "duplicate": False,
        })

        again = self.client.post("/payments/paystack/verify", json={"reference": "ref-1"}, headers=CLIENT_AUTH)
        self.assertTrue(again.json()["duplicate"])

    def test_other_client_cannot_read_order(self):
        order = self.create_order()
        response = self.client.get(f"/orders/{order['id']}", headers=bearer("user-2", email="other@example.com"))
        self.assertEqual(response.status_code, 403)

    def test_unknown_order(self):
        response = self.client.get("/orders/missing", headers=CLIENT_AUTH)
        self.assertEqual(response.status_code, 404)

    def test_captured_order_cannot_be_deleted(self):
        order = self.seed(self.store.orders, make_order(
            status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.CAPTURED,
        ))

        response = self.client.delete(f"/orders/{order.id}", headers=CLIENT_AUTH)

        self.assertEqual(response.status_code, 403)
        self.assertIsNotNone(self.fetch(self.store.orders, order.id))

    def test_cancelled_unpaid_order_is_deleted(self):
        order = self.seed(self.store.orders, make_order(status=OrderStatus.CANCELLED))

        response = self.client.delete(f"/orders/{order.id}", headers=CLIENT_AUTH)

        self.assertEqual(response.status_code, 204)
        self.assertIsNone(self.fetch(self.store.orders, order.id))

    def test_admin_delivers_files(self):
        order = self.seed(self.store.orders, make_order(
            status=OrderStatus.INPROGRESS,
            payment_status=PaymentStatus.CAPTURED,
        ))

        response = self.client.post(
            f"/orders/{order.id}/submissions",
            json={"files": [{"fileId": "f1", "fileUrl": "https://files.example.com/site.zip", "filename": "site.zip"}]},
            headers=ADMIN_AUTH,
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["order"]["status"], "completed")
        self.assertEqual(len(response.json()["submission"]["files"]), 1)


class WebhookApiTestCase(ApiTestCase):
    def test_bad_signature_is_rejected(self):
        response = self.client.post("/webhooks/paystack", content=b"{}", headers={"X-Signature": "forged"})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "invalid_signature")

    def test_unmatched_event_is_acknowledged(self):
        self.adapter.webhook_results = [success(ProviderKind.PAYSTACK, "ref-nobody")]

        response = self.client.post("/webhooks/paystack", content=b"{}", headers={"X-Signature": "good"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True, "applied": 0, "ignored": 1})

    def test_unknown_provider(self):
        response = self.client.post("/webhooks/venmo", content=b"{}")
        self.assertEqual(response.status_code, 400)


class PackageAndUploadApiTestCase(ApiTestCase):
    def test_public_catalog(self):
        self.seed(self.store.packages, make_package(title="Care Plan", price=3000.0, plan_type="maintenance"))

        everything = self.client.get("/packages")
        maintenance = self.client.get("/packages", params={"plan_type": "maintenance"})

        self.assertEqual(everything.status_code, 200)
        self.assertEqual(len(everything.json()), 2)
        self.assertEqual([p["title"] for p in maintenance.json()], ["Care Plan"])

    def test_admin_creates_package(self):
        response = self.client.post(
            "/packages",
            json={"title": "Landing Page", "price": 15000, "billingCycle": "one-time", "planType": "development"},
            headers=ADMIN_AUTH,
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["title"], "Landing Page")

    def test_presign(self):
        response = self.client.post(
            "/uploads/presign",
            json={"fileName": "brief.pdf", "contentType": "application/pdf"},
            headers=CLIENT_AUTH,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["key"], "uploads/1700000000000-brief.pdf")
        self.assertEqual(body["expiresIn"], 900)
        self.assertTrue(body["uploadUrl"].startswith("https://"))


if __name__ == "__main__":
    unittest.main()
