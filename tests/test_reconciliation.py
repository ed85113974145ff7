import unittest
from datetime import datetime, timezone

from factories import make_order, make_subscription
from pipeline.errors import AnomalyWarning
from pipeline.reconciliation import add_months, advance, classify, reconcile
from schemas.commerce import (
    BillingInterval,
    EntityType,
    EventKind,
    OrderStatus,
    PaymentEvent,
    PaymentOutcome,
    PaymentStatus,
    ProviderKind,
    SideEffectKind,
    SubscriptionStatus,
)

NOW = datetime(2024, 3, 15, 10, 30, tzinfo=timezone.utc)


def order_event(kind: EventKind, reference: str = "ref-1", txn: str = "txn-1", **kwargs) -> PaymentEvent:
    return PaymentEvent(
        kind=kind,
        provider=ProviderKind.PAYSTACK,
        reference=reference,
        reference_field="paystack_reference",
        transaction_id=txn,
        **kwargs,
    )


def sub_event(kind: EventKind, txn: str = "txn-1", **kwargs) -> PaymentEvent:
    fields = dict(
        kind=kind,
        provider=ProviderKind.PAYSTACK,
        reference="ref-s",
        reference_field="paystack_reference",
        transaction_id=txn,
    )
    fields.update(kwargs)
    return PaymentEvent(**fields)


class BillingDateTestCase(unittest.TestCase):
    def test_add_months_clamps_to_month_end(self):
        self.assertEqual(add_months(datetime(2024, 1, 31), 1), datetime(2024, 2, 29))
        self.assertEqual(add_months(datetime(2023, 1, 31), 1), datetime(2023, 2, 28))
        self.assertEqual(add_months(datetime(2024, 11, 30), 3), datetime(2025, 2, 28))

    def test_advance_per_interval(self):
        start = datetime(2024, 3, 15, 10, 30)
        self.assertEqual(advance(start, BillingInterval.MONTHLY), datetime(2024, 4, 15, 10, 30))
        self.assertEqual(advance(start, BillingInterval.YEARLY), datetime(2025, 3, 15, 10, 30))
        self.assertEqual(advance(start, BillingInterval.HOURLY), datetime(2024, 3, 15, 11, 30))


class OrderReconciliationTestCase(unittest.TestCase):
    def setUp(self):
        self.order = make_order(paystack_reference="ref-1")

    def test_success_moves_pending_order_to_inprogress(self):
        result = reconcile(self.order, order_event(EventKind.PAYMENT_SUCCEEDED), now=NOW)

        self.assertTrue(result.changed)
        self.assertIsNone(result.anomaly)
        self.assertEqual(result.entity.status, OrderStatus.INPROGRESS)
        self.assertEqual(result.entity.payment_status, PaymentStatus.CAPTURED)
        self.assertEqual(result.entity.paid_at, NOW)
        self.assertEqual(result.entity.last_transaction_id, "txn-1")
        self.assertEqual(result.entity.version, self.order.version + 1)
        kinds = [e.kind for e in result.side_effects]
        self.assertIn(SideEffectKind.NOTIFY_ADMIN, kinds)
        self.assertIn(SideEffectKind.NOTIFY_CLIENT, kinds)

    def test_same_success_twice_is_a_duplicate(self):
        first = reconcile(self.order, order_event(EventKind.PAYMENT_SUCCEEDED), now=NOW).entity
        second = reconcile(first, order_event(EventKind.PAYMENT_SUCCEEDED), now=NOW)

        self.assertFalse(second.changed)
        self.assertTrue(second.duplicate)
        self.assertIs(second.entity, first)
        self.assertEqual(second.side_effects, [])

    def test_authorize_then_succeed_then_late_authorize(self):
        authorized = reconcile(self.order, order_event(EventKind.PAYMENT_AUTHORIZED), now=NOW).entity
        self.assertEqual(authorized.status, OrderStatus.PENDING)
        self.assertEqual(authorized.payment_status, PaymentStatus.AUTHORIZED)

        repeat = reconcile(authorized, order_event(EventKind.PAYMENT_AUTHORIZED), now=NOW)
        self.assertTrue(repeat.duplicate)
        self.assertFalse(repeat.changed)

        captured = reconcile(authorized, order_event(EventKind.PAYMENT_SUCCEEDED), now=NOW).entity
        self.assertEqual(captured.payment_status, PaymentStatus.CAPTURED)

        late = reconcile(captured, order_event(EventKind.PAYMENT_AUTHORIZED), now=NOW)
        self.assertTrue(late.duplicate)
        self.assertEqual(late.entity.payment_status, PaymentStatus.CAPTURED)

    def test_failure_after_success_keeps_first_outcome(self):
        captured = reconcile(self.order, order_event(EventKind.PAYMENT_SUCCEEDED), now=NOW).entity
        late = reconcile(captured, order_event(EventKind.PAYMENT_FAILED, txn="txn-2"), now=NOW)

        self.assertFalse(late.changed)
        self.assertIsNotNone(late.anomaly)
        self.assertEqual(late.entity.status, OrderStatus.INPROGRESS)
        self.assertEqual(late.entity.payment_status, PaymentStatus.CAPTURED)

    def test_success_after_failure_is_flagged_for_review(self):
        failed = reconcile(self.order, order_event(EventKind.PAYMENT_FAILED), now=NOW).entity
        self.assertEqual(failed.status, OrderStatus.FAILED)
        self.assertEqual(failed.payment_status, PaymentStatus.UNPAID)

        late = reconcile(failed, order_event(EventKind.PAYMENT_SUCCEEDED, txn="txn-2"), now=NOW)
        self.assertIsNotNone(late.anomaly)
        self.assertEqual(late.entity.status, OrderStatus.FAILED)
        self.assertEqual([e.kind for e in late.side_effects], [SideEffectKind.NOTIFY_ADMIN])

    def test_failure_on_authorized_order_keeps_the_authorization(self):
        authorized = reconcile(self.order, order_event(EventKind.PAYMENT_AUTHORIZED), now=NOW).entity
        late = reconcile(authorized, order_event(EventKind.PAYMENT_FAILED, txn="txn-2"), now=NOW)

        self.assertFalse(late.changed)
        self.assertIn("keeping the authorization", late.anomaly)
        self.assertIs(late.entity, authorized)
        self.assertEqual(late.entity.status, OrderStatus.PENDING)
        self.assertEqual(late.entity.payment_status, PaymentStatus.AUTHORIZED)
        self.assertEqual([e.kind for e in late.side_effects], [SideEffectKind.NOTIFY_ADMIN])

    def test_void_releases_an_authorization(self):
        authorized = reconcile(self.order, order_event(EventKind.PAYMENT_AUTHORIZED), now=NOW).entity
        voided = reconcile(authorized, order_event(EventKind.PAYMENT_VOIDED, txn="txn-2"), now=NOW)

        self.assertTrue(voided.changed)
        self.assertEqual(voided.entity.status, OrderStatus.FAILED)
        self.assertEqual(voided.entity.payment_status, PaymentStatus.VOIDED)
        kinds = [e.kind for e in voided.side_effects]
        self.assertIn(SideEffectKind.NOTIFY_ADMIN, kinds)
        self.assertIn(SideEffectKind.NOTIFY_CLIENT, kinds)

        replay = reconcile(voided.entity, order_event(EventKind.PAYMENT_VOIDED, txn="txn-2"), now=NOW)
        self.assertTrue(replay.duplicate)

        late_capture = reconcile(voided.entity, order_event(EventKind.PAYMENT_SUCCEEDED, txn="txn-3"), now=NOW)
        self.assertIsNotNone(late_capture.anomaly)
        self.assertEqual(late_capture.entity.payment_status, PaymentStatus.VOIDED)

    def test_void_before_authorization_is_a_plain_failure(self):
        result = reconcile(self.order, order_event(EventKind.PAYMENT_VOIDED), now=NOW)

        self.assertEqual(result.entity.status, OrderStatus.FAILED)
        self.assertEqual(result.entity.payment_status, PaymentStatus.UNPAID)

    def test_stale_reference_is_an_anomaly(self):
        result = reconcile(self.order, order_event(EventKind.PAYMENT_SUCCEEDED, reference="ref-old"), now=NOW)

        self.assertFalse(result.changed)
        self.assertIn("stale reference", result.anomaly)
        self.assertIsInstance(result.warning, AnomalyWarning)
        self.assertEqual(result.entity.status, OrderStatus.PENDING)

    def test_reference_updates_never_overwrite_stored_handles(self):
        order = make_order(stripe_session_id="cs_1", stripe_payment_intent_id="pi_original")
        event = PaymentEvent(
            kind=EventKind.PAYMENT_SUCCEEDED,
            provider=ProviderKind.STRIPE,
            reference="cs_1",
            reference_field="stripe_session_id",
            transaction_id="pi_other",
            updates={"stripe_payment_intent_id": "pi_other", "paypal_order_id": "nope"},
        )
        result = reconcile(order, event, now=NOW)

        self.assertEqual(result.entity.stripe_payment_intent_id, "pi_original")
        self.assertIsNone(result.entity.paypal_order_id)


class SubscriptionReconciliationTestCase(unittest.TestCase):
    def setUp(self):
        self.sub = make_subscription(paystack_reference="ref-s")

    def test_activation_sets_next_billing_one_month_out(self):
        result = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW)
        sub = result.entity

        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(sub.payment_status, PaymentStatus.CAPTURED)
        self.assertEqual(sub.start_date, NOW)
        self.assertEqual(sub.next_billing_date, datetime(2024, 4, 15, 10, 30, tzinfo=timezone.utc))
        self.assertEqual(sub.last_payment_reference, "txn-1")
        self.assertIn(SideEffectKind.LINK_RECURRING, [e.kind for e in result.side_effects])

    def test_activation_on_month_end_clamps(self):
        jan31 = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)
        sub = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=jan31).entity
        self.assertEqual(sub.next_billing_date, datetime(2024, 2, 29, 9, 0, tzinfo=timezone.utc))

    def test_activation_replay_is_a_duplicate(self):
        active = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW).entity
        again = reconcile(active, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW)

        self.assertTrue(again.duplicate)
        self.assertEqual(again.entity.next_billing_date, active.next_billing_date)

    def test_renewal_advances_from_previous_due_date(self):
        active = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW).entity
        active = active.touched(paystack_subscription_code="SUB_1")
        renewal = PaymentEvent(
            kind=EventKind.SUBSCRIPTION_RENEWED,
            provider=ProviderKind.PAYSTACK,
            reference="SUB_1",
            reference_field="paystack_subscription_code",
            transaction_id="txn-2",
        )
        renewed = reconcile(active, renewal, now=datetime(2024, 4, 16, tzinfo=timezone.utc)).entity

        self.assertEqual(renewed.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(renewed.next_billing_date, datetime(2024, 5, 15, 10, 30, tzinfo=timezone.utc))
        self.assertEqual(renewed.last_payment_reference, "txn-2")

    def test_renewal_failure_then_replay(self):
        active = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW).entity
        failed = reconcile(active, sub_event(EventKind.SUBSCRIPTION_PAYMENT_FAILED, txn="txn-2"), now=NOW)

        self.assertTrue(failed.changed)
        self.assertEqual(failed.entity.status, SubscriptionStatus.PAYMENT_FAILED)
        self.assertEqual(failed.entity.payment_status, PaymentStatus.UNPAID)

        replay = reconcile(failed.entity, sub_event(EventKind.SUBSCRIPTION_PAYMENT_FAILED, txn="txn-2"), now=NOW)
        self.assertTrue(replay.duplicate)

        late_success = reconcile(failed.entity, sub_event(EventKind.SUBSCRIPTION_RENEWED, txn="txn-2"), now=NOW)
        self.assertIsNotNone(late_success.anomaly)
        self.assertEqual(late_success.entity.status, SubscriptionStatus.PAYMENT_FAILED)

    def test_failure_after_success_for_same_transaction_keeps_success(self):
        active = reconcile(self.sub, sub_event(EventKind.SUBSCRIPTION_ACTIVATED), now=NOW).entity
        late = reconcile(active, sub_event(EventKind.SUBSCRIPTION_PAYMENT_FAILED), now=NOW)

        self.assertIsNotNone(late.anomaly)
        self.assertEqual(late.entity.status, SubscriptionStatus.ACTIVE)

    def test_link_fills_missing_codes_only(self):
        event = PaymentEvent(
            kind=EventKind.SUBSCRIPTION_LINKED,
            provider=ProviderKind.PAYSTACK,
            reference="CLIENT@example.com",
            reference_field="email",
            transaction_id="SUB_1",
            updates={"paystack_subscription_code": "SUB_1", "paystack_email_token": "tok"},
        )
        linked = reconcile(self.sub, event, now=NOW)
        self.assertTrue(linked.changed)
        self.assertEqual(linked.entity.paystack_subscription_code, "SUB_1")
        self.assertEqual(linked.entity.status, SubscriptionStatus.PENDING)

        again = reconcile(linked.entity, event, now=NOW)
        self.assertTrue(again.duplicate)

    def test_order_events_do_not_apply_to_subscriptions(self):
        result = reconcile(self.sub, sub_event(EventKind.PAYMENT_AUTHORIZED), now=NOW)
        self.assertIsNotNone(result.anomaly)
        self.assertFalse(result.changed)

    def test_recovery_keeps_a_scheduled_end_date(self):
        end = datetime(2024, 12, 31, tzinfo=timezone.utc)
        failed = make_subscription(
            paystack_reference="ref-s",
            status=SubscriptionStatus.PAYMENT_FAILED,
            end_date=end,
            last_payment_reference="txn-0",
        )

        recovered = reconcile(failed, sub_event(EventKind.SUBSCRIPTION_ACTIVATED, txn="txn-9"), now=NOW).entity

        self.assertEqual(recovered.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(recovered.end_date, end)

    def test_voided_checkout_fails_a_subscription_payment(self):
        self.assertEqual(
            classify(PaymentOutcome.VOIDED, EntityType.SUBSCRIPTION),
            EventKind.SUBSCRIPTION_PAYMENT_FAILED,
        )
        self.assertIsNone(classify(PaymentOutcome.AUTHORIZED, EntityType.SUBSCRIPTION))


if __name__ == "__main__":
    unittest.main()
