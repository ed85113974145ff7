"""
Expiry Sweep
============
Background task that retires subscriptions nobody is paying for.

Features:
- Runs every EXPIRY_SWEEP_INTERVAL seconds (default hourly)
- Expires active/paused subscriptions whose admin-set end_date has passed
- Expires subscriptions stuck in payment_failed beyond the grace period
- Every expiry goes through the lifecycle guard as the system actor
- Audit entry per expiry; provider-side billing is disabled best-effort
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from config import Settings
from pipeline.errors import PreconditionError
from pipeline.gateway import PaymentGateway
from pipeline.lifecycle import check_subscription_transition
from schemas.commerce import (
    Actor,
    AuditEventType,
    AuditLogEntry,
    EntityType,
    Subscription,
    SubscriptionStatus,
    utcnow,
)
from storage.repositories import EntityStore

logger = structlog.get_logger().bind(component="expiry_sweep")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ExpirySweepConfig:
    """Expiry sweep configuration"""

    enabled: bool = True
    # How often to sweep (seconds)
    interval_seconds: int = 3600
    # How long a subscription may sit in payment_failed before it expires
    grace_days: int = 14

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExpirySweepConfig":
        return cls(
            enabled=settings.expiry_sweep_enabled,
            interval_seconds=settings.expiry_sweep_interval_seconds,
            grace_days=settings.payment_failed_grace_days,
        )


# =============================================================================
# SWEEP LOGIC
# =============================================================================

def expiry_reason(sub: Subscription, now: datetime, grace: timedelta) -> Optional[str]:
    """Why ``sub`` should expire at ``now``, or None if it should not."""
    if sub.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED):
        if sub.end_date is not None and sub.end_date <= now:
            return "end_date_passed"
        return None

    if sub.status == SubscriptionStatus.PAYMENT_FAILED:
        # the missed due date, falling back to when the failure was recorded
        failed_since = sub.next_billing_date or sub.updated_at
        if failed_since + grace <= now:
            return "payment_failed_grace_elapsed"
    return None


async def sweep_once(
    store: EntityStore,
    now: Optional[datetime] = None,
    grace_days: int = 14,
    gateway: Optional[PaymentGateway] = None,
) -> List[str]:
    """
    One pass over every sweepable subscription.

    Args:
        gateway: When given, provider-side billing of each expired
            subscription is disabled so the customer stops being charged

    Returns:
        Ids of the subscriptions moved to expired
    """
    now = now or utcnow()
    grace = timedelta(days=grace_days)
    system = Actor.system()
    expired: List[str] = []

    for status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED, SubscriptionStatus.PAYMENT_FAILED):
        for sub in await store.subscriptions.find_many(status=status):
            if expiry_reason(sub, now, grace) is None:
                continue

            async with store.locks.hold(EntityType.SUBSCRIPTION, sub.id):
                # fresh read under the entity lock
                current = await store.subscriptions.get(sub.id)
                reason = expiry_reason(current, now, grace) if current is not None else None
                if reason is None:
                    continue

                try:
                    check_subscription_transition(current, system, SubscriptionStatus.EXPIRED)
                except PreconditionError:
                    continue

                updated = current.touched(status=SubscriptionStatus.EXPIRED, end_date=current.end_date or now)
                await store.subscriptions.save(updated)

            await store.audit.append(AuditLogEntry(
                correlation_id=str(uuid.uuid4()),
                event_type=AuditEventType.SUBSCRIPTION_EXPIRED,
                entity_type="subscription",
                entity_id=current.id,
                previous_state={"status": current.status.value},
                new_state={"status": updated.status.value},
                metadata={"reason": reason},
            ))
            logger.info("subscription_expired", subscription_id=current.id, reason=reason)
            expired.append(current.id)

            if gateway is not None:
                await gateway.disable_recurring(updated)

    return expired


async def expiry_loop(
    store: EntityStore,
    config: ExpirySweepConfig,
    gateway: Optional[PaymentGateway] = None,
) -> None:
    """Sweep forever; one failed pass never stops the loop."""
    logger.info(
        "expiry_sweep_started",
        interval=config.interval_seconds,
        grace_days=config.grace_days,
        enabled=config.enabled,
    )

    if not config.enabled:
        logger.info("expiry_sweep_disabled")
        return

    while True:
        try:
            expired = await sweep_once(store, grace_days=config.grace_days, gateway=gateway)
            if expired:
                logger.info("expiry_sweep_complete", expired=len(expired))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("expiry_sweep_error", error=str(e))

        await asyncio.sleep(config.interval_seconds)
