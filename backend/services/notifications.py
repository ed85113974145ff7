"""
Notification Sink
=================
Best-effort email to the admin inbox and to clients.

Nothing here raises: a failed send is logged and the caller's state
transition stands.

pip install sendgrid
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Union

import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from schemas.commerce import Order, SideEffect, SideEffectKind, Subscription

logger = structlog.get_logger().bind(component="notifications")


class IEmailSender(ABC):
    """Email transport interface"""

    @abstractmethod
    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        """Send one message. Returns the provider message id if known."""
        pass


class SendGridEmailSender(IEmailSender):
    """SendGrid v3 mail send"""

    def __init__(self, api_key: str, from_email: str):
        self.from_email = from_email
        self._client = SendGridAPIClient(api_key)

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        message = Mail(
            from_email=self.from_email,
            to_emails=to,
            subject=subject,
            plain_text_content=body,
        )
        response = await asyncio.to_thread(self._client.send, message)
        return response.headers.get("X-Message-Id")


class LogOnlyEmailSender(IEmailSender):
    """Used when no SendGrid key is configured"""

    async def send(self, to: str, subject: str, body: str) -> Optional[str]:
        logger.info("email_not_sent", reason="no_transport", to=to, subject=subject)
        return None


def _describe(entity: Union[Order, Subscription]) -> str:
    lines = [
        f"Plan: {entity.plan_title} ({entity.plan_type.value})",
        f"Customer: {entity.name} <{entity.email}>",
        f"Phone: {entity.phone or '-'}",
        f"Price: {entity.price}",
        f"Status: {entity.status.value} / {entity.payment_status.value}",
    ]
    if entity.description:
        lines.append(f"Description: {entity.description}")
    return "\n".join(lines)


class Notifier:
    """Routes side effects to email."""

    def __init__(self, sender: IEmailSender, admin_email: str = ""):
        self.sender = sender
        self.admin_email = admin_email

    async def _send(self, to: str, subject: str, body: str) -> bool:
        if not to:
            logger.debug("email_skipped", reason="no_recipient", subject=subject)
            return False
        try:
            message_id = await self.sender.send(to, subject, body)
        except Exception as e:
            logger.warning("email_failed", to=to, subject=subject, error=str(e))
            return False
        logger.info("email_sent", to=to, subject=subject, message_id=message_id)
        return True

    async def notify_admin(self, subject: str, body: str) -> bool:
        return await self._send(self.admin_email, subject, body)

    async def notify_client(self, email: str, subject: str, body: str) -> bool:
        return await self._send(email, subject, body)

    async def entity_created(self, entity: Union[Order, Subscription]) -> None:
        kind = entity.entity_type.value
        await self.notify_admin(f"New {kind} received: {entity.plan_title}", _describe(entity))

    async def dispatch(
        self,
        entity: Union[Order, Subscription],
        effects: Iterable[SideEffect],
    ) -> None:
        """Deliver notification side effects. Other kinds are handled by their owners."""
        for effect in effects:
            subject = effect.message or f"{entity.entity_type.value} {entity.id} updated"
            if effect.kind == SideEffectKind.NOTIFY_ADMIN:
                await self.notify_admin(subject, _describe(entity))
            elif effect.kind == SideEffectKind.NOTIFY_CLIENT:
                await self.notify_client(entity.email, subject, _describe(entity))
            elif effect.kind == SideEffectKind.RELEASE_FUNDS:
                await self.notify_admin(
                    f"Release funds for order {entity.id}",
                    "The client accepted the delivered work.\n\n" + _describe(entity),
                )
