# services/__init__.py
# ============================================================================
# COMMERCE BACKEND — SERVICES MODULE
# ============================================================================
# Notifications are importable from here; the commerce service lives in
# services.commerce_service (it depends on the payment pipeline).
# ============================================================================

from services.notifications import (
    IEmailSender,
    LogOnlyEmailSender,
    Notifier,
    SendGridEmailSender,
)

__all__ = [
    "IEmailSender",
    "LogOnlyEmailSender",
    "Notifier",
    "SendGridEmailSender",
]
