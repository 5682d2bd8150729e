"""Notification sink and operator alert channel. Neither may break a settlement."""

import logging

from django.conf import settings

from boostvault.apps.accounts.models import Notification
from boostvault.apps.telegram_bot.tasks import send_telegram_message_task

logger = logging.getLogger(__name__)


def notify(account, kind: str, **payload):
    try:
        return Notification.objects.create(account=account, kind=kind, payload=payload)
    except Exception as exc:  # delivery problems must not surface in the pipeline
        logger.error(f"[notify] Could not notify account {account.pk} ({kind}): {exc}")
        return None


def notify_outcome(account, outcome, kind: str):
    """Tell the account holder why a request did not settle."""
    return notify(account, kind, message=outcome.message, reason=outcome.reason)


def _to_operator(text: str) -> None:
    chat_id = getattr(settings, "OPERATOR_CHAT_ID", "")
    if not chat_id:
        return
    try:
        send_telegram_message_task.delay(chat_id=int(chat_id), text=text, parse_mode="HTML")
    except Exception as exc:
        logger.error(f"[notify] Could not enqueue operator message: {exc}")


def alert(text: str) -> None:
    logger.warning(f"[alert] {text}")
    _to_operator(f"🚨 <b>Operator alert</b>\n\n{text}")


def audit(text: str) -> None:
    """Withdrawal audit trail, posted only when OPERATOR_AUDIT_WITHDRAWALS is on."""
    if getattr(settings, "OPERATOR_AUDIT_WITHDRAWALS", False):
        _to_operator(f"📒 {text}")
