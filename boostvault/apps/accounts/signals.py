from django.db.models.signals import post_save
from django.dispatch import receiver
from django.utils import timezone
from xrpl.utils import drops_to_xrp

from boostvault.apps.telegram_bot.tasks import send_telegram_message_task
from .models import Notification


def _xrp(drops) -> str:
    return f"{drops_to_xrp(str(int(drops or 0))):,.2f} XRP"


def render_notification(kind: str, payload: dict) -> str | None:
    """Plain HTML text for a notification kind, or None for kinds we do not send."""
    if kind == "withdrawal_completed":
        return (
            "<b>✅ Withdrawal Complete</b>\n\n"
            f"Amount: <b>{_xrp(payload.get('amount'))}</b>\n"
            f"New balance: <b>{_xrp(payload.get('balance_after'))}</b>\n\n"
            f"Tx: <code>{payload.get('signature')}</code>"
        )

    if kind == "deposit_completed":
        return (
            "<b>💰 Deposit Received</b>\n\n"
            f"Your deposit of <b>{_xrp(payload.get('amount'))}</b> has been added to your account.\n"
            f"Total deposit: <b>{_xrp(payload.get('principal'))}</b>\n"
            f"Current balance: <b>{_xrp(payload.get('balance_after'))}</b>"
        )

    if kind == "reinvest_completed":
        return (
            "<b>🔄 Auto Reinvest</b>\n\n"
            f"{_xrp(payload.get('amount'))} of profit has been added to your main balance."
        )

    if kind == "referral_bonus":
        return (
            "<b>🎁 Referral Bonus</b>\n\n"
            f"You've received a referral bonus of <b>{_xrp(payload.get('amount'))}</b>!"
        )

    if kind in ("withdrawal_rejected", "withdrawal_pending", "deposit_rejected"):
        # Rejections and failures carry their user-facing message in the payload
        return payload.get("message")

    if kind == "deposit_reminder":
        name = payload.get("first_name") or "there"
        return (
            "<b>Reminder:</b>\n\n"
            f"👋 Hello, <b>{name}</b>!\n\n"
            "You haven't deposited any funds yet. "
            f"Deposit at least <b>{_xrp(payload.get('minimum'))}</b> to start growing your balance.\n\n"
            f"<b>Your wallet address:</b> <code>{payload.get('address')}</code>"
        )

    return None


# When a Notification row is created, send a message to the account holder via Telegram
@receiver(
    post_save,
    sender=Notification,
    dispatch_uid="accounts.signals.send_notification",
)
def send_notification_on_creation(sender, instance, created, **kwargs):
    if not created or instance.sent:
        return

    text = render_notification(instance.kind, instance.payload or {})
    if not text:
        return

    send_telegram_message_task.delay(
        chat_id=instance.account.telegram_id, text=text, parse_mode="HTML"
    )
    instance.sent = True
    instance.sent_at = timezone.now()
    instance.save(update_fields=["sent", "sent_at"])
