from __future__ import annotations

import logging

import requests
from celery import shared_task
from django.conf import settings

logger = logging.getLogger(__name__)

API_ROOT = "https://api.telegram.org"


@shared_task(queue="telegram_bot")
def send_telegram_message_task(
    chat_id: int,
    text: str,
    reply_markup: dict | None = None,
    parse_mode: str = "HTML",
) -> bool:
    """
    Deliver a single message through the Bot API sendMessage call.
    Delivery is best effort; a failed send is logged and reported as False.
    """
    token = getattr(settings, "TELEGRAM_BOT_TOKEN", "")
    if not token:
        logger.warning(f"[task] TELEGRAM_BOT_TOKEN not set, dropping message to {chat_id}")
        return False

    payload = {"chat_id": chat_id, "text": text, "parse_mode": parse_mode}
    if reply_markup:
        payload["reply_markup"] = reply_markup

    try:
        resp = requests.post(f"{API_ROOT}/bot{token}/sendMessage", json=payload, timeout=10)
        resp.raise_for_status()
        return True
    except requests.RequestException as exc:
        logger.error(f"[task] Error sending message to {chat_id}: {exc}")
        return False
