from __future__ import annotations

import logging
from dataclasses import asdict

from celery import shared_task
from django.db import DatabaseError

from boostvault.apps.accounts.models import Account, LedgerTransaction
from boostvault.apps.telegram_bot.tasks import send_telegram_message_task

from . import errors, jobs
from .deposits import DepositPipeline
from .errors import SettlementError
from .notify import notify_outcome
from .pipeline import SettlementPipeline
from .referral import ReferralCascade

logger = logging.getLogger(__name__)


def _account_or_reply(telegram_id: int) -> Account | None:
    account = Account.objects.filter(telegram_id=telegram_id).first()
    if account is None:
        send_telegram_message_task.delay(
            chat_id=telegram_id, text=errors.MESSAGES[errors.ACCOUNT_NOT_FOUND], parse_mode="HTML"
        )
    return account


# Interactive entry points. A request that left the front-end keeps running
# here until the transfer reaches a terminal state.


@shared_task(queue="settlement")
def request_withdrawal(telegram_id: int, amount: int | None = None) -> dict:
    account = _account_or_reply(telegram_id)
    if account is None:
        return asdict(errors.SettlementOutcome.rejected(errors.ACCOUNT_NOT_FOUND, amount))

    outcome = SettlementPipeline().withdraw(account, amount)
    if outcome.status == errors.PENDING:
        notify_outcome(account, outcome, "withdrawal_pending")
    elif not outcome.ok:
        notify_outcome(account, outcome, "withdrawal_rejected")
    return asdict(outcome)


@shared_task(queue="settlement")
def request_deposit_sweep(telegram_id: int) -> dict:
    account = _account_or_reply(telegram_id)
    if account is None:
        return asdict(errors.SettlementOutcome.rejected(errors.ACCOUNT_NOT_FOUND))

    outcome = DepositPipeline().sweep(account)
    if not outcome.ok:
        notify_outcome(account, outcome, "deposit_rejected")
    return asdict(outcome)


@shared_task(bind=True, queue="settlement", max_retries=5, default_retry_delay=60)
def retry_referral_bonus(self, deposit_id: int) -> str | None:
    deposit = LedgerTransaction.objects.select_related("account__referred_by").get(pk=deposit_id)
    try:
        row = ReferralCascade().disburse(deposit)
    except (SettlementError, DatabaseError) as exc:
        logger.warning(f"[referral] Retrying bonus for deposit {deposit_id}: {exc}")
        raise self.retry(exc=exc)
    return row.status if row else None


# Periodic jobs (see CELERY_BEAT_SCHEDULE)


@shared_task(queue="settlement")
def refresh_balances_task() -> dict:
    return jobs.refresh_balances()


@shared_task(queue="settlement")
def auto_withdrawals_task() -> list:
    return [asdict(outcome) for outcome in jobs.run_auto_withdrawals()]


@shared_task(queue="settlement")
def auto_reinvest_task() -> dict:
    return jobs.run_auto_reinvest()


@shared_task(queue="settlement")
def reconcile_pending_task() -> dict:
    return jobs.reconcile_pending_transfers()


@shared_task(queue="settlement")
def deposit_reminders_task() -> int:
    return jobs.send_deposit_reminders()
