"""
Periodic settlement jobs. Each one takes the settlement guard and the account
row lock exactly like an interactive request; a busy account is skipped and
picked up on the next run.
"""

import logging

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from boostvault.apps.accounts.models import Account, LedgerTransaction
from boostvault.apps.accounts.store import has_pending_transfer, lock_account, record_transaction

from .accrual import snapshot
from .guard import get_guard
from .notify import notify
from .pipeline import SettlementPipeline
from .reconcile import Reconciler

logger = logging.getLogger(__name__)


def refresh_balances(guard=None, clock=None) -> dict:
    """Write the recomputed balance into the ledger_balance cache."""
    guard = guard or get_guard()
    clock = clock or timezone.now
    counts = {"updated": 0, "skipped": 0}

    for account_id in Account.objects.filter(principal__gt=0).values_list("pk", flat=True):
        with guard.held(account_id) as acquired:
            if not acquired:
                counts["skipped"] += 1
                continue
            with transaction.atomic():
                account = lock_account(account_id)
                if has_pending_transfer(account):
                    counts["skipped"] += 1
                    continue
                current = snapshot(account, clock()).balance
                if current != account.ledger_balance:
                    account.ledger_balance = current
                    account.save(update_fields=["ledger_balance"])
                counts["updated"] += 1

    logger.info(f"[jobs] Balance refresh: {counts}")
    return counts


def run_auto_withdrawals(pipeline=None, clock=None) -> list:
    """Withdraw all profit for accounts that opted in, once it reaches the minimum."""
    pipeline = pipeline or SettlementPipeline()
    clock = clock or timezone.now
    minimum = settings.MIN_WITHDRAWAL_DROPS
    outcomes = []

    for account in Account.objects.filter(auto_withdrawal=True, principal__gt=0):
        # Selection only; the pipeline re-verifies under the row lock
        if snapshot(account, clock()).profit < minimum:
            continue
        outcome = pipeline.withdraw(account, None)
        logger.info(f"[jobs] Auto-withdrawal for account {account.pk}: {outcome.status} {outcome.reason or ''}")
        outcomes.append(outcome)
    return outcomes


def run_auto_reinvest(guard=None, clock=None) -> dict:
    """Fold accrued profit into principal for accounts that opted in."""
    guard = guard or get_guard()
    clock = clock or timezone.now
    counts = {"reinvested": 0, "skipped": 0}

    for account_id in Account.objects.filter(auto_reinvest=True, principal__gt=0).values_list(
        "pk", flat=True
    ):
        with guard.held(account_id) as acquired:
            if not acquired:
                counts["skipped"] += 1
                continue
            with transaction.atomic():
                account = lock_account(account_id)
                if has_pending_transfer(account):
                    counts["skipped"] += 1
                    continue
                now = clock()
                snap = snapshot(account, now)
                if snap.profit <= 0:
                    continue
                account.principal = snap.balance
                account.principal_since = now
                account.ledger_balance = snap.balance
                account.save(update_fields=["principal", "principal_since", "ledger_balance"])
                record_transaction(
                    account,
                    LedgerTransaction.REINVEST,
                    snap.profit,
                    balance_after=snap.balance,
                    created_at=now,
                )
        logger.info(f"[jobs] Reinvested {snap.profit} drops for account {account_id}")
        notify(account, "reinvest_completed", amount=snap.profit, balance_after=snap.balance)
        counts["reinvested"] += 1

    return counts


def send_deposit_reminders() -> int:
    sent = 0
    for account in Account.objects.filter(principal=0):
        notify(
            account,
            "deposit_reminder",
            first_name=account.first_name,
            address=account.address,
            minimum=settings.MIN_DEPOSIT_DROPS,
        )
        sent += 1
    logger.info(f"[jobs] Sent {sent} deposit reminders")
    return sent


def reconcile_pending_transfers(reconciler=None) -> dict:
    return (reconciler or Reconciler()).reconcile_pending()
