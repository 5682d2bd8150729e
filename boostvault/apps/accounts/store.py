"""
Account Store.

Transactional persistence for accounts and their ledger history. Every
balance-bearing mutation goes through ``lock_account`` inside the caller's
``transaction.atomic()`` block, so the row stays locked from verification to
commit.
"""

import logging
from datetime import timedelta
from typing import Optional

from django.db import DatabaseError, transaction
from django.db.models import Count, Q, Sum
from django.utils import timezone

from .crypto import create_custodial_wallet
from .models import Account, LedgerTransaction

logger = logging.getLogger(__name__)


@transaction.atomic
def open_account(
    telegram_id: int,
    first_name: str = "",
    referrer_telegram_id: Optional[int] = None,
) -> tuple[Account, bool]:
    """Fetch the account for a Telegram user, creating it (and its wallet) on first interaction."""
    account = Account.objects.filter(telegram_id=telegram_id).first()
    if account:
        if first_name and account.first_name != first_name:
            account.first_name = first_name
            account.save(update_fields=["first_name"])
        return account, False

    referrer = None
    if referrer_telegram_id and referrer_telegram_id != telegram_id:
        referrer = Account.objects.filter(telegram_id=referrer_telegram_id).first()

    address, secret = create_custodial_wallet()
    account = Account.objects.create(
        telegram_id=telegram_id,
        first_name=first_name or "",
        address=address,
        secret_encrypted=secret,
        referred_by=referrer,
        last_activity_at=timezone.now(),
    )
    logger.info(
        f"[accounts] Opened account {account.pk} for telegram user {telegram_id}"
        + (f" referred by {referrer.pk}" if referrer else "")
    )
    return account, True


def lock_account(account_id: int) -> Account:
    """Row-locking read. Must run inside transaction.atomic()."""
    return Account.objects.select_for_update().get(pk=account_id)


def record_transaction(
    account: Account,
    kind: str,
    amount: int,
    *,
    balance_after: int,
    status: str = LedgerTransaction.COMPLETED,
    signature: Optional[str] = None,
    source: Optional[LedgerTransaction] = None,
    created_at=None,
) -> LedgerTransaction:
    if amount <= 0:
        raise ValueError(f"Ledger amounts must be positive, got {amount}")
    if balance_after < 0:
        raise ValueError(f"Balance cannot go negative, got {balance_after}")
    fields = dict(
        account=account,
        kind=kind,
        amount=amount,
        balance_after=balance_after,
        status=status,
        external_signature=signature,
        source=source,
    )
    if created_at is not None:
        fields["created_at"] = created_at
    if status != LedgerTransaction.PENDING:
        fields["settled_at"] = timezone.now()
    return LedgerTransaction.objects.create(**fields)


def close_pending(row: LedgerTransaction, status: str) -> LedgerTransaction:
    """
    Settle a pending row in a transaction of its own. A row that is already
    terminal is returned untouched. On a database error the row stays pending
    and reconciliation settles it later.
    """
    try:
        with transaction.atomic():
            locked = LedgerTransaction.objects.select_for_update().get(pk=row.pk)
            if locked.status == LedgerTransaction.PENDING:
                locked.settle(status)
        return locked
    except DatabaseError as exc:
        logger.error(f"[accounts] Could not settle {row.external_signature} as {status}: {exc}")
        return row


def has_pending_transfer(account: Account) -> bool:
    """True while an on-chain transfer for this account still awaits reconciliation."""
    return (
        LedgerTransaction.objects.filter(
            account=account,
            status=LedgerTransaction.PENDING,
            external_signature__isnull=False,
        )
        .exclude(kind=LedgerTransaction.REFERRAL_BONUS)
        .exists()
    )


def history(account: Account, kind: Optional[str] = None, limit: int = 10):
    qs = LedgerTransaction.objects.filter(account=account)
    if kind:
        qs = qs.filter(kind=kind)
    return list(qs.order_by("-created_at", "-id")[:limit])


def referral_stats(account: Account) -> dict:
    paid = LedgerTransaction.objects.filter(
        account=account,
        kind=LedgerTransaction.REFERRAL_BONUS,
        status=LedgerTransaction.COMPLETED,
    ).aggregate(total=Sum("amount"))["total"]
    return {
        "referral_count": account.referrals.count(),
        "bonus_total": paid or 0,
    }


@transaction.atomic
def set_auto_withdrawal(account_id: int, enabled: bool) -> Account:
    account = lock_account(account_id)
    account.auto_withdrawal = enabled
    if enabled:
        account.auto_reinvest = False
    account.save(update_fields=["auto_withdrawal", "auto_reinvest"])
    return account


@transaction.atomic
def set_auto_reinvest(account_id: int, enabled: bool) -> Account:
    account = lock_account(account_id)
    account.auto_reinvest = enabled
    if enabled:
        account.auto_withdrawal = False
    account.save(update_fields=["auto_withdrawal", "auto_reinvest"])
    return account


def touch(account_id: int) -> None:
    Account.objects.filter(pk=account_id).update(last_activity_at=timezone.now())


def admin_stats(now=None, active_days: int = 7) -> dict:
    """Operator report: user counts, settled flows and recent failures. Amounts in drops."""
    now = now or timezone.now()
    since = now - timedelta(days=active_days)

    users = Account.objects.aggregate(
        total=Count("id"),
        active=Count("id", filter=Q(last_activity_at__gt=since)),
        auto_reinvest=Count("id", filter=Q(auto_reinvest=True)),
        auto_withdrawal=Count("id", filter=Q(auto_withdrawal=True)),
        stage_active=Count("id", filter=Q(principal__gt=0)),
        stage_registered=Count("id", filter=Q(principal=0) & ~Q(address="")),
        stage_new=Count("id", filter=Q(principal=0, address="")),
    )
    deposit = Q(kind=LedgerTransaction.DEPOSIT)
    withdrawal = Q(kind=LedgerTransaction.WITHDRAWAL)
    flows = LedgerTransaction.objects.filter(status=LedgerTransaction.COMPLETED).aggregate(
        deposits=Count("id", filter=deposit),
        deposit_total=Sum("amount", filter=deposit),
        withdrawals=Count("id", filter=withdrawal),
        withdrawal_total=Sum("amount", filter=withdrawal),
    )
    with_issues = (
        LedgerTransaction.objects.filter(status=LedgerTransaction.FAILED, created_at__gt=since)
        .values("account")
        .distinct()
        .count()
    )

    return {
        "total_users": users["total"],
        "active_users": users["active"],
        "auto_reinvest_users": users["auto_reinvest"],
        "auto_withdrawal_users": users["auto_withdrawal"],
        "deposits": flows["deposits"],
        "deposit_total": flows["deposit_total"] or 0,
        "withdrawals": flows["withdrawals"],
        "withdrawal_total": flows["withdrawal_total"] or 0,
        "users_by_stage": {
            "active": users["stage_active"],
            "registered": users["stage_registered"],
            "new": users["stage_new"],
        },
        "users_with_issues": with_issues,
    }
