"""
Reconciliation of transfers whose outcome was not known at commit time.

Works purely by observation: the ledger is asked what happened to a signature
and the local row is brought in line. Nothing is ever resubmitted from here.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from boostvault.apps.accounts.models import LedgerTransaction
from boostvault.apps.accounts.store import lock_account

from .deposits import apply_deposit, deposit_committed
from .errors import RPCExhausted, SettlementError
from .guard import get_guard
from .ledger_client import CONFIRMED, FAILED, NOT_FOUND, LedgerClient
from .pipeline import apply_withdrawal, withdrawal_committed
from .referral import ReferralCascade, complete_bonus

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, client=None, guard=None, clock=None, cascade=None):
        self.client = client or LedgerClient()
        self.guard = guard or get_guard()
        self.clock = clock or timezone.now
        self.cascade = cascade

    def _cascade(self):
        return self.cascade or ReferralCascade(client=self.client, clock=self.clock)

    def reconcile_pending(self) -> dict:
        """Resolve every pending row that carries a signature. Returns counts per result."""
        counts = {"completed": 0, "failed": 0, "pending": 0, "skipped": 0}
        rows = LedgerTransaction.objects.filter(
            status=LedgerTransaction.PENDING, external_signature__isnull=False
        ).order_by("created_at", "id")
        for row_id in rows.values_list("pk", flat=True):
            result = self.reconcile_row(row_id)
            counts[result] += 1
        logger.info(f"[reconcile] Pending transfers: {counts}")
        return counts

    def reconcile_row(self, row_id: int) -> str:
        row = LedgerTransaction.objects.get(pk=row_id)
        if row.status != LedgerTransaction.PENDING:
            return "skipped"
        try:
            status = self.client.transfer_status(row.external_signature)
        except RPCExhausted as exc:
            logger.warning(f"[reconcile] {row.external_signature}: ledger unreachable ({exc})")
            return "pending"

        if status == CONFIRMED:
            return self._finish(row)
        if status == FAILED:
            return self._fail(row, "failed on the ledger")
        expiry = timedelta(seconds=settings.PENDING_TRANSFER_EXPIRY)
        if status == NOT_FOUND and self.clock() - row.created_at > expiry:
            return self._fail(row, "never reached a validated ledger")
        return "pending"

    def _finish(self, row: LedgerTransaction) -> str:
        # Referral bonuses do not touch the referrer's balance, so they need no guard
        if row.kind == LedgerTransaction.REFERRAL_BONUS:
            with transaction.atomic():
                locked = LedgerTransaction.objects.select_for_update().get(pk=row.pk)
                if locked.status != LedgerTransaction.PENDING:
                    return "skipped"
                complete_bonus(locked, True)
            return "completed"

        with self.guard.held(row.account_id) as acquired:
            if not acquired:
                logger.info(f"[reconcile] Account {row.account_id} busy, retrying later")
                return "skipped"
            with transaction.atomic():
                locked = LedgerTransaction.objects.select_for_update().get(pk=row.pk)
                if locked.status != LedgerTransaction.PENDING:
                    return "skipped"
                account = lock_account(row.account_id)
                if row.kind == LedgerTransaction.WITHDRAWAL:
                    # The user's balance was verified when the transfer was made
                    committed = apply_withdrawal(
                        account, locked.amount, locked.external_signature, locked.created_at
                    )
                else:
                    committed = apply_deposit(
                        account, locked.amount, locked.external_signature, self.clock()
                    )

        logger.info(
            f"[reconcile] Committed {committed.kind} {committed.external_signature} "
            f"for account {committed.account_id}"
        )
        if committed.kind == LedgerTransaction.WITHDRAWAL:
            withdrawal_committed(committed.account, committed)
        else:
            deposit_committed(committed, self._cascade())
        return "completed"

    def _fail(self, row: LedgerTransaction, why: str) -> str:
        with transaction.atomic():
            locked = LedgerTransaction.objects.select_for_update().get(pk=row.pk)
            if locked.status != LedgerTransaction.PENDING:
                return "skipped"
            locked.settle(LedgerTransaction.FAILED)
        logger.warning(
            f"[reconcile] {row.kind} {row.external_signature} for account {row.account_id} {why}"
        )
        return "failed"

    def reconcile_transfer(
        self, account_id: int, signature: str, kind: str, amount: int
    ) -> LedgerTransaction:
        """
        Record a transfer that is final on the ledger but missing locally, e.g.
        after a crash between confirmation and commit. Repeated calls with the
        same signature commit at most once.
        """
        if kind not in (LedgerTransaction.WITHDRAWAL, LedgerTransaction.DEPOSIT):
            raise ValueError(f"Cannot reconcile transfers of kind '{kind}'")
        if amount <= 0:
            raise ValueError("Amount must be positive")

        existing = LedgerTransaction.objects.filter(external_signature=signature).first()
        if existing and existing.is_terminal:
            logger.info(f"[reconcile] {signature} already {existing.status}")
            return existing
        if existing and (existing.account_id != account_id or existing.kind != kind):
            raise SettlementError(
                f"{signature} is recorded as {existing.kind} for account {existing.account_id}"
            )

        status = self.client.transfer_status(signature)
        if status != CONFIRMED:
            raise SettlementError(f"{signature} is not a validated successful transfer ({status})")

        if existing:
            self._finish(existing)
            existing.refresh_from_db()
            if existing.status == LedgerTransaction.PENDING:
                raise SettlementError(f"Account {account_id} is busy, try again shortly")
            return existing

        with self.guard.held(account_id) as acquired:
            if not acquired:
                raise SettlementError(f"Account {account_id} is busy, try again shortly")
            with transaction.atomic():
                account = lock_account(account_id)
                if kind == LedgerTransaction.WITHDRAWAL:
                    row = apply_withdrawal(account, amount, signature, self.clock())
                else:
                    row = apply_deposit(account, amount, signature, self.clock())
        logger.info(f"[reconcile] Recorded {kind} {signature} for account {account_id}")
        if kind == LedgerTransaction.WITHDRAWAL:
            withdrawal_committed(row.account, row)
        else:
            deposit_committed(row, self._cascade())
        return row
