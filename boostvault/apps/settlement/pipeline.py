"""
Settlement Pipeline
Withdrawals of accrued profit from the treasury to a user's custodial address.

    requested -> locked -> balance_verified -> transfer_submitted
              -> transfer_confirmed -> ledger_committed

with failure edges to rejected, transfer_failed and confirmation_timeout.

The payment is signed while the account row is locked for balance_verified, and
its hash is committed as a pending withdrawal before it is sent. From then on
that pending row keeps every other writer off the account until the row is
completed under a fresh row lock at ledger_committed, or failed. The settlement
guard is held for the whole run.
"""

import logging
from typing import Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from boostvault.apps.accounts.crypto import treasury_wallet
from boostvault.apps.accounts.models import Account, LedgerTransaction
from boostvault.apps.accounts.store import (
    close_pending,
    has_pending_transfer,
    lock_account,
    record_transaction,
)

from . import errors
from .accrual import snapshot
from .errors import RPCExhausted, RPCFatal, SettlementError, SettlementOutcome
from .guard import get_guard
from .ledger_client import LedgerClient
from .notify import alert, audit, notify

logger = logging.getLogger(__name__)


def _log(account_id: int, state: str, detail: str = "") -> None:
    logger.info(f"[settlement] account={account_id} {state}" + (f" {detail}" if detail else ""))


def apply_withdrawal(account: Account, amount: int, signature: str, now) -> LedgerTransaction:
    """
    Commit a confirmed withdrawal against a locked account.

    Idempotent on the signature: a completed row is returned untouched and a
    pending row (from a confirmation timeout) is completed in place. Profit the
    user did not withdraw is folded into the new principal, so the cached
    balance and the recomputed balance agree from ``now`` on.
    """
    existing = (
        LedgerTransaction.objects.select_for_update()
        .filter(external_signature=signature)
        .first()
    )
    if existing and existing.is_terminal:
        return existing

    current = snapshot(account, now).balance
    remaining = current - amount
    if remaining < 0:
        logger.error(
            f"[settlement] account={account.pk} withdrawal {signature} of {amount} exceeds "
            f"balance {current}; clamping to zero"
        )
        remaining = 0

    account.principal = remaining
    account.principal_since = now
    account.last_withdrawal_at = now
    account.ledger_balance = remaining
    account.save(
        update_fields=["principal", "principal_since", "last_withdrawal_at", "ledger_balance"]
    )

    if existing:
        existing.settle(LedgerTransaction.COMPLETED, balance_after=remaining)
        return existing
    return record_transaction(
        account,
        LedgerTransaction.WITHDRAWAL,
        amount,
        balance_after=remaining,
        signature=signature,
        created_at=now,
    )


def withdrawal_committed(account: Account, row: LedgerTransaction) -> None:
    notify(
        account,
        "withdrawal_completed",
        amount=row.amount,
        balance_after=row.balance_after,
        signature=row.external_signature,
    )
    audit(
        f"Withdrawal: {row.amount} drops to {account.display_name()} "
        f"({account.address})\nTx: <code>{row.external_signature}</code>"
    )


class SettlementPipeline:
    def __init__(self, client=None, guard=None, clock=None, treasury=None):
        self.client = client or LedgerClient()
        self.guard = guard or get_guard()
        self.clock = clock or timezone.now
        self._treasury = treasury

    @property
    def treasury(self):
        return self._treasury or treasury_wallet()

    def withdraw(self, account: Account, amount: Optional[int] = None) -> SettlementOutcome:
        """
        Withdraw ``amount`` drops of profit, or all current profit when ``amount`` is None.
        Never raises for validation or ledger failures; the outcome says what happened.
        """
        account_id = account.pk
        minimum = settings.MIN_WITHDRAWAL_DROPS
        _log(account_id, "requested", f"amount={'all' if amount is None else amount}")

        if amount is not None and amount < minimum:
            _log(account_id, "rejected", errors.BELOW_MINIMUM)
            return SettlementOutcome.rejected(errors.BELOW_MINIMUM, amount)

        with self.guard.held(account_id) as acquired:
            if not acquired:
                _log(account_id, "rejected", errors.LOCK_CONTENTION)
                return SettlementOutcome.rejected(errors.LOCK_CONTENTION, amount)
            _log(account_id, "locked")
            outcome, row = self._settle(account_id, amount)

        if row is not None and outcome.ok:
            withdrawal_committed(row.account, row)
        return outcome

    def _settle(self, account_id: int, amount: Optional[int]):
        outcome, row, signed = self._verify_and_sign(account_id, amount)
        if outcome is not None:
            return outcome, None
        return self._send_and_commit(account_id, row, signed)

    def _verify_and_sign(self, account_id: int, amount: Optional[int]):
        """
        Verify the balance under the row lock and sign the payment. The signed
        hash is committed as a pending row before anything is sent, so every
        later failure leaves a transfer that reconciliation can resolve.
        """
        minimum = settings.MIN_WITHDRAWAL_DROPS
        resolved = amount

        try:
            with transaction.atomic():
                account = lock_account(account_id)
                if has_pending_transfer(account):
                    _log(account_id, "rejected", errors.SETTLEMENT_PENDING)
                    return SettlementOutcome.rejected(errors.SETTLEMENT_PENDING, amount), None, None

                now = self.clock()
                snap = snapshot(account, now)
                resolved = snap.profit if amount is None else amount
                if resolved < minimum:
                    _log(account_id, "rejected", f"{errors.BELOW_MINIMUM} amount={resolved}")
                    return SettlementOutcome.rejected(errors.BELOW_MINIMUM, resolved), None, None
                if resolved > snap.profit:
                    _log(
                        account_id,
                        "rejected",
                        f"{errors.INSUFFICIENT_BALANCE} amount={resolved} profit={snap.profit}",
                    )
                    return (
                        SettlementOutcome.rejected(errors.INSUFFICIENT_BALANCE, resolved),
                        None,
                        None,
                    )
                _log(account_id, "balance_verified", f"amount={resolved} balance={snap.balance}")

                treasury = self.treasury
                spendable = (
                    self.client.get_balance(treasury.classic_address)
                    - self.client.minimum_reserve()
                )
                if spendable < resolved:
                    alert(
                        f"Treasury underfunded: {spendable} drops spendable, "
                        f"withdrawal of {resolved} drops for account {account_id} refused."
                    )
                    _log(account_id, "rejected", errors.TREASURY_UNDERFUNDED)
                    return (
                        SettlementOutcome.rejected(errors.TREASURY_UNDERFUNDED, resolved),
                        None,
                        None,
                    )

                signed = self.client.sign_transfer(treasury, account.address, resolved)
                row = record_transaction(
                    account,
                    LedgerTransaction.WITHDRAWAL,
                    resolved,
                    balance_after=account.ledger_balance,
                    status=LedgerTransaction.PENDING,
                    signature=signed.get_hash(),
                    created_at=now,
                )
            _log(account_id, "transfer_signed", row.external_signature)

        except RPCFatal as exc:
            alert(f"Withdrawal for account {account_id} rejected by the ledger: {exc.code or exc}")
            _log(account_id, "transfer_failed", f"{errors.RPC_FATAL} {exc.code}")
            return SettlementOutcome.failed(errors.RPC_FATAL, resolved), None, None

        except RPCExhausted as exc:
            alert(f"Withdrawal for account {account_id}: ledger unreachable ({exc})")
            _log(account_id, "transfer_failed", errors.RPC_EXHAUSTED)
            return SettlementOutcome.failed(errors.RPC_EXHAUSTED, resolved), None, None

        return None, row, signed

    def _send_and_commit(self, account_id: int, row: LedgerTransaction, signed):
        signature = row.external_signature
        amount = row.amount

        try:
            self.client.send_signed(signed)
        except RPCFatal as exc:
            # Refused outright: this blob was never applied
            close_pending(row, LedgerTransaction.FAILED)
            alert(f"Withdrawal for account {account_id} rejected by the ledger: {exc.code or exc}")
            _log(account_id, "transfer_failed", f"{errors.RPC_FATAL} {exc.code}")
            return SettlementOutcome.failed(errors.RPC_FATAL, amount, signature), None
        except Exception as exc:
            return self._unresolved(account_id, row, exc), None
        _log(account_id, "transfer_submitted", signature)

        try:
            ok = self.client.confirm(signature)
        except Exception as exc:
            return self._unresolved(account_id, row, exc), None

        if not ok:
            close_pending(row, LedgerTransaction.FAILED)
            _log(account_id, "transfer_failed", signature)
            return SettlementOutcome.failed(errors.TRANSFER_FAILED, amount, signature), None

        _log(account_id, "transfer_confirmed", signature)
        try:
            with transaction.atomic():
                account = lock_account(account_id)
                committed = apply_withdrawal(account, amount, signature, row.created_at)
        except DatabaseError as exc:
            return self._retry_commit(account_id, amount, signature, row.created_at, exc)
        _log(account_id, "ledger_committed", f"{signature} balance={committed.balance_after}")
        return SettlementOutcome.committed(amount, signature, committed.balance_after), committed

    def _unresolved(self, account_id: int, row: LedgerTransaction, exc: Exception) -> SettlementOutcome:
        """The transfer may or may not land; its pending row is left for reconciliation."""
        signature = row.external_signature
        if isinstance(exc, RPCExhausted):
            reason = errors.RPC_EXHAUSTED
        else:
            reason = errors.CONFIRMATION_TIMEOUT
        if not isinstance(exc, SettlementError):
            logger.error(
                f"[settlement] account={account_id} unexpected error after signing {signature}",
                exc_info=exc,
            )
        alert(
            f"Withdrawal {signature} for account {account_id} has no verdict yet ({exc}); "
            "left pending for reconciliation."
        )
        _log(account_id, reason, signature)
        return SettlementOutcome.pending(amount=row.amount, signature=signature, reason=reason)

    def _retry_commit(self, account_id, amount, signature, now, exc):
        """The transfer is final on the ledger; only the local commit is retried."""
        logger.error(
            f"[settlement] account={account_id} commit of confirmed {signature} failed: {exc}"
        )
        for attempt in range(1, settings.DB_COMMIT_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    account = lock_account(account_id)
                    row = apply_withdrawal(account, amount, signature, now)
                _log(
                    account_id,
                    "ledger_committed",
                    f"{signature} balance={row.balance_after} (commit attempt {attempt})",
                )
                return SettlementOutcome.committed(amount, signature, row.balance_after), row
            except DatabaseError as retry_exc:
                logger.error(
                    f"[settlement] account={account_id} commit retry {attempt}/"
                    f"{settings.DB_COMMIT_ATTEMPTS} failed: {retry_exc}"
                )

        alert(
            f"Withdrawal {signature} of {amount} drops for account {account_id} is confirmed on "
            "the ledger but could not be recorded. Its pending row will be completed by the "
            "next reconciliation run, or run:\n"
            f"<code>manage.py reconcile_transfer {account_id} {signature} withdrawal {amount}</code>"
        )
        _log(account_id, "failed", errors.DB_TRANSACTION_FAILURE)
        return SettlementOutcome.failed(errors.DB_TRANSACTION_FAILURE, amount, signature), None
