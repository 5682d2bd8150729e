"""
Deposit Ingestion Pipeline
Sweeps funds a user sent to their custodial address into the treasury and
credits them as principal.
"""

import logging

from django.conf import settings
from django.db import DatabaseError, transaction
from django.utils import timezone

from boostvault.apps.accounts.crypto import treasury_wallet, wallet_for
from boostvault.apps.accounts.models import Account, LedgerTransaction
from boostvault.apps.accounts.store import (
    close_pending,
    has_pending_transfer,
    lock_account,
    record_transaction,
)

from . import errors
from .errors import RPCExhausted, RPCFatal, SettlementError, SettlementOutcome
from .guard import get_guard
from .ledger_client import LedgerClient
from .notify import alert, notify
from .referral import ReferralCascade

logger = logging.getLogger(__name__)


def _log(account_id: int, state: str, detail: str = "") -> None:
    logger.info(f"[deposit] account={account_id} {state}" + (f" {detail}" if detail else ""))


def apply_deposit(account: Account, amount: int, signature: str, now) -> LedgerTransaction:
    """Credit a confirmed sweep to a locked account. Idempotent on the signature."""
    existing = (
        LedgerTransaction.objects.select_for_update()
        .filter(external_signature=signature)
        .first()
    )
    if existing and existing.is_terminal:
        return existing

    account.principal += amount
    if account.principal_since is None:
        account.principal_since = now
    account.ledger_balance += amount
    account.save(update_fields=["principal", "principal_since", "ledger_balance"])

    if existing:
        existing.settle(LedgerTransaction.COMPLETED, balance_after=account.ledger_balance)
        return existing
    return record_transaction(
        account,
        LedgerTransaction.DEPOSIT,
        amount,
        balance_after=account.ledger_balance,
        signature=signature,
        created_at=now,
    )


def deposit_committed(row: LedgerTransaction, cascade=None) -> None:
    """Post-commit work for a credited deposit: notify, then pay the referral bonus."""
    account = row.account
    notify(
        account,
        "deposit_completed",
        amount=row.amount,
        principal=account.principal,
        balance_after=row.balance_after,
    )
    if account.referred_by_id is None:
        return
    try:
        (cascade or ReferralCascade()).disburse(row)
    except Exception as exc:  # the deposit is committed; the bonus is retried separately
        logger.error(f"[deposit] Referral bonus for deposit {row.pk} failed: {exc}", exc_info=True)
        from .tasks import retry_referral_bonus

        retry_referral_bonus.apply_async(args=[row.pk], countdown=60)


class DepositPipeline:
    def __init__(self, client=None, guard=None, clock=None, treasury=None, cascade=None):
        self.client = client or LedgerClient()
        self.guard = guard or get_guard()
        self.clock = clock or timezone.now
        self._treasury = treasury
        self.cascade = cascade

    @property
    def treasury(self):
        return self._treasury or treasury_wallet()

    def sweep(self, account: Account) -> SettlementOutcome:
        account_id = account.pk
        _log(account_id, "requested")

        with self.guard.held(account_id) as acquired:
            if not acquired:
                _log(account_id, "rejected", errors.LOCK_CONTENTION)
                return SettlementOutcome.rejected(errors.LOCK_CONTENTION)
            outcome, row = self._sweep(account_id)

        if row is not None and outcome.ok:
            cascade = self.cascade or ReferralCascade(
                client=self.client, clock=self.clock, treasury=self._treasury
            )
            deposit_committed(row, cascade)
        return outcome

    def _sweep(self, account_id: int):
        outcome, row, signed = self._verify_and_sign(account_id)
        if outcome is not None:
            return outcome, None
        return self._send_and_credit(account_id, row, signed)

    def _verify_and_sign(self, account_id: int):
        sweep = None
        try:
            with transaction.atomic():
                account = lock_account(account_id)
                now = self.clock()
                if has_pending_transfer(account):
                    _log(account_id, "rejected", errors.SETTLEMENT_PENDING)
                    return SettlementOutcome.rejected(errors.SETTLEMENT_PENDING), None, None

                observed = self.client.get_balance(account.address)
                if observed < settings.MIN_DEPOSIT_DROPS:
                    _log(account_id, "rejected", f"{errors.BELOW_MINIMUM} observed={observed}")
                    return SettlementOutcome.rejected(errors.BELOW_MINIMUM, observed), None, None

                treasury_address = self.treasury.classic_address
                draft = self.client.draft_transfer(account.address, treasury_address, observed)
                fee = self.client.estimate_fee(draft)
                reserve = self.client.minimum_reserve()
                sweep = observed - fee - reserve
                if sweep <= 0:
                    _log(
                        account_id,
                        "rejected",
                        f"{errors.NOTHING_TO_SWEEP} observed={observed} fee={fee} reserve={reserve}",
                    )
                    return SettlementOutcome.rejected(errors.NOTHING_TO_SWEEP, observed), None, None
                _log(account_id, "balance_verified", f"observed={observed} sweep={sweep} fee={fee}")

                signed = self.client.sign_transfer(
                    wallet_for(account), treasury_address, sweep, fee=fee
                )
                row = record_transaction(
                    account,
                    LedgerTransaction.DEPOSIT,
                    sweep,
                    balance_after=account.ledger_balance,
                    status=LedgerTransaction.PENDING,
                    signature=signed.get_hash(),
                    created_at=now,
                )
            _log(account_id, "transfer_signed", row.external_signature)

        except RPCFatal as exc:
            alert(f"Deposit sweep for account {account_id} rejected by the ledger: {exc.code or exc}")
            _log(account_id, "transfer_failed", f"{errors.RPC_FATAL} {exc.code}")
            return SettlementOutcome.failed(errors.RPC_FATAL, sweep), None, None

        except RPCExhausted as exc:
            alert(f"Deposit sweep for account {account_id}: ledger unreachable ({exc})")
            _log(account_id, "transfer_failed", errors.RPC_EXHAUSTED)
            return SettlementOutcome.failed(errors.RPC_EXHAUSTED, sweep), None, None

        return None, row, signed

    def _send_and_credit(self, account_id: int, row: LedgerTransaction, signed):
        signature = row.external_signature
        sweep = row.amount

        try:
            self.client.send_signed(signed)
        except RPCFatal as exc:
            close_pending(row, LedgerTransaction.FAILED)
            alert(f"Deposit sweep for account {account_id} rejected by the ledger: {exc.code or exc}")
            _log(account_id, "transfer_failed", f"{errors.RPC_FATAL} {exc.code}")
            return SettlementOutcome.failed(errors.RPC_FATAL, sweep, signature), None
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
            return SettlementOutcome.failed(errors.TRANSFER_FAILED, sweep, signature), None

        _log(account_id, "transfer_confirmed", signature)
        try:
            with transaction.atomic():
                account = lock_account(account_id)
                credited = apply_deposit(account, sweep, signature, row.created_at)
        except DatabaseError as exc:
            logger.error(f"[deposit] account={account_id} commit of confirmed {signature} failed: {exc}")
            alert(
                f"Deposit sweep {signature} of {sweep} drops for account {account_id} is confirmed "
                "on the ledger but could not be recorded. Its pending row will be credited by the "
                "next reconciliation run, or run:\n"
                f"<code>manage.py reconcile_transfer {account_id} {signature} deposit {sweep}</code>"
            )
            _log(account_id, "failed", errors.DB_TRANSACTION_FAILURE)
            return SettlementOutcome.failed(errors.DB_TRANSACTION_FAILURE, sweep, signature), None
        _log(account_id, "ledger_committed", f"{signature} balance={credited.balance_after}")
        return SettlementOutcome.committed(sweep, signature, credited.balance_after), credited

    def _unresolved(self, account_id: int, row: LedgerTransaction, exc: Exception) -> SettlementOutcome:
        signature = row.external_signature
        reason = errors.RPC_EXHAUSTED if isinstance(exc, RPCExhausted) else errors.CONFIRMATION_TIMEOUT
        if not isinstance(exc, SettlementError):
            logger.error(
                f"[deposit] account={account_id} unexpected error after signing {signature}",
                exc_info=exc,
            )
        alert(
            f"Deposit sweep {signature} for account {account_id} has no verdict yet ({exc}); "
            "left pending for reconciliation."
        )
        _log(account_id, reason, signature)
        return SettlementOutcome.pending(amount=row.amount, signature=signature, reason=reason)
