"""
Settlement errors and outcomes.

Exceptions are raised by the ledger client and inside the pipelines; callers of
a pipeline only ever see a ``SettlementOutcome``.
"""

from dataclasses import dataclass
from typing import Optional


class SettlementError(Exception):
    pass


class RPCTransient(SettlementError):
    """Retryable ledger failure (transport, overload, tel*/ter* results)."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RPCFatal(SettlementError):
    """Ledger refused the request; retrying cannot help."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RPCExhausted(SettlementError):
    """Transient failures outlasted the retry budget.

    ``signature`` is set when a signed transfer may already have reached the
    network; such a transfer has to be reconciled, never re-signed.
    """

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class ConfirmationTimeout(SettlementError):
    def __init__(self, signature: str):
        super().__init__(f"Transaction {signature} not validated before the deadline")
        self.signature = signature


class TreasuryUnderfunded(SettlementError):
    pass


class DBTransactionFailure(SettlementError):
    pass


# Outcome statuses
COMMITTED = "committed"
REJECTED = "rejected"
FAILED = "failed"
PENDING = "pending"

# Outcome reasons
BELOW_MINIMUM = "below_minimum"
INSUFFICIENT_BALANCE = "insufficient_balance"
LOCK_CONTENTION = "lock_contention"
TREASURY_UNDERFUNDED = "treasury_underfunded"
NOTHING_TO_SWEEP = "nothing_to_sweep"
SETTLEMENT_PENDING = "settlement_pending"
ACCOUNT_NOT_FOUND = "account_not_found"
RPC_FATAL = "rpc_fatal"
RPC_EXHAUSTED = "rpc_exhausted"
TRANSFER_FAILED = "transfer_failed"
CONFIRMATION_TIMEOUT = "confirmation_timeout"
DB_TRANSACTION_FAILURE = "db_transaction_failure"

MESSAGES = {
    BELOW_MINIMUM: "❌ The amount is below the minimum allowed.",
    INSUFFICIENT_BALANCE: "❌ Insufficient profit for this withdrawal.",
    LOCK_CONTENTION: "⏳ Another operation is already in progress. Please wait.",
    TREASURY_UNDERFUNDED: "⚠️ Withdrawals are temporarily unavailable. Please try again later.",
    NOTHING_TO_SWEEP: "ℹ️ Nothing to deposit after network fees and reserve.",
    SETTLEMENT_PENDING: "⏳ A previous transfer is still being confirmed. Please try again shortly.",
    ACCOUNT_NOT_FOUND: "❌ Account not found. Use /start to open one.",
    RPC_FATAL: "❌ The network rejected the transfer. No funds were moved.",
    RPC_EXHAUSTED: (
        "⚠️ The network is not responding. "
        "If your transfer went through, your balance will update once it is confirmed."
    ),
    TRANSFER_FAILED: "❌ The transfer failed on the ledger. Your balance is unchanged.",
    CONFIRMATION_TIMEOUT: (
        "⏳ Your transfer was sent but is not confirmed yet. "
        "Your balance will update once it is validated."
    ),
    DB_TRANSACTION_FAILURE: (
        "⚠️ Your transfer completed but we could not record it yet. "
        "Support has been notified."
    ),
}


@dataclass(frozen=True)
class SettlementOutcome:
    status: str
    reason: Optional[str] = None
    amount: Optional[int] = None
    signature: Optional[str] = None
    balance_after: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == COMMITTED

    @property
    def message(self) -> str:
        if self.reason:
            return MESSAGES[self.reason]
        return "✅ Done."

    @classmethod
    def committed(cls, amount, signature=None, balance_after=None) -> "SettlementOutcome":
        return cls(COMMITTED, None, amount, signature, balance_after)

    @classmethod
    def rejected(cls, reason: str, amount=None) -> "SettlementOutcome":
        return cls(REJECTED, reason, amount)

    @classmethod
    def failed(cls, reason: str, amount=None, signature=None) -> "SettlementOutcome":
        return cls(FAILED, reason, amount, signature)

    @classmethod
    def pending(cls, amount, signature, reason: str = CONFIRMATION_TIMEOUT) -> "SettlementOutcome":
        return cls(PENDING, reason, amount, signature)
