"""
External Ledger Client
Thin XRPL JSON-RPC wrapper with retry and error classification.

Every transfer is signed exactly once. Retries resend the same signed blob, so
whatever the network does with earlier attempts, at most one payment with that
hash can ever be applied.
"""

import json
import logging
import time
from typing import Callable, Optional

import httpx
from django.conf import settings
from xrpl.clients import JsonRpcClient
from xrpl.constants import XRPLException
from xrpl.models.requests import AccountInfo, ServerState, Tx
from xrpl.models.transactions import Payment
from xrpl.transaction import autofill, autofill_and_sign, submit
from xrpl.wallet import Wallet

from .errors import ConfirmationTimeout, RPCExhausted, RPCFatal, RPCTransient

logger = logging.getLogger(__name__)

CONFIRMED = "confirmed"
FAILED = "failed"
PENDING = "pending"
NOT_FOUND = "not_found"

# rippled error codes that mean "try again later"
TRANSIENT_ERRORS = {
    "slowDown",
    "tooBusy",
    "noNetwork",
    "noCurrent",
    "noClosed",
    "failedToForward",
}
TRANSPORT_ERRORS = (
    httpx.TransportError,
    httpx.HTTPStatusError,
    ConnectionError,
    TimeoutError,
    json.JSONDecodeError,
)
ACCEPTED_RESULTS = {"tesSUCCESS", "terQUEUED"}
# Sequence already consumed: on a resend this is our own earlier attempt
ALREADY_APPLIED_RESULTS = {"tefPAST_SEQ", "tefALREADY"}


class LedgerClient:
    def __init__(
        self,
        url: Optional[str] = None,
        client: Optional[JsonRpcClient] = None,
        *,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.url = url or settings.XRPL_RPC_URL
        self.client = client or JsonRpcClient(self.url)
        self.max_attempts = max_attempts or settings.RPC_MAX_ATTEMPTS
        self.backoff_base = (
            backoff_base if backoff_base is not None else settings.RPC_BACKOFF_BASE
        )
        self.confirmation_timeout = (
            confirmation_timeout
            if confirmation_timeout is not None
            else settings.CONFIRMATION_TIMEOUT
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.CONFIRMATION_POLL_INTERVAL
        )
        self.sleep = sleep
        self.monotonic = monotonic

    # ------------------------------------------------------------------
    # Retry plumbing
    # ------------------------------------------------------------------

    def _classify(self, exc: Exception) -> Exception:
        """Map a raised error onto RPCTransient / RPCFatal."""
        if isinstance(exc, (RPCTransient, RPCFatal)):
            return exc
        if isinstance(exc, TRANSPORT_ERRORS):
            return RPCTransient(f"Transport error: {exc}")
        if isinstance(exc, XRPLException):
            code = getattr(exc, "error", None)
            if code in TRANSIENT_ERRORS:
                return RPCTransient(str(exc), code=code)
            return RPCFatal(str(exc), code=code)
        if isinstance(exc, (KeyError, ValueError, TypeError)):
            return RPCFatal(f"Malformed ledger response: {exc!r}")
        return exc

    def _with_retry(self, label: str, fn: Callable):
        for attempt in range(self.max_attempts):
            try:
                return fn(attempt)
            except Exception as exc:
                err = self._classify(exc)
                if not isinstance(err, RPCTransient):
                    if err is exc:
                        raise
                    raise err from exc
                if attempt == self.max_attempts - 1:
                    break
                delay = self.backoff_base * (2**attempt)
                logger.warning(
                    f"[ledger] {label} transient failure ({err}), retrying in {delay:.1f}s "
                    f"(attempt {attempt + 2}/{self.max_attempts})"
                )
                self.sleep(delay)
        logger.error(f"[ledger] {label} failed after {self.max_attempts} attempts")
        raise RPCExhausted(f"{label} failed after {self.max_attempts} attempts")

    def _request(self, request) -> dict:
        response = self.client.request(request)
        if response.is_successful():
            return response.result
        code = response.result.get("error")
        message = response.result.get("error_message") or code
        if code in TRANSIENT_ERRORS:
            raise RPCTransient(f"{type(request).__name__}: {message}", code=code)
        raise RPCFatal(f"{type(request).__name__}: {message}", code=code)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, address: str) -> int:
        """Validated XRP balance in drops; an unfunded address holds 0."""

        def call(_attempt):
            try:
                result = self._request(
                    AccountInfo(account=address, ledger_index="validated", strict=True)
                )
            except RPCFatal as exc:
                if exc.code == "actNotFound":
                    return 0
                raise
            return int(result["account_data"]["Balance"])

        return self._with_retry(f"get_balance({address})", call)

    def minimum_reserve(self) -> int:
        """Base account reserve in drops; this much can never leave an address."""

        def call(_attempt):
            state = self._request(ServerState()).get("state") or {}
            validated = state.get("validated_ledger")
            if not validated:
                # syncing or just restarted
                raise RPCTransient("server_state: no validated ledger", code="noClosed")
            return int(validated["reserve_base"])

        return self._with_retry("minimum_reserve", call)

    def draft_transfer(
        self, source: str, destination: str, amount: int, fee: Optional[int] = None
    ) -> Payment:
        return Payment(
            account=source,
            destination=destination,
            amount=str(int(amount)),
            fee=str(int(fee)) if fee is not None else None,
        )

    def estimate_fee(self, draft: Payment) -> int:
        def call(_attempt):
            filled = autofill(transaction=draft, client=self.client)
            return int(filled.fee)

        return self._with_retry("estimate_fee", call)

    def transfer_status(self, signature: str) -> str:
        def call(_attempt):
            try:
                result = self._request(Tx(transaction=signature))
            except RPCFatal as exc:
                if exc.code == "txnNotFound":
                    return NOT_FOUND
                raise
            if not result.get("validated"):
                return PENDING
            outcome = (result.get("meta") or {}).get("TransactionResult")
            return CONFIRMED if outcome == "tesSUCCESS" else FAILED

        return self._with_retry(f"transfer_status({signature})", call)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def sign_transfer(
        self, wallet: Wallet, destination: str, amount: int, fee: Optional[int] = None
    ) -> Payment:
        """Autofill (sequence, fee, LastLedgerSequence) and sign a payment. Nothing is sent."""
        draft = self.draft_transfer(wallet.classic_address, destination, amount, fee)
        return self._with_retry(
            "sign",
            lambda _attempt: autofill_and_sign(
                transaction=draft, client=self.client, wallet=wallet
            ),
        )

    def submit_transfer(
        self, wallet: Wallet, destination: str, amount: int, fee: Optional[int] = None
    ) -> str:
        """Sign once and submit, resending the same blob on transient failures. Returns the hash."""
        return self.send_signed(self.sign_transfer(wallet, destination, amount, fee))

    def send_signed(self, signed: Payment) -> str:
        signature = signed.get_hash()

        def call(attempt):
            response = submit(transaction=signed, client=self.client)
            if not response.is_successful():
                code = response.result.get("error")
                if code in TRANSIENT_ERRORS:
                    raise RPCTransient(f"submit: {code}", code=code)
                raise RPCFatal(f"submit: {code}", code=code)

            engine = response.result.get("engine_result", "")
            if engine in ACCEPTED_RESULTS:
                return signature
            if engine in ALREADY_APPLIED_RESULTS and attempt > 0:
                logger.info(f"[ledger] {signature} already applied by an earlier attempt ({engine})")
                return signature
            if engine.startswith("tel") or engine.startswith("ter"):
                raise RPCTransient(f"submit: {engine}", code=engine)
            raise RPCFatal(f"submit: {engine}", code=engine)

        try:
            self._with_retry(f"submit({signature})", call)
        except RPCExhausted as exc:
            raise RPCExhausted(str(exc), signature=signature) from exc
        logger.info(
            f"[ledger] Submitted {signature}: {signed.amount} drops "
            f"{signed.account} -> {signed.destination}"
        )
        return signature

    def confirm(self, signature: str, timeout: Optional[float] = None) -> bool:
        """
        Poll until the transaction is in a validated ledger.
        True when it succeeded, False when it was validated as failed.
        Raises ConfirmationTimeout when no verdict arrives in time or the node
        cannot answer; the transfer is never resubmitted from here.
        """
        timeout = self.confirmation_timeout if timeout is None else timeout
        deadline = self.monotonic() + timeout
        while True:
            try:
                status = self.transfer_status(signature)
            except (RPCExhausted, RPCFatal) as exc:
                raise ConfirmationTimeout(signature) from exc
            if status == CONFIRMED:
                return True
            if status == FAILED:
                logger.warning(f"[ledger] {signature} validated with a failure result")
                return False
            if self.monotonic() >= deadline:
                raise ConfirmationTimeout(signature)
            self.sleep(self.poll_interval)
