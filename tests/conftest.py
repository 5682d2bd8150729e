from datetime import datetime, timedelta, timezone

import pytest

from boostvault.apps.accounts.crypto import treasury_wallet
from boostvault.apps.accounts.models import Account
from boostvault.apps.accounts.store import open_account
from boostvault.apps.settlement.errors import ConfirmationTimeout, RPCFatal
from boostvault.apps.settlement.guard import DatabaseSettlementGuard
from boostvault.apps.settlement.ledger_client import CONFIRMED, FAILED, NOT_FOUND, PENDING

XRP = 1_000_000
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeSigned:
    def __init__(self, signature, account, destination, amount, fee):
        self.signature = signature
        self.account = account
        self.destination = destination
        self.amount = amount
        self.fee = fee

    def get_hash(self):
        return self.signature


class FakeLedger:
    """In-process stand-in for LedgerClient.

    ``confirm_result`` is True (validated success), False (validated failure)
    or "timeout" (no verdict before the deadline).
    """

    def __init__(self):
        self.balances = {}
        self.reserve = 1 * XRP
        self.fee = 12
        self.confirm_result = True
        self.statuses = {}
        self.signed = []
        self.submitted = []
        self.fatal_code = None
        self.on_submit = None

    # reads
    def get_balance(self, address):
        return self.balances.get(address, 0)

    def minimum_reserve(self):
        return self.reserve

    def draft_transfer(self, source, destination, amount, fee=None):
        return {"source": source, "destination": destination, "amount": amount, "fee": fee}

    def estimate_fee(self, draft):
        return self.fee

    def transfer_status(self, signature):
        return self.statuses.get(signature, NOT_FOUND)

    # writes
    def sign_transfer(self, wallet, destination, amount, fee=None):
        signature = f"{len(self.signed) + 1:064X}"
        signed = FakeSigned(signature, wallet.classic_address, destination, amount, fee or self.fee)
        self.signed.append(signed)
        return signed

    def send_signed(self, signed):
        if self.on_submit:
            self.on_submit(signed)
        if self.fatal_code:
            raise RPCFatal(f"submit: {self.fatal_code}", code=self.fatal_code)
        self.submitted.append(signed)
        self.balances[signed.account] = self.get_balance(signed.account) - signed.amount - signed.fee
        self.balances[signed.destination] = self.get_balance(signed.destination) + signed.amount
        self.statuses[signed.signature] = PENDING
        return signed.signature

    def submit_transfer(self, wallet, destination, amount, fee=None):
        return self.send_signed(self.sign_transfer(wallet, destination, amount, fee))

    def confirm(self, signature, timeout=None):
        if self.confirm_result == "timeout":
            raise ConfirmationTimeout(signature)
        self.statuses[signature] = CONFIRMED if self.confirm_result else FAILED
        return bool(self.confirm_result)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def ledger():
    fake = FakeLedger()
    fake.balances[treasury_wallet().classic_address] = 1000 * XRP
    return fake


@pytest.fixture
def guard(db, clock):
    return DatabaseSettlementGuard(clock=clock)


@pytest.fixture
def treasury():
    return treasury_wallet()


@pytest.fixture
def make_account(db):
    counter = {"next": 1}

    def make(principal=0, since=None, referred_by=None, **fields):
        telegram_id = 100_000 + counter["next"]
        counter["next"] += 1
        account, _ = open_account(
            telegram_id,
            first_name=f"user{telegram_id}",
            referrer_telegram_id=referred_by.telegram_id if referred_by else None,
        )
        Account.objects.filter(pk=account.pk).update(
            principal=principal,
            principal_since=since,
            ledger_balance=principal,
            **fields,
        )
        account.refresh_from_db()
        return account

    return make
