from unittest import mock

import pytest
from django.db import DatabaseError

from boostvault.apps.accounts.models import LedgerTransaction, Notification, SettlementLock
from boostvault.apps.settlement import errors, pipeline as pipeline_module
from boostvault.apps.settlement.errors import RPCExhausted, RPCFatal
from boostvault.apps.settlement.pipeline import SettlementPipeline
from boostvault.apps.settlement.reconcile import Reconciler

from .conftest import T0, XRP, FakeLedger


@pytest.fixture
def pipeline(ledger, guard, clock, treasury):
    return SettlementPipeline(client=ledger, guard=guard, clock=clock, treasury=treasury)


@pytest.fixture
def grown(make_account, clock):
    """1 XRP deposited at T0, requested ten days later: 1 XRP of profit."""
    account = make_account(principal=XRP, since=T0)
    clock.advance(days=10)
    return account


def withdrawals(account):
    return list(LedgerTransaction.objects.filter(account=account, kind=LedgerTransaction.WITHDRAWAL))


def test_withdraw_all_profit_after_one_period(pipeline, grown, ledger, clock):
    outcome = pipeline.withdraw(grown, None)

    assert outcome.ok
    assert outcome.amount == XRP
    assert outcome.balance_after == XRP

    grown.refresh_from_db()
    assert grown.principal == XRP
    assert grown.ledger_balance == XRP
    assert grown.principal_since == clock.now
    assert grown.last_withdrawal_at == clock.now

    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.COMPLETED
    assert row.amount == XRP
    assert row.external_signature == outcome.signature

    [sent] = ledger.submitted
    assert sent.destination == grown.address
    assert sent.amount == XRP
    assert not SettlementLock.objects.exists()
    assert Notification.objects.filter(account=grown, kind="withdrawal_completed").exists()


def test_partial_withdrawal_folds_remaining_profit(pipeline, grown, clock):
    outcome = pipeline.withdraw(grown, XRP // 4)

    assert outcome.ok
    grown.refresh_from_db()
    assert grown.principal == 2 * XRP - XRP // 4
    assert grown.ledger_balance == grown.principal

    # growth restarts from the withdrawal
    clock.advance(days=10)
    assert pipeline.withdraw(grown, None).amount == grown.principal


def test_profit_cannot_be_withdrawn_twice(pipeline, grown):
    assert pipeline.withdraw(grown, None).ok

    second = pipeline.withdraw(grown, None)

    assert second.status == errors.REJECTED
    assert second.reason == errors.BELOW_MINIMUM
    assert len(withdrawals(grown)) == 1


def test_amount_over_profit_is_rejected(pipeline, grown, ledger):
    outcome = pipeline.withdraw(grown, XRP + 1)

    assert outcome.reason == errors.INSUFFICIENT_BALANCE
    assert ledger.submitted == []
    assert withdrawals(grown) == []
    grown.refresh_from_db()
    assert grown.principal == XRP


def test_amount_below_minimum_is_rejected_before_locking(pipeline, grown, ledger):
    with mock.patch.object(pipeline.guard, "acquire") as acquire:
        outcome = pipeline.withdraw(grown, 99_999)

    assert outcome.reason == errors.BELOW_MINIMUM
    acquire.assert_not_called()
    assert ledger.submitted == []


def test_concurrent_request_gets_lock_contention(pipeline, grown, ledger):
    nested = []

    def second_request(signed):
        nested.append(pipeline.withdraw(grown, XRP // 2))

    ledger.on_submit = second_request
    first = pipeline.withdraw(grown, XRP // 2)

    assert first.ok
    assert nested[0].status == errors.REJECTED
    assert nested[0].reason == errors.LOCK_CONTENTION
    assert len(ledger.submitted) == 1
    assert len(withdrawals(grown)) == 1


def test_held_lock_rejects_request(pipeline, grown, guard, ledger):
    guard.acquire(grown.pk)

    outcome = SettlementPipeline(
        client=ledger, guard=type(guard)(clock=guard.clock), clock=guard.clock
    ).withdraw(grown, None)

    assert outcome.reason == errors.LOCK_CONTENTION
    assert ledger.submitted == []


def test_treasury_underfunded(pipeline, grown, ledger, treasury):
    ledger.balances[treasury.classic_address] = ledger.reserve + XRP - 1

    with mock.patch("boostvault.apps.settlement.pipeline.alert") as alert:
        outcome = pipeline.withdraw(grown, None)

    assert outcome.reason == errors.TREASURY_UNDERFUNDED
    alert.assert_called_once()
    assert ledger.submitted == []
    assert withdrawals(grown) == []


def test_failed_transfer_records_failed_row(pipeline, grown, ledger):
    ledger.confirm_result = False

    outcome = pipeline.withdraw(grown, None)

    assert outcome.status == errors.FAILED
    assert outcome.reason == errors.TRANSFER_FAILED
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.FAILED
    grown.refresh_from_db()
    assert grown.principal == XRP
    assert grown.last_withdrawal_at is None


def test_refused_transfer_fails_its_signed_row(pipeline, grown, ledger):
    ledger.fatal_code = "temBAD_AMOUNT"

    outcome = pipeline.withdraw(grown, None)

    assert outcome.reason == errors.RPC_FATAL
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.FAILED
    assert row.external_signature == outcome.signature
    grown.refresh_from_db()
    assert grown.principal == XRP
    assert not SettlementLock.objects.exists()

    # nothing moved, so the profit is still there to withdraw
    ledger.fatal_code = None
    assert pipeline.withdraw(grown, None).ok


def test_confirmation_timeout_then_reconcile_commits_once(pipeline, grown, ledger, guard, clock):
    ledger.confirm_result = "timeout"

    outcome = pipeline.withdraw(grown, None)

    assert outcome.status == errors.PENDING
    assert outcome.reason == errors.CONFIRMATION_TIMEOUT
    grown.refresh_from_db()
    assert grown.principal == XRP
    assert grown.ledger_balance == XRP
    assert grown.last_withdrawal_at is None
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.PENDING

    # pending transfer blocks further settlement
    assert pipeline.withdraw(grown, None).reason == errors.SETTLEMENT_PENDING

    ledger.statuses[outcome.signature] = "confirmed"
    clock.advance(minutes=5)
    reconciler = Reconciler(client=ledger, guard=guard, clock=clock)
    assert reconciler.reconcile_pending()["completed"] == 1
    assert reconciler.reconcile_pending()["completed"] == 0

    row.refresh_from_db()
    assert row.status == LedgerTransaction.COMPLETED
    grown.refresh_from_db()
    assert grown.principal == XRP
    assert grown.last_withdrawal_at == row.created_at
    assert len(withdrawals(grown)) == 1
    assert len(ledger.submitted) == 1


def test_commit_is_retried_after_database_error(pipeline, grown, ledger):
    real_apply = pipeline_module.apply_withdrawal
    calls = []

    def flaky_apply(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise DatabaseError("connection lost")
        return real_apply(*args, **kwargs)

    with mock.patch.object(pipeline_module, "apply_withdrawal", side_effect=flaky_apply):
        outcome = pipeline.withdraw(grown, None)

    assert outcome.ok
    assert len(calls) == 2
    assert len(ledger.submitted) == 1
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.COMPLETED


def test_commit_failure_is_reported(pipeline, grown, ledger):
    with mock.patch.object(
        pipeline_module, "apply_withdrawal", side_effect=DatabaseError("down")
    ), mock.patch("boostvault.apps.settlement.pipeline.alert") as alert:
        outcome = pipeline.withdraw(grown, None)

    assert outcome.reason == errors.DB_TRANSACTION_FAILURE
    assert outcome.signature == ledger.submitted[0].signature
    assert "reconcile_transfer" in alert.call_args[0][0]
    assert len(ledger.submitted) == 1


def test_balance_never_negative_across_repeated_attempts(pipeline, make_account, ledger, clock):
    account = make_account(principal=3 * XRP, since=T0)
    clock.advance(days=15)

    for _ in range(5):
        pipeline.withdraw(account, XRP)
        clock.advance(hours=1)

    account.refresh_from_db()
    assert account.ledger_balance >= 0
    assert account.principal >= 3 * XRP
    total = sum(r.amount for r in withdrawals(account) if r.status == LedgerTransaction.COMPLETED)
    assert total == sum(s.amount for s in ledger.submitted)


class WorkerLost(BaseException):
    """Stands in for the worker process dying mid-task."""


def test_signed_hash_is_recorded_before_sending(pipeline, grown, ledger):
    seen = []
    ledger.on_submit = lambda signed: seen.extend(
        LedgerTransaction.objects.filter(external_signature=signed.get_hash()).values_list(
            "status", flat=True
        )
    )

    assert pipeline.withdraw(grown, None).ok
    assert seen == [LedgerTransaction.PENDING]


def test_unanswerable_confirmation_leaves_transfer_pending(pipeline, grown, ledger, guard, clock):
    with mock.patch.object(ledger, "confirm", side_effect=RPCFatal("tx: internal", code="internal")):
        outcome = pipeline.withdraw(grown, None)

    assert outcome.status == errors.PENDING
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.PENDING
    assert row.external_signature == outcome.signature
    grown.refresh_from_db()
    assert grown.principal == XRP

    # the same profit is not paid a second time
    again = pipeline.withdraw(grown, None)
    assert again.reason == errors.SETTLEMENT_PENDING
    assert len(ledger.submitted) == 1

    ledger.statuses[outcome.signature] = "confirmed"
    assert Reconciler(client=ledger, guard=guard, clock=clock).reconcile_pending()["completed"] == 1
    row.refresh_from_db()
    assert row.status == LedgerTransaction.COMPLETED
    assert len(withdrawals(grown)) == 1


def test_unreachable_ledger_on_send_leaves_transfer_pending(pipeline, grown, ledger):
    with mock.patch.object(ledger, "send_signed", side_effect=RPCExhausted("down")):
        outcome = pipeline.withdraw(grown, None)

    assert outcome.status == errors.PENDING
    assert outcome.reason == errors.RPC_EXHAUSTED
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.PENDING
    assert pipeline.withdraw(grown, None).reason == errors.SETTLEMENT_PENDING


def test_unexpected_error_while_confirming_leaves_transfer_pending(pipeline, grown, ledger):
    with mock.patch.object(ledger, "confirm", side_effect=RuntimeError("bad response")):
        outcome = pipeline.withdraw(grown, None)

    assert outcome.status == errors.PENDING
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.PENDING


def test_redelivered_request_after_crash_does_not_pay_again(pipeline, grown, ledger, guard, clock):
    def send_then_die(signed):
        FakeLedger.send_signed(ledger, signed)
        raise WorkerLost()

    with mock.patch.object(ledger, "send_signed", side_effect=send_then_die):
        with pytest.raises(WorkerLost):
            pipeline.withdraw(grown, None)

    # the dead worker's lock is left behind and reclaimed once stale
    guard.acquire(grown.pk)
    clock.advance(seconds=301)

    outcome = pipeline.withdraw(grown, None)

    assert outcome.reason == errors.SETTLEMENT_PENDING
    assert len(ledger.submitted) == 1
    [row] = withdrawals(grown)
    assert row.status == LedgerTransaction.PENDING
