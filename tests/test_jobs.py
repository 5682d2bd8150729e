from boostvault.apps.accounts.models import LedgerTransaction, Notification
from boostvault.apps.settlement import errors, jobs
from boostvault.apps.settlement.pipeline import SettlementPipeline

from .conftest import T0, XRP


def test_refresh_balances_updates_cache(make_account, guard, clock):
    account = make_account(principal=XRP, since=T0)
    idle = make_account()
    clock.advance(days=10)

    counts = jobs.refresh_balances(guard=guard, clock=clock)

    assert counts == {"updated": 1, "skipped": 0}
    account.refresh_from_db()
    assert account.ledger_balance == 2 * XRP
    idle.refresh_from_db()
    assert idle.ledger_balance == 0


def test_refresh_skips_busy_account(make_account, guard, clock):
    account = make_account(principal=XRP, since=T0)
    clock.advance(days=10)
    guard.acquire(account.pk)

    counts = jobs.refresh_balances(guard=guard, clock=clock)

    assert counts["skipped"] == 1
    account.refresh_from_db()
    assert account.ledger_balance == XRP


def test_auto_reinvest_moves_profit_into_principal(make_account, guard, clock):
    account = make_account(principal=XRP, since=T0, auto_reinvest=True)
    clock.advance(days=10)

    counts = jobs.run_auto_reinvest(guard=guard, clock=clock)

    assert counts["reinvested"] == 1
    account.refresh_from_db()
    assert account.principal == 2 * XRP
    assert account.ledger_balance == 2 * XRP
    assert account.principal_since == clock.now
    [row] = LedgerTransaction.objects.filter(account=account, kind=LedgerTransaction.REINVEST)
    assert row.amount == XRP
    assert row.external_signature is None
    assert Notification.objects.filter(account=account, kind="reinvest_completed").exists()

    # nothing more to reinvest until time passes
    assert jobs.run_auto_reinvest(guard=guard, clock=clock)["reinvested"] == 0


def test_auto_reinvest_skips_account_with_pending_transfer(make_account, guard, clock):
    account = make_account(principal=XRP, since=T0, auto_reinvest=True)
    LedgerTransaction.objects.create(
        account=account,
        kind=LedgerTransaction.WITHDRAWAL,
        amount=XRP,
        balance_after=XRP,
        external_signature="B" * 64,
        status=LedgerTransaction.PENDING,
    )
    clock.advance(days=10)

    assert jobs.run_auto_reinvest(guard=guard, clock=clock)["skipped"] == 1
    account.refresh_from_db()
    assert account.principal == XRP


def test_auto_withdrawals(make_account, ledger, guard, clock, treasury):
    opted_in = make_account(principal=XRP, since=T0, auto_withdrawal=True)
    manual = make_account(principal=XRP, since=T0)
    clock.advance(days=10)
    pipeline = SettlementPipeline(client=ledger, guard=guard, clock=clock, treasury=treasury)

    outcomes = jobs.run_auto_withdrawals(pipeline=pipeline, clock=clock)

    assert [o.status for o in outcomes] == [errors.COMMITTED]
    assert [s.destination for s in ledger.submitted] == [opted_in.address]
    manual.refresh_from_db()
    assert manual.last_withdrawal_at is None


def test_auto_withdrawal_waits_for_minimum(make_account, ledger, guard, clock, treasury):
    make_account(principal=XRP, since=T0, auto_withdrawal=True)
    clock.advance(hours=1)
    pipeline = SettlementPipeline(client=ledger, guard=guard, clock=clock, treasury=treasury)

    assert jobs.run_auto_withdrawals(pipeline=pipeline, clock=clock) == []


def test_deposit_reminders_only_for_empty_accounts(make_account):
    empty = make_account()
    make_account(principal=XRP, since=T0)

    assert jobs.send_deposit_reminders() == 1
    [note] = Notification.objects.filter(kind="deposit_reminder")
    assert note.account == empty
    assert note.payload["address"] == empty.address
