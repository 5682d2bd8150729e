from django.core.management.base import BaseCommand, CommandError

from boostvault.apps.accounts.models import Account, LedgerTransaction
from boostvault.apps.settlement.errors import SettlementError
from boostvault.apps.settlement.reconcile import Reconciler


class Command(BaseCommand):
    help = (
        "Record a transfer that is validated on the ledger but missing locally, "
        "or resolve all pending transfers with --pending."
    )

    def add_arguments(self, parser):
        parser.add_argument("account_id", nargs="?", type=int)
        parser.add_argument("signature", nargs="?", help="XRPL transaction hash.")
        parser.add_argument(
            "kind",
            nargs="?",
            choices=[LedgerTransaction.WITHDRAWAL, LedgerTransaction.DEPOSIT],
        )
        parser.add_argument("amount", nargs="?", type=int, help="Amount in drops.")
        parser.add_argument(
            "--pending",
            action="store_true",
            help="Reconcile every pending transfer instead of a single signature.",
        )

    def handle(self, *args, **options):
        reconciler = Reconciler()

        if options["pending"]:
            counts = reconciler.reconcile_pending()
            self.stdout.write(self.style.SUCCESS(f"Pending transfers: {counts}"))
            return

        missing = [k for k in ("account_id", "signature", "kind", "amount") if options[k] is None]
        if missing:
            raise CommandError(f"Missing arguments: {', '.join(missing)} (or use --pending).")

        if not Account.objects.filter(pk=options["account_id"]).exists():
            raise CommandError(f"Account {options['account_id']} does not exist.")

        try:
            row = reconciler.reconcile_transfer(
                options["account_id"], options["signature"], options["kind"], options["amount"]
            )
        except (SettlementError, ValueError) as exc:
            raise CommandError(str(exc))

        self.stdout.write(
            self.style.SUCCESS(
                f"{row.kind} {row.external_signature}: {row.status}, balance after {row.balance_after}"
            )
        )
