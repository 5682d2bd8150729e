import csv

from django.core.management.base import BaseCommand
from xrpl.utils import drops_to_xrp

from boostvault.apps.accounts.store import admin_stats


class Command(BaseCommand):
    help = "Print the operator report (users, deposits, withdrawals, recent failures) as CSV."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=7,
            help="Window for active users and recent failures (default 7).",
        )

    def handle(self, *args, **options):
        stats = admin_stats(active_days=options["days"])
        days = options["days"]

        writer = csv.writer(self.stdout, lineterminator="\n")
        writer.writerow(["Category", "Metric", "Value"])
        writer.writerow(["Users", "Total", stats["total_users"]])
        writer.writerow(["Users", f"Active ({days} days)", stats["active_users"]])
        writer.writerow(["Users", "Auto Reinvest", stats["auto_reinvest_users"]])
        writer.writerow(["Users", "Auto Withdrawal", stats["auto_withdrawal_users"]])
        writer.writerow(["Transactions", "Total Deposits", stats["deposits"]])
        writer.writerow(
            ["Transactions", "Total Deposit Amount (XRP)", drops_to_xrp(str(stats["deposit_total"]))]
        )
        writer.writerow(["Transactions", "Total Withdrawals", stats["withdrawals"]])
        writer.writerow(
            [
                "Transactions",
                "Total Withdrawal Amount (XRP)",
                drops_to_xrp(str(stats["withdrawal_total"])),
            ]
        )
        for stage, count in stats["users_by_stage"].items():
            writer.writerow(["Users by Stage", stage, count])
        writer.writerow(["Issues", "Users with Recent Issues", stats["users_with_issues"]])
