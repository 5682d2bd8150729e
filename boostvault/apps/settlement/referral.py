"""
Referral Bonus Cascade
Pays the referrer a share of each deposit from the treasury. A bonus never
affects the deposit it came from.
"""

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from boostvault.apps.accounts.crypto import treasury_wallet
from boostvault.apps.accounts.models import LedgerTransaction

from .errors import ConfirmationTimeout, RPCExhausted, RPCFatal
from .ledger_client import LedgerClient
from .notify import alert, notify

logger = logging.getLogger(__name__)


def bonus_for(amount: int) -> int:
    return int((Decimal(amount) * settings.REFERRAL_RATE).to_integral_value(rounding=ROUND_DOWN))


def complete_bonus(row: LedgerTransaction, confirmed: bool) -> None:
    """Settle a pending bonus row once the ledger has ruled on it."""
    if confirmed:
        row.settle(LedgerTransaction.COMPLETED)
        logger.info(f"[referral] Bonus {row.pk} paid to account {row.account_id}: {row.external_signature}")
        notify(row.account, "referral_bonus", amount=row.amount, signature=row.external_signature)
    else:
        row.settle(LedgerTransaction.FAILED)
        logger.warning(f"[referral] Bonus {row.pk} failed on the ledger: {row.external_signature}")
        alert(
            f"Referral bonus of {row.amount} drops to account {row.account_id} failed "
            f"(<code>{row.external_signature}</code>)."
        )


class ReferralCascade:
    def __init__(self, client=None, clock=None, treasury=None):
        self.client = client or LedgerClient()
        self.clock = clock or timezone.now
        self._treasury = treasury

    @property
    def treasury(self):
        return self._treasury or treasury_wallet()

    def disburse(self, deposit: LedgerTransaction) -> Optional[LedgerTransaction]:
        """
        Pay the referrer of ``deposit``'s account, at most once per deposit.

        The bonus row is created pending and its signature stored before the
        payment is sent; a row that already carries a signature is left to
        reconciliation and never signed again.
        """
        referrer = deposit.account.referred_by
        if referrer is None:
            return None
        bonus = bonus_for(deposit.amount)
        if bonus <= 0:
            return None

        with transaction.atomic():
            row, _ = LedgerTransaction.objects.select_for_update().get_or_create(
                source=deposit,
                defaults={
                    "account": referrer,
                    "kind": LedgerTransaction.REFERRAL_BONUS,
                    "amount": bonus,
                    "balance_after": referrer.ledger_balance,
                    "status": LedgerTransaction.PENDING,
                    "created_at": self.clock(),
                },
            )
            if row.is_terminal or row.external_signature:
                logger.info(f"[referral] Bonus for deposit {deposit.pk} already {row.status}")
                return row
            signed = self.client.sign_transfer(self.treasury, referrer.address, bonus)
            row.external_signature = signed.get_hash()
            row.save(update_fields=["external_signature"])
        logger.info(
            f"[referral] Bonus {bonus} for account {referrer.pk} from deposit {deposit.pk}: "
            f"{row.external_signature}"
        )

        try:
            self.client.send_signed(signed)
        except RPCFatal as exc:
            with transaction.atomic():
                row = self._relock(row)
                if row.status == LedgerTransaction.PENDING:
                    row.settle(LedgerTransaction.FAILED)
            alert(f"Referral bonus {row.external_signature} rejected by the ledger: {exc.code or exc}")
            return row
        except RPCExhausted:
            logger.warning(f"[referral] {row.external_signature} left for reconciliation")
            return row

        try:
            confirmed = self.client.confirm(row.external_signature)
        except ConfirmationTimeout:
            logger.warning(f"[referral] {row.external_signature} not confirmed yet")
            return row

        with transaction.atomic():
            row = self._relock(row)
            if row.status == LedgerTransaction.PENDING:
                complete_bonus(row, confirmed)
        return row

    @staticmethod
    def _relock(row):
        return LedgerTransaction.objects.select_for_update().select_related("account").get(pk=row.pk)
