# boostvault/apps/accounts/models.py
import uuid
from django.db import models
from django.utils import timezone


class Account(models.Model):
    """A Telegram user's custodial wallet and the balance it accrues.

    All amounts are integer drops. ``ledger_balance`` is a cache; the source of
    truth is ``principal`` compounded from the growth anchor.
    """

    telegram_id = models.BigIntegerField(unique=True, db_index=True)
    first_name = models.CharField(max_length=128, blank=True, default="")
    address = models.CharField(max_length=64, unique=True)
    secret_encrypted = models.BinaryField()  # Fernet
    principal = models.BigIntegerField(default=0)
    principal_since = models.DateTimeField(null=True, blank=True)
    last_withdrawal_at = models.DateTimeField(null=True, blank=True)
    ledger_balance = models.BigIntegerField(default=0)
    referred_by = models.ForeignKey(
        "self",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="referrals",
    )
    auto_withdrawal = models.BooleanField(default=False)
    auto_reinvest = models.BooleanField(default=False)
    last_activity_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.display_name()} ({self.address})"

    def display_name(self):
        return self.first_name or str(self.telegram_id)

    @property
    def growth_anchor(self):
        """Latest of the deposit anchor and the last withdrawal, or None before any deposit."""
        stamps = [t for t in (self.principal_since, self.last_withdrawal_at) if t is not None]
        return max(stamps) if stamps else None


class LedgerTransaction(models.Model):
    """Append-only audit row for every deposit, withdrawal, reinvest and referral bonus."""

    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REINVEST = "reinvest"
    REFERRAL_BONUS = "referral_bonus"
    KIND_CHOICES = [
        (DEPOSIT, "Deposit"),
        (WITHDRAWAL, "Withdrawal"),
        (REINVEST, "Reinvest"),
        (REFERRAL_BONUS, "Referral bonus"),
    ]

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    STATUS_CHOICES = [
        (PENDING, "Pending"),
        (COMPLETED, "Completed"),
        (FAILED, "Failed"),
    ]

    account = models.ForeignKey(
        Account, on_delete=models.PROTECT, related_name="transactions"
    )
    kind = models.CharField(max_length=16, choices=KIND_CHOICES)
    amount = models.BigIntegerField()
    external_signature = models.CharField(
        max_length=128, null=True, blank=True, unique=True
    )
    balance_after = models.BigIntegerField()
    status = models.CharField(
        max_length=16, choices=STATUS_CHOICES, default=PENDING, db_index=True
    )
    # Deposit that triggered a referral bonus; at most one bonus per deposit
    source = models.OneToOneField(
        "self",
        null=True,
        blank=True,
        on_delete=models.PROTECT,
        related_name="referral_bonus",
    )
    created_at = models.DateTimeField(default=timezone.now)
    settled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [models.Index(fields=["account", "kind", "created_at"])]
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.kind} {self.amount} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.COMPLETED, self.FAILED)

    def settle(self, status: str, *, signature: str | None = None, balance_after: int | None = None):
        """Move a pending row to its terminal status. Terminal rows never change again."""
        if self.is_terminal:
            raise ValueError(f"Ledger transaction {self.pk} is already {self.status}")
        self.status = status
        if signature:
            self.external_signature = signature
        if balance_after is not None:
            self.balance_after = balance_after
        self.settled_at = timezone.now()
        self.save(update_fields=["status", "external_signature", "balance_after", "settled_at"])


class SettlementLock(models.Model):
    """Durable per-account guard; at most one settlement in flight per account."""

    account_id = models.BigIntegerField(primary_key=True)
    token = models.CharField(max_length=64)
    acquired_at = models.DateTimeField()


class Notification(models.Model):
    """Messages for the account holder, sent via Telegram when created."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    account = models.ForeignKey(
        Account, on_delete=models.CASCADE, related_name="notifications"
    )
    kind = models.CharField(
        max_length=32, db_index=True
    )  # e.g., withdrawal_completed, deposit_completed
    payload = models.JSONField(default=dict, blank=True)
    sent = models.BooleanField(default=False, db_index=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [models.Index(fields=["account", "kind", "sent"])]
