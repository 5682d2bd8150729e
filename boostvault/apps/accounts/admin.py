from django.contrib import admin
from .models import Account, LedgerTransaction, SettlementLock, Notification


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = (
        "telegram_id",
        "first_name",
        "address",
        "principal",
        "ledger_balance",
        "principal_since",
        "auto_withdrawal",
        "auto_reinvest",
        "created_at",
    )
    search_fields = ("telegram_id", "first_name", "address")
    list_filter = ("auto_withdrawal", "auto_reinvest")
    exclude = ("secret_encrypted",)
    date_hierarchy = "created_at"


@admin.register(LedgerTransaction)
class LedgerTransactionAdmin(admin.ModelAdmin):
    list_display = (
        "account",
        "kind",
        "amount",
        "balance_after",
        "status",
        "external_signature",
        "created_at",
        "settled_at",
    )
    search_fields = ("external_signature", "account__address", "account__telegram_id")
    list_filter = ("kind", "status")


@admin.register(SettlementLock)
class SettlementLockAdmin(admin.ModelAdmin):
    list_display = ("account_id", "token", "acquired_at")


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("account", "kind", "sent", "created_at", "sent_at")
    list_filter = ("kind", "sent")
    search_fields = ("account__telegram_id",)
