from django.apps import AppConfig


class AccountsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "boostvault.apps.accounts"

    def ready(self):
        import boostvault.apps.accounts.signals  # noqa
