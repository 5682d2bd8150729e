import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "boostvault.settings.base")

app = Celery("boostvault")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
