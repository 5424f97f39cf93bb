import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "dataplug.settings")

app = Celery("dataplug")

# Load config from Django settings (CELERY_BROKER_URL, CELERY_TASK_ALWAYS_EAGER, etc.)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Autodiscover tasks in installed apps
app.autodiscover_tasks()
