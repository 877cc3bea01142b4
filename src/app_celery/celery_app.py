from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from src.core.config import settings
from src.core.database_sync import mongodb_sync

celery_app = Celery(
    "wellness_media",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.beat_schedule = {
    "storage-sync-check-daily": {
        "task": "check_storage_sync",
        "schedule": crontab(hour=3, minute=0),
    },
}

@worker_process_init.connect
def init_worker(**kwargs):
    mongodb_sync.connect()

# Auto-discover tasks inside src/app_celery
celery_app.autodiscover_tasks(["src.app_celery"])
