from src.app_celery.celery_app import celery_app
import logging
from typing import List
from src.core.database_sync import mongodb_sync

logger = logging.getLogger(__name__)

from src.utils.task_helpers import (
    delete_storage_keys,
    run_sync_check,
)

@celery_app.task(name="cleanup_storage_keys")
def cleanup_storage_keys(keys: List[str]):
    logger.info("Retrying storage cleanup for %d keys", len(keys))
    results = delete_storage_keys(keys)

    return {
        "deleted": [r.key for r in results if r.status == "deleted"],
        "missing": [r.key for r in results if r.status == "missing"],
        "failed": [{"key": r.key, "error": r.error} for r in results if not r.success],
    }

@celery_app.task(name="check_storage_sync")
def check_storage_sync():
    # workers connect on init; connect() is a no-op when already done
    mongodb_sync.connect()
    report = run_sync_check()
    logger.info(
        "Sync check: %d videos, %d orphaned, %d unverified",
        report.total, len(report.orphaned), len(report.unverified),
    )
    return report.to_dict()
