import asyncio
import logging
from typing import Dict, Any

from mentioned.config import settings
from mentioned.db.repo import default_store
from mentioned.exceptions import RetryableScanError
from mentioned.models.schemas import ScanStatus
from mentioned.queue.celery_app import app
from mentioned.queue.dispatcher import ScanDispatcher
from mentioned.queue.scheduler import run_due_scans
from mentioned.queue.worker import run_scan_job

logger = logging.getLogger(__name__)

def backoff_delay(retries: int, base: float) -> float:
    return base * (2 ** retries)

@app.task(name="mentioned.queue.tasks.run_scan", bind=True, max_retries=settings.SCAN_MAX_RETRIES)
def run_scan(self, scan_id: str) -> Dict[str, Any]:
    """
    Execute one scan from the queue.

    Transient failures are retried with exponential backoff; once retries are
    exhausted the scan row is marked failed instead of being left queued or
    in flight. A row that already reached a terminal status is never touched.
    """
    try:
        result = asyncio.run(run_scan_job(scan_id, settings))
    except Exception as exc:
        cause = exc.cause if isinstance(exc, RetryableScanError) else exc
        store = default_store()
        if self.request.retries >= self.max_retries:
            logger.error("scan %s exhausted %d retries: %s", scan_id, self.max_retries, cause)
            failed = store.fail_unfinished(scan_id, str(cause), "retries_exhausted")
            return {"scan_id": scan_id, "status": ScanStatus.FAILED.value if failed else "settled"}
        if not isinstance(exc, RetryableScanError):
            logger.exception("scan %s crashed in the worker", scan_id)
            if not store.requeue_unfinished(scan_id, str(exc)):
                return {"scan_id": scan_id, "status": "settled"}
        countdown = backoff_delay(self.request.retries, settings.SCAN_RETRY_BASE_DELAY)
        logger.warning("retrying scan %s in %.0fs", scan_id, countdown)
        raise self.retry(exc=exc, countdown=countdown)

    if result is None:
        return {"scan_id": scan_id, "status": "skipped"}
    return {"scan_id": scan_id, "status": result.status.value, "score": result.score}

@app.task(name="mentioned.queue.tasks.run_recurring_scans")
def run_recurring_scans() -> Dict[str, Any]:
    """Beat entry point: dispatch every recurring scan that is due."""
    dispatcher = ScanDispatcher(settings, default_store())
    summary = asyncio.run(run_due_scans(dispatcher, limit=settings.RECURRING_BATCH_SIZE))
    return summary.model_dump()
