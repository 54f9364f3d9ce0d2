"""
Recurring scans.

A brand with an enabled schedule gets its latest scored scan replayed every
week or month. Celery beat calls run_due_scans through the
run_recurring_scans task; inline deployments hit the cron endpoint instead.
"""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from mentioned.models.schemas import RecurringInterval, RecurringRunSummary, RecurringSchedule
from mentioned.queue.dispatcher import ScanDispatcher

logger = logging.getLogger(__name__)

SCHEDULE_INTERVALS = {
    RecurringInterval.WEEKLY: timedelta(days=7),
    RecurringInterval.MONTHLY: timedelta(days=30),
}

def next_run(interval: RecurringInterval, from_time: Optional[datetime] = None) -> datetime:
    if from_time is None:
        from_time = datetime.now(timezone.utc)
    return from_time + SCHEDULE_INTERVALS[RecurringInterval(interval)]

def recurring_scan_id(schedule: RecurringSchedule) -> str:
    # one id per brand and due slot, so a double tick never creates two scans
    digest = hashlib.md5(schedule.brand_id.encode("utf-8")).hexdigest()[:16]
    return f"recurring_{digest}_{schedule.next_run_at:%Y%m%d%H%M}"

async def run_due_scans(dispatcher: ScanDispatcher, now: Optional[datetime] = None,
                        limit: int = 20) -> RecurringRunSummary:
    now = now or datetime.now(timezone.utc)
    store = dispatcher.store
    due = await dispatcher._store(store.due_schedules, now, limit)
    if not due:
        logger.info("no recurring scans due")
        return RecurringRunSummary()

    summary = RecurringRunSummary(total=len(due))
    for schedule in due:
        try:
            source = await dispatcher._store(store.get_job, schedule.source_scan_id)
            if source is None:
                logger.warning("schedule for %s points at missing scan %s",
                               schedule.brand_id, schedule.source_scan_id)
                summary.failed += 1
                continue
            scan_id = recurring_scan_id(schedule)
            # replays are not billed to the user who set up the schedule
            request = source.request.model_copy(update={"scan_id": scan_id, "brand_id": source.brand_id,
                                                        "user_id": None, "user_email": None})
            accepted = await dispatcher.submit(request, plan=source.plan)
            upcoming = next_run(schedule.interval, now)
            await dispatcher._store(store.advance_schedule, schedule.brand_id, upcoming, scan_id)
            summary.processed += 1
            logger.info("recurring scan %s for %s is %s, next run %s",
                        scan_id, schedule.brand_id, accepted.status.value, upcoming.isoformat())
        except Exception:
            summary.failed += 1
            logger.exception("recurring scan for %s could not be dispatched", schedule.brand_id)
    return summary
