from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProvider, LIST_ANSWER
from mentioned.models.schemas import RecurringInterval, ScanStatus
from mentioned.queue.dispatcher import ScanDispatcher
from mentioned.queue.scheduler import next_run, recurring_scan_id, run_due_scans

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

@pytest.fixture
def dispatcher(settings, store):
    return ScanDispatcher(settings, store, providers_factory=lambda: [FakeProvider("openai", LIST_ANSWER)])

def naive(dt):
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

def test_next_run_intervals():
    assert next_run(RecurringInterval.WEEKLY, NOW) == NOW + timedelta(days=7)
    assert next_run("monthly", NOW) == NOW + timedelta(days=30)

@pytest.mark.asyncio
async def test_due_schedule_replays_latest_scan(dispatcher, store, scan_request):
    first = await dispatcher.submit(scan_request.model_copy(update={"scan_id": "first"}), plan="free")
    assert first.status == ScanStatus.COMPLETE
    store.set_schedule("cal.com", "first", True, RecurringInterval.WEEKLY, NOW - timedelta(minutes=5))
    expected_id = recurring_scan_id(store.get_schedule("cal.com"))

    summary = await run_due_scans(dispatcher, now=NOW)

    assert summary.model_dump() == {"processed": 1, "failed": 0, "total": 1}
    replay = store.get_job(expected_id)
    assert replay.brand_id == "cal.com"
    assert replay.user_id is None
    assert replay.status == ScanStatus.COMPLETE
    schedule = store.get_schedule("cal.com")
    assert schedule.last_scan_id == expected_id
    assert schedule.next_run_at == naive(NOW + timedelta(days=7))
    # only the original scan counted against the user
    assert store.quota_state("user-1").scans_used == 1
    assert len(store.competitor_history("cal.com")) == 6

    assert (await run_due_scans(dispatcher, now=NOW)).total == 0

@pytest.mark.asyncio
async def test_disabled_and_future_schedules_are_ignored(dispatcher, store):
    store.set_schedule("cal.com", "first", False)
    store.set_schedule("calendly.com", "other", True, RecurringInterval.MONTHLY, NOW + timedelta(hours=1))
    assert (await run_due_scans(dispatcher, now=NOW)).total == 0
    assert store.get_schedule("cal.com").next_run_at is None

@pytest.mark.asyncio
async def test_missing_source_scan_counts_as_failed(dispatcher, store):
    store.set_schedule("cal.com", "gone", True, RecurringInterval.WEEKLY, NOW - timedelta(days=1))
    summary = await run_due_scans(dispatcher, now=NOW)
    assert summary.failed == 1 and summary.processed == 0
    assert store.get_schedule("cal.com").last_scan_id is None

@pytest.mark.asyncio
async def test_queued_replay_is_enqueued_once(settings, store, scan_request):
    enqueued = []
    inline = ScanDispatcher(settings, store, providers_factory=lambda: [FakeProvider("openai", LIST_ANSWER)])
    await inline.submit(scan_request.model_copy(update={"scan_id": "first"}), plan="starter")
    queued = ScanDispatcher(settings.model_copy(update={"REDIS_URL": "redis://localhost:6379/0"}),
                            store, enqueue=enqueued.append)
    store.set_schedule("cal.com", "first", True, RecurringInterval.WEEKLY, NOW - timedelta(minutes=1))

    summary = await run_due_scans(queued, now=NOW)

    assert summary.processed == 1
    assert len(enqueued) == 1
    job = store.get_job(enqueued[0])
    assert job.status == ScanStatus.QUEUED
    assert job.plan == "starter"
