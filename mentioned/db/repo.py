import json
import logging
from contextlib import contextmanager
from functools import lru_cache
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Tuple

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import IntegrityError

from mentioned.db.session import SessionLocal
from mentioned.models.db_models import (Base, Brand, Subscription, Scan, QueryRecord,
                                        ScanResponse, CompetitorSnapshotRecord, ScheduleRecord)
from mentioned.models.schemas import (ScanJob, ScanRequest, ScanStatus, ScanStatusView, ScanResult,
                                      QuerySet, ResponseAnalysis, CompetitorSnapshot,
                                      PreviousScanSummary, QuotaState, ScoringBreakdown,
                                      RecurringInterval, RecurringSchedule, ScanHistory,
                                      ScanHistoryEntry, StoredQuery, StoredResponse)

logger = logging.getLogger(__name__)

SCORED_STATUSES = (ScanStatus.COMPLETE.value, ScanStatus.STRATEGY_FAILED.value)
IN_FLIGHT_STATUSES = (ScanStatus.PROCESSING.value, ScanStatus.GENERATING_STRATEGY.value)
UNFINISHED_STATUSES = (ScanStatus.QUEUED.value,) + IN_FLIGHT_STATUSES

def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)

def _job(row: Scan) -> ScanJob:
    return ScanJob(
        scan_id=row.id, brand_id=row.brand_id, user_id=row.user_id, plan=row.plan,
        request=ScanRequest.model_validate_json(row.request_json),
        status=ScanStatus(row.status), stage=row.stage, progress=row.progress,
        attempts=row.attempts, error=row.error, failed_phase=row.failed_phase,
    )

def _schedule(row: ScheduleRecord) -> RecurringSchedule:
    return RecurringSchedule(
        brand_id=row.brand_id, source_scan_id=row.source_scan_id, enabled=row.enabled,
        interval=row.interval, next_run_at=row.next_run_at, last_scan_id=row.last_scan_id,
    )

def _snapshot(row: CompetitorSnapshotRecord) -> CompetitorSnapshot:
    return CompetitorSnapshot(
        scan_id=row.scan_id, brand_id=row.brand_id, competitor_name=row.competitor_name,
        mentioned=row.mentioned, mention_count=row.mention_count,
        best_position=row.best_position, avg_position=row.avg_position,
        avg_confidence=row.avg_confidence, visibility_estimate=row.visibility_estimate,
        trend=row.trend, recorded_at=row.recorded_at,
    )

class ScanStore:
    """Scan, brand, subscription, competitor and recurring-schedule rows.

    Every method opens its own short session; callers never share one.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def init_schema(self):
        Base.metadata.create_all(bind=self.session_factory.kw["bind"])

    @contextmanager
    def session(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_scan(self, job: ScanJob, status: ScanStatus) -> Tuple[ScanJob, bool]:
        """Inserts the scan row; an existing id is returned untouched with created=False."""
        existing = self.get_job(job.scan_id)
        if existing is not None:
            return existing, False
        now = _now()
        attempts = 1 if status == ScanStatus.PROCESSING else 0
        try:
            with self.session() as s:
                brand = s.get(Brand, job.brand_id)
                if brand is None:
                    s.add(Brand(id=job.brand_id, name=job.request.brand_name,
                                domain=job.brand_id, created_at=now))
                s.add(Scan(id=job.scan_id, brand_id=job.brand_id, user_id=job.user_id,
                           plan=job.plan, status=status.value, progress=0, attempts=attempts,
                           request_json=job.request.model_dump_json(),
                           created_at=now, updated_at=now))
        except IntegrityError:
            logger.info("scan %s was created concurrently", job.scan_id)
            return self.get_job(job.scan_id), False
        return job.model_copy(update={"status": status, "attempts": attempts}), True

    def get_job(self, scan_id: str) -> Optional[ScanJob]:
        with self.session() as s:
            row = s.get(Scan, scan_id)
            return _job(row) if row else None

    def claim(self, scan_id: str, stale_after: float) -> Optional[ScanJob]:
        """queued -> processing, or take over a processing row whose heartbeat is stale."""
        now = _now()
        cutoff = now - timedelta(seconds=stale_after)
        with self.session() as s:
            result = s.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .where(or_(Scan.status == ScanStatus.QUEUED.value,
                           and_(Scan.status.in_(IN_FLIGHT_STATUSES), Scan.updated_at < cutoff)))
                .values(status=ScanStatus.PROCESSING.value, stage="claimed",
                        attempts=Scan.attempts + 1, updated_at=now)
            )
            claimed = result.rowcount == 1
        return self.get_job(scan_id) if claimed else None

    def update_status(self, scan_id: str, status: ScanStatus, stage: Optional[str] = None,
                      progress: Optional[int] = None, error: Optional[str] = None,
                      failed_phase: Optional[str] = None):
        values = {"status": status.value, "stage": stage, "updated_at": _now(),
                  "error": error, "failed_phase": failed_phase}
        if progress is not None:
            values["progress"] = progress
        if status in (ScanStatus.COMPLETE, ScanStatus.FAILED, ScanStatus.STRATEGY_FAILED):
            values["completed_at"] = values["updated_at"]
        with self.session() as s:
            s.execute(update(Scan).where(Scan.id == scan_id).values(**values))

    def requeue_unfinished(self, scan_id: str, error: str) -> bool:
        """Puts a scan that never reached a terminal status back to queued."""
        with self.session() as s:
            result = s.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .where(Scan.status.in_(UNFINISHED_STATUSES))
                .values(status=ScanStatus.QUEUED.value, stage="retry_wait", progress=0,
                        error=error, updated_at=_now())
            )
            requeued = result.rowcount == 1
        return requeued

    def fail_unfinished(self, scan_id: str, error: str, failed_phase: str) -> bool:
        """Marks a scan failed unless it already finished; a finished row is left alone."""
        now = _now()
        with self.session() as s:
            result = s.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .where(Scan.status.in_(UNFINISHED_STATUSES))
                .values(status=ScanStatus.FAILED.value, stage=failed_phase, error=error,
                        failed_phase=failed_phase, updated_at=now, completed_at=now)
            )
            failed = result.rowcount == 1
        return failed

    def get_status(self, scan_id: str) -> Optional[ScanStatusView]:
        with self.session() as s:
            row = s.get(Scan, scan_id)
            if row is None:
                return None
            return ScanStatusView(scan_id=row.id, status=ScanStatus(row.status), stage=row.stage,
                                  progress=row.progress, attempts=row.attempts, error=row.error,
                                  failed_phase=row.failed_phase, updated_at=row.updated_at)

    def save_query_set(self, scan_id: str, query_set: QuerySet):
        with self.session() as s:
            s.query(QueryRecord).filter(QueryRecord.scan_id == scan_id).delete()
            for rank, q in enumerate(query_set.queries, start=1):
                s.add(QueryRecord(scan_id=scan_id, rank=rank, text=q.text, intent=q.intent.value,
                                  intent_weight=q.intent_weight, relevance_score=q.relevance_score,
                                  intent_score=q.intent_score, dedupe_key=q.dedupe_key))

    def save_responses(self, scan_id: str, analyses: List[ResponseAnalysis]):
        with self.session() as s:
            s.query(ScanResponse).filter(ScanResponse.scan_id == scan_id).delete()
            for a in analyses:
                d = a.brand_detection
                s.add(ScanResponse(
                    scan_id=scan_id, provider=a.provider, query_text=a.query.text,
                    intent=a.query.intent.value, response_text=a.response_text,
                    brand_detected=d.detected, confidence=d.confidence, method=d.method,
                    position=d.position, sentiment=a.sentiment,
                    competitors_json=json.dumps([c.brand_name for c in a.competitors_detected]),
                ))

    def save_score(self, scan_id: str, breakdown: ScoringBreakdown):
        providers = {p.provider: p.visibility_score for p in breakdown.provider_scores}
        with self.session() as s:
            s.execute(update(Scan).where(Scan.id == scan_id).values(
                score=breakdown.final_score, mention_rate=breakdown.mention_rate,
                consistency=breakdown.cross_model_consistency,
                provider_scores_json=json.dumps(providers), updated_at=_now(),
            ))

    def save_result(self, result: ScanResult):
        with self.session() as s:
            s.execute(update(Scan).where(Scan.id == result.scan_id).values(
                result_json=result.model_dump_json(), updated_at=_now()))

    def get_result(self, scan_id: str) -> Optional[ScanResult]:
        with self.session() as s:
            row = s.get(Scan, scan_id)
            if row is None:
                return None
            if row.result_json:
                return ScanResult.model_validate_json(row.result_json)
            return ScanResult(scan_id=row.id, brand_id=row.brand_id, status=ScanStatus(row.status),
                              score=row.score, error=row.error, failed_phase=row.failed_phase)

    def latest_scored_scan(self, brand_id: str, exclude_scan_id: Optional[str] = None) -> Optional[PreviousScanSummary]:
        with self.session() as s:
            stmt = (select(Scan)
                    .where(Scan.brand_id == brand_id)
                    .where(Scan.status.in_(SCORED_STATUSES))
                    .where(Scan.score.is_not(None)))
            if exclude_scan_id:
                stmt = stmt.where(Scan.id != exclude_scan_id)
            row = s.scalars(stmt.order_by(Scan.completed_at.desc()).limit(1)).first()
            if row is None:
                return None
            return PreviousScanSummary(
                scan_id=row.id, score=row.score, mention_rate=row.mention_rate,
                consistency=row.consistency,
                provider_scores=json.loads(row.provider_scores_json or "{}"),
                created_at=row.created_at,
            )

    def append_competitor_snapshots(self, snapshots: List[CompetitorSnapshot]):
        with self.session() as s:
            # a retried scan replaces its own rows, earlier scans are never touched
            for scan_id in {snap.scan_id for snap in snapshots}:
                s.query(CompetitorSnapshotRecord).filter(CompetitorSnapshotRecord.scan_id == scan_id).delete()
            for snap in snapshots:
                s.add(CompetitorSnapshotRecord(
                    scan_id=snap.scan_id, brand_id=snap.brand_id,
                    competitor_name=snap.competitor_name, mentioned=snap.mentioned,
                    mention_count=snap.mention_count, best_position=snap.best_position,
                    avg_position=snap.avg_position, avg_confidence=snap.avg_confidence,
                    visibility_estimate=snap.visibility_estimate, trend=snap.trend,
                    recorded_at=_naive(snap.recorded_at),
                ))

    def competitor_history(self, brand_id: str) -> List[CompetitorSnapshot]:
        with self.session() as s:
            rows = s.scalars(select(CompetitorSnapshotRecord)
                             .where(CompetitorSnapshotRecord.brand_id == brand_id)
                             .order_by(CompetitorSnapshotRecord.recorded_at,
                                       CompetitorSnapshotRecord.competitor_name)).all()
            return [_snapshot(r) for r in rows]

    def quota_state(self, user_id: Optional[str]) -> QuotaState:
        if not user_id:
            return QuotaState()
        with self.session() as s:
            sub = s.get(Subscription, user_id)
            if sub is None:
                return QuotaState()
            return QuotaState(plan=sub.plan, free_scan_used=sub.free_scan_used,
                              scans_used=sub.scans_used, scans_limit=sub.scans_limit)

    def set_subscription(self, user_id: str, plan: Optional[str], scans_limit: int = 0,
                         scans_used: int = 0, free_scan_used: bool = False):
        with self.session() as s:
            s.merge(Subscription(user_id=user_id, plan=plan, scans_limit=scans_limit,
                                 scans_used=scans_used, free_scan_used=free_scan_used,
                                 updated_at=_now()))

    def record_scan_usage(self, user_id: Optional[str]):
        if not user_id:
            return
        with self.session() as s:
            sub = s.get(Subscription, user_id)
            if sub is None:
                s.add(Subscription(user_id=user_id, plan=None, free_scan_used=True,
                                   scans_used=1, updated_at=_now()))
                return
            if not sub.plan or sub.plan == "free":
                sub.free_scan_used = True
            sub.scans_used += 1
            sub.updated_at = _now()

    def touch_brand(self, brand_id: str):
        with self.session() as s:
            brand = s.get(Brand, brand_id)
            if brand is not None:
                brand.last_scan_at = _now()

    def scan_history(self, user_id: Optional[str] = None, brand_id: Optional[str] = None,
                     limit: int = 20) -> ScanHistory:
        """Newest scans first, plus every brand the user (or everyone) has scanned."""
        with self.session() as s:
            stmt = select(Scan, Brand.name).outerjoin(Brand, Brand.id == Scan.brand_id)
            brands = select(Scan.brand_id).distinct()
            if user_id:
                stmt = stmt.where(Scan.user_id == user_id)
                brands = brands.where(Scan.user_id == user_id)
            if brand_id:
                stmt = stmt.where(Scan.brand_id == brand_id)
            rows = s.execute(stmt.order_by(Scan.created_at.desc()).limit(limit)).all()
            history = [ScanHistoryEntry(
                scan_id=row.id, brand_id=row.brand_id, brand_name=name,
                status=ScanStatus(row.status), score=row.score, mention_rate=row.mention_rate,
                created_at=row.created_at, completed_at=row.completed_at,
            ) for row, name in rows]
            return ScanHistory(history=history, brands=sorted(s.scalars(brands).all()))

    def latest_result(self, user_id: Optional[str] = None,
                      brand_id: Optional[str] = None) -> Optional[ScanResult]:
        with self.session() as s:
            stmt = (select(Scan)
                    .where(Scan.status.in_(SCORED_STATUSES))
                    .where(Scan.result_json.is_not(None)))
            if user_id:
                stmt = stmt.where(Scan.user_id == user_id)
            if brand_id:
                stmt = stmt.where(Scan.brand_id == brand_id)
            row = s.scalars(stmt.order_by(Scan.completed_at.desc()).limit(1)).first()
            return ScanResult.model_validate_json(row.result_json) if row else None

    def latest_scored_job(self, brand_id: str) -> Optional[ScanJob]:
        with self.session() as s:
            row = s.scalars(select(Scan)
                            .where(Scan.brand_id == brand_id)
                            .where(Scan.status.in_(SCORED_STATUSES))
                            .order_by(Scan.completed_at.desc()).limit(1)).first()
            return _job(row) if row else None

    def list_queries(self, scan_id: str) -> List[StoredQuery]:
        with self.session() as s:
            rows = s.scalars(select(QueryRecord)
                             .where(QueryRecord.scan_id == scan_id)
                             .order_by(QueryRecord.rank)).all()
            return [StoredQuery(rank=r.rank, text=r.text, intent=r.intent, intent_weight=r.intent_weight,
                                relevance_score=r.relevance_score, intent_score=r.intent_score)
                    for r in rows]

    def list_responses(self, scan_id: str, provider: Optional[str] = None) -> List[StoredResponse]:
        with self.session() as s:
            stmt = select(ScanResponse).where(ScanResponse.scan_id == scan_id)
            if provider:
                stmt = stmt.where(ScanResponse.provider == provider)
            rows = s.scalars(stmt.order_by(ScanResponse.id)).all()
            return [StoredResponse(
                provider=r.provider, query_text=r.query_text, intent=r.intent,
                response_text=r.response_text, brand_detected=r.brand_detected,
                confidence=r.confidence, method=r.method, position=r.position,
                sentiment=r.sentiment, competitors_detected=json.loads(r.competitors_json or "[]"),
            ) for r in rows]

    def set_schedule(self, brand_id: str, source_scan_id: str, enabled: bool,
                     interval: Optional[RecurringInterval] = None,
                     next_run_at: Optional[datetime] = None) -> RecurringSchedule:
        with self.session() as s:
            row = s.get(ScheduleRecord, brand_id)
            if row is None:
                row = ScheduleRecord(brand_id=brand_id)
                s.add(row)
            row.source_scan_id = source_scan_id
            row.enabled = enabled
            row.interval = interval.value if enabled and interval else None
            row.next_run_at = _naive(next_run_at) if enabled and next_run_at else None
            row.updated_at = _now()
            return _schedule(row)

    def get_schedule(self, brand_id: str) -> Optional[RecurringSchedule]:
        with self.session() as s:
            row = s.get(ScheduleRecord, brand_id)
            return _schedule(row) if row else None

    def due_schedules(self, now: datetime, limit: int = 20) -> List[RecurringSchedule]:
        with self.session() as s:
            rows = s.scalars(select(ScheduleRecord)
                             .where(ScheduleRecord.enabled.is_(True))
                             .where(ScheduleRecord.next_run_at <= _naive(now))
                             .order_by(ScheduleRecord.next_run_at)
                             .limit(limit)).all()
            return [_schedule(r) for r in rows]

    def advance_schedule(self, brand_id: str, next_run_at: datetime, last_scan_id: str):
        with self.session() as s:
            s.execute(update(ScheduleRecord).where(ScheduleRecord.brand_id == brand_id).values(
                next_run_at=_naive(next_run_at), last_scan_id=last_scan_id, updated_at=_now()))

@lru_cache(maxsize=1)
def default_store() -> ScanStore:
    store = ScanStore()
    store.init_schema()
    return store
