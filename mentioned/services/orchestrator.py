"""Runs one scan end to end.

The worker and the synchronous API path both call ScanOrchestrator.execute;
the only difference is whether a transient failure may be retried
(final_attempt=False) or must be recorded as terminal.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from mentioned.config import Settings, PlanLimits
from mentioned.exceptions import (InputValidationError, PipelineError, NoUsableQueriesError,
                                  AllProvidersFailedError, RetryableScanError, StrategyError,
                                  StoreTimeoutError)
from mentioned.models.schemas import (ScanJob, ScanResult, ScanStatus, Query, ResponseAnalysis,
                                      ProductProfile, QuerySet, ScoringBreakdown,
                                      CompetitorSnapshot, PreviousScanSummary)
from mentioned.services.aliases import build_registry, enrich_registry
from mentioned.services.competitors import CompetitorTracker
from mentioned.services.detection import DetectionEngine
from mentioned.services.profiler import FormProfiler
from mentioned.services.providers import AIProvider, ProviderReply, ask
from mentioned.services.queries import build_query_set
from mentioned.services.scoring import ScoringEngine
from mentioned.services.strategy import StrategyGenerator
from mentioned.services.trends import compute_deltas, share_of_voice, provider_comparison

logger = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_SCORED = 80
PROGRESS_STRATEGY = 85
PROGRESS_DONE = 100

@dataclass
class _Run:
    phase: str = "setup"
    profile: Optional[ProductProfile] = None
    query_set: Optional[QuerySet] = None
    analyses: List[ResponseAnalysis] = field(default_factory=list)
    breakdown: Optional[ScoringBreakdown] = None
    snapshots: List[CompetitorSnapshot] = field(default_factory=list)

class ScanOrchestrator:
    def __init__(self, settings: Settings, store, providers: List[AIProvider],
                 scoring: Optional[ScoringEngine] = None):
        self.settings = settings
        self.store = store
        self.providers = providers
        self.scoring = scoring or ScoringEngine()
        self.tracker = CompetitorTracker(store)

    async def _store(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, partial(fn, *args, **kwargs))
        seconds = self.settings.STORE_TIMEOUT_SECS
        try:
            return await asyncio.wait_for(call, seconds)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(getattr(fn, "__name__", "store"), seconds) from None

    async def _progress(self, job: ScanJob, status: ScanStatus, stage: str, progress: int):
        await self._store(self.store.update_status, job.scan_id, status, stage=stage, progress=progress)
        logger.info("scan %s %s/%s %d%%", job.scan_id, status.value, stage, progress)

    def providers_for(self, limits: PlanLimits) -> List[AIProvider]:
        return [p for p in self.providers if p.name in limits.providers]

    async def _ask_primary(self, prompt: str, providers: List[AIProvider]) -> Optional[str]:
        if not providers:
            return None
        reply = await ask(providers[0], prompt, self.settings.PROVIDER_TIMEOUT_SECS)
        return reply.text

    async def execute(self, job: ScanJob, final_attempt: bool = True) -> ScanResult:
        run = _Run()
        try:
            return await self._execute(job, run, final_attempt)
        except RetryableScanError:
            raise
        except Exception as e:
            logger.exception("scan %s: bookkeeping failed during %s", job.scan_id, run.phase)
            return await self._settle(job, run, e, final_attempt)

    async def _execute(self, job: ScanJob, run: _Run, final_attempt: bool) -> ScanResult:
        limits = self.settings.resolve_plan(job.plan)
        await self._progress(job, ScanStatus.PROCESSING, "started", PROGRESS_STARTED)
        previous = await self._previous_summary(job)

        try:
            await asyncio.wait_for(self._pipeline(job, limits, run), self.settings.SCAN_TIMEOUT_SECS)
        except asyncio.TimeoutError:
            return await self._fail(job, "timeout",
                                    f"scan exceeded {self.settings.SCAN_TIMEOUT_SECS:.0f}s during {run.phase}")
        except InputValidationError as e:
            return await self._fail(job, "profile", str(e))
        except PipelineError as e:
            phase = e.phase or run.phase
            if e.retryable and not final_attempt:
                await self._requeue(job, phase, e)
                raise RetryableScanError(job.scan_id, e) from e
            return await self._fail(job, phase, str(e))
        except Exception as e:
            logger.exception("scan %s crashed during %s", job.scan_id, run.phase)
            if not final_attempt:
                await self._requeue(job, run.phase, e)
                raise RetryableScanError(job.scan_id, e) from e
            return await self._fail(job, run.phase, f"unexpected error: {e}")

        result = ScanResult(
            scan_id=job.scan_id,
            brand_id=job.brand_id,
            status=ScanStatus.COMPLETE,
            score=run.breakdown.final_score,
            breakdown=run.breakdown,
            query_count=len(run.query_set.queries),
            competitors=run.snapshots,
        )
        self._enrich(result, run, previous)
        return await self._finish(job, limits, run, result)

    async def _previous_summary(self, job: ScanJob) -> Optional[PreviousScanSummary]:
        try:
            return await self._store(self.store.latest_scored_scan, job.brand_id, job.scan_id)
        except (SQLAlchemyError, StoreTimeoutError) as e:
            logger.warning("could not read previous scan for %s: %s", job.brand_id, e)
            return None

    async def _pipeline(self, job: ScanJob, limits: PlanLimits, run: _Run):
        providers = self.providers_for(limits)

        run.phase = "profile"
        profiler = FormProfiler(ask=partial(self._ask_primary, providers=providers))
        run.profile = profile = await profiler.build(job.request)

        run.phase = "queries"
        run.query_set = build_query_set(
            profile, limits.max_queries, limits.max_queries_per_intent,
            self.settings.MIN_RELEVANCE_SCORE, self.settings.MIN_INTENT_SCORE,
        )
        if run.query_set.is_empty:
            raise NoUsableQueriesError()
        await self._store(self.store.save_query_set, job.scan_id, run.query_set)

        run.phase = "providers"
        if not providers:
            raise PipelineError("providers", f"no configured provider is available on plan {job.plan}")
        registry = build_registry(profile.brand_name, profile.brand_aliases, profile.competitors)
        if limits.alias_enrichment:
            registry = await enrich_registry(registry, profile.competitors,
                                             partial(self._ask_primary, providers=providers))
        replies = await self._collect(run.query_set.queries, providers, limits.max_concurrent_calls)
        answered = [(q, r) for q, r in replies if r.ok]
        logger.info("scan %s: %d/%d provider calls answered", job.scan_id, len(answered), len(replies))
        if not answered:
            raise AllProvidersFailedError(len(replies))

        run.phase = "detection"
        engine = DetectionEngine(registry)
        run.analyses = [self._analyze(engine, profile, q, r) for q, r in answered]

        run.phase = "scoring"
        run.breakdown = self.scoring.score(run.analyses, len(run.query_set.queries),
                                           providers_attempted=len(providers))
        await self._store(self.store.save_responses, job.scan_id, run.analyses)
        await self._store(self.store.save_score, job.scan_id, run.breakdown)
        await self._progress(job, ScanStatus.PROCESSING, "scored", PROGRESS_SCORED)

        run.phase = "competitors"
        run.snapshots = await self._store(self.tracker.record, job.scan_id, job.brand_id,
                                          profile.competitors, run.analyses)

    async def _collect(self, queries: List[Query], providers: List[AIProvider],
                       concurrency: int) -> List[Tuple[Query, ProviderReply]]:
        sem = asyncio.Semaphore(max(1, concurrency))
        timeout = self.settings.PROVIDER_TIMEOUT_SECS

        async def one(query: Query, provider: AIProvider):
            async with sem:
                return query, await ask(provider, query.text, timeout)

        return await asyncio.gather(*(one(q, p) for q in queries for p in providers))

    def _analyze(self, engine: DetectionEngine, profile: ProductProfile,
                 query: Query, reply: ProviderReply) -> ResponseAnalysis:
        detection, sentiment = engine.analyze(reply.text, profile.brand_name)
        return ResponseAnalysis(
            query=query,
            provider=reply.provider,
            response_text=reply.text,
            brand_detection=detection,
            competitor_detections=engine.detect_all(reply.text, profile.competitors),
            sentiment=sentiment if detection.detected else "neutral",
        )

    def _enrich(self, result: ScanResult, run: _Run, previous: Optional[PreviousScanSummary]):
        steps = (
            ("provider_comparison", lambda: provider_comparison(run.breakdown)),
            ("deltas", lambda: compute_deltas(run.breakdown, previous)),
            ("share_of_voice", lambda: share_of_voice(run.profile.brand_name, run.analyses)),
        )
        for name, step in steps:
            try:
                setattr(result, name, step())
            except Exception:
                logger.warning("enrichment %s failed for scan %s", name, result.scan_id, exc_info=True)

    async def _finish(self, job: ScanJob, limits: PlanLimits, run: _Run, result: ScanResult) -> ScanResult:
        run.phase = "strategy"
        await self._progress(job, ScanStatus.GENERATING_STRATEGY,
                             "strategy" if limits.strategy_enabled else "strategy_skipped",
                             PROGRESS_STRATEGY)
        status = ScanStatus.COMPLETE
        if limits.strategy_enabled:
            generator = StrategyGenerator(partial(self._ask_primary, providers=self.providers_for(limits)))
            try:
                result.strategy = await generator.generate(run.profile, run.breakdown, run.snapshots)
            except StrategyError as e:
                logger.warning("strategy failed for scan %s: %s", job.scan_id, e)
                status = ScanStatus.STRATEGY_FAILED
                result.error = str(e)
                result.failed_phase = "strategy"

        run.phase = "finish"
        result.status = status
        await self._store(self.store.save_result, result)
        await self._store(self.store.update_status, job.scan_id, status, stage="done",
                          progress=PROGRESS_DONE, error=result.error, failed_phase=result.failed_phase)
        logger.info("scan %s finished %s with score %d", job.scan_id, status.value, result.score)

        try:
            await self._store(self.store.record_scan_usage, job.user_id)
            await self._store(self.store.touch_brand, job.brand_id)
        except (SQLAlchemyError, StoreTimeoutError) as e:
            logger.warning("usage bookkeeping failed for scan %s: %s", job.scan_id, e)
        return result

    async def _settle(self, job: ScanJob, run: _Run, error: Exception, final_attempt: bool) -> ScanResult:
        """Last resort when the store failed outside the pipeline's own error handling.

        A retryable attempt goes back to the queue. The final attempt writes a
        single failed status, keeping whatever score was already computed. If
        even that write fails, the error propagates to the caller.
        """
        if not final_attempt:
            try:
                await self._requeue(job, run.phase, error)
            except (SQLAlchemyError, StoreTimeoutError):
                logger.warning("could not requeue scan %s", job.scan_id, exc_info=True)
            raise RetryableScanError(job.scan_id, error) from error

        message = f"{run.phase} failed: {error}"
        await self._store(self.store.update_status, job.scan_id, ScanStatus.FAILED, stage=run.phase,
                          progress=PROGRESS_DONE if run.breakdown else None,
                          error=message, failed_phase=run.phase)
        logger.error("scan %s settled as failed in %s", job.scan_id, run.phase)
        return ScanResult(scan_id=job.scan_id, brand_id=job.brand_id, status=ScanStatus.FAILED,
                          score=run.breakdown.final_score if run.breakdown else None,
                          breakdown=run.breakdown, error=message, failed_phase=run.phase)

    async def _fail(self, job: ScanJob, phase: str, error: str) -> ScanResult:
        logger.error("scan %s failed in %s: %s", job.scan_id, phase, error)
        result = ScanResult(scan_id=job.scan_id, brand_id=job.brand_id, status=ScanStatus.FAILED,
                            error=error, failed_phase=phase)
        await self._store(self.store.save_result, result)
        await self._store(self.store.update_status, job.scan_id, ScanStatus.FAILED, stage=phase,
                          error=error, failed_phase=phase)
        return result

    async def _requeue(self, job: ScanJob, phase: str, error: BaseException):
        logger.warning("scan %s will retry after failure in %s: %s", job.scan_id, phase, error)
        await self._store(self.store.update_status, job.scan_id, ScanStatus.QUEUED, stage="retry_wait",
                          progress=0, error=str(error), failed_phase=phase)
