import asyncio
import logging
import uuid
from functools import partial
from typing import Callable, List, Optional

from mentioned.config import Settings
from mentioned.models.schemas import ScanAccepted, ScanJob, ScanRequest, ScanStatus
from mentioned.services.orchestrator import ScanOrchestrator
from mentioned.services.profiler import brand_id_for
from mentioned.services.providers import AIProvider, build_providers

logger = logging.getLogger(__name__)

def celery_enqueue(scan_id: str):
    from mentioned.queue.tasks import run_scan
    # task id == scan id, so the broker never holds two jobs for one scan
    run_scan.apply_async(args=[scan_id], task_id=scan_id)

class ScanDispatcher:
    """Chooses between the queue and inline execution for a new scan."""

    def __init__(self, settings: Settings, store,
                 enqueue: Optional[Callable[[str], None]] = None,
                 providers_factory: Optional[Callable[[], List[AIProvider]]] = None):
        self.settings = settings
        self.store = store
        self.enqueue = enqueue or celery_enqueue
        self.providers_factory = providers_factory or partial(build_providers, settings)

    @property
    def queued(self) -> bool:
        return bool(self.settings.REDIS_URL)

    async def _store(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(loop.run_in_executor(None, partial(fn, *args)),
                                      self.settings.STORE_TIMEOUT_SECS)

    async def submit(self, request: ScanRequest, plan: str) -> ScanAccepted:
        job = ScanJob(
            scan_id=request.scan_id or uuid.uuid4().hex,
            brand_id=brand_id_for(request),
            user_id=request.user_id,
            plan=plan,
            request=request,
        )
        if self.queued:
            job, created = await self._store(self.store.create_scan, job, ScanStatus.QUEUED)
            if created:
                self.enqueue(job.scan_id)
                logger.info("scan %s queued for brand %s", job.scan_id, job.brand_id)
            else:
                logger.info("scan %s already exists (%s), not re-enqueued", job.scan_id, job.status.value)
            return ScanAccepted(scan_id=job.scan_id, status=job.status, mode="queued")

        job, created = await self._store(self.store.create_scan, job, ScanStatus.PROCESSING)
        if not created:
            existing = await self._store(self.store.get_result, job.scan_id)
            return ScanAccepted(scan_id=job.scan_id, status=job.status, mode="inline", result=existing)

        providers = self.providers_factory()
        try:
            orchestrator = ScanOrchestrator(self.settings, self.store, providers)
            result = await orchestrator.execute(job, final_attempt=True)
        finally:
            for p in providers:
                await p.close()
        return ScanAccepted(scan_id=job.scan_id, status=result.status, mode="inline", result=result)
