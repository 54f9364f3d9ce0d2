import logging
from typing import Optional

from mentioned.config import Settings
from mentioned.db.repo import ScanStore, default_store
from mentioned.models.schemas import ScanResult
from mentioned.services.orchestrator import ScanOrchestrator
from mentioned.services.providers import build_providers

logger = logging.getLogger(__name__)

async def process_scan_job(orchestrator: ScanOrchestrator, scan_id: str,
                           max_attempts: int) -> Optional[ScanResult]:
    """Claims the scan and runs it; None when another worker owns it."""
    job = await orchestrator._store(orchestrator.store.claim, scan_id,
                                    orchestrator.settings.SCAN_TIMEOUT_SECS)
    if job is None:
        logger.info("scan %s is not claimable, skipping", scan_id)
        return None
    logger.info("worker claimed scan %s (attempt %d/%d)", scan_id, job.attempts, max_attempts)
    return await orchestrator.execute(job, final_attempt=job.attempts >= max_attempts)

async def run_scan_job(scan_id: str, settings: Settings,
                       store: Optional[ScanStore] = None) -> Optional[ScanResult]:
    # provider clients are bound to the event loop of this task
    providers = build_providers(settings)
    try:
        orchestrator = ScanOrchestrator(settings, store or default_store(), providers)
        return await process_scan_job(orchestrator, scan_id, settings.SCAN_MAX_RETRIES + 1)
    finally:
        for p in providers:
            await p.close()
