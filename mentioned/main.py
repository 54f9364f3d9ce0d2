import asyncio
from functools import partial
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header

from mentioned.config import settings, Settings
from mentioned.logging_conf import configure_logging
from mentioned.db.repo import ScanStore, default_store
from mentioned.exceptions import InputValidationError
from mentioned.models.schemas import (ScanRequest, ScanAccepted, ScanStatusView, ScanResult,
                                      CompetitorSnapshot, RecurringRequest, RecurringSchedule,
                                      RecurringRunSummary, ScanHistory, ScanQueries, ScanProviders)
from mentioned.queue.dispatcher import ScanDispatcher
from mentioned.queue.scheduler import next_run, run_due_scans
from mentioned.services.competitors import CompetitorTracker
from mentioned.services.quota import check_scan_quota
from mentioned.services.validation import validate_scan_input

configure_logging()
app = FastAPI(title=settings.APP_NAME)

def get_settings() -> Settings:
    return settings

def get_store() -> ScanStore:
    return default_store()

def get_dispatcher(cfg: Settings = Depends(get_settings),
                   store: ScanStore = Depends(get_store)) -> ScanDispatcher:
    return ScanDispatcher(cfg, store)

async def _blocking(fn, *args):
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(None, partial(fn, *args)),
                                  settings.STORE_TIMEOUT_SECS)

@app.get("/health")
async def health(cfg: Settings = Depends(get_settings)):
    return {"status": "ok", "mode": "queued" if cfg.REDIS_URL else "inline"}

@app.post("/scan", response_model=ScanAccepted)
async def create_scan(req: ScanRequest,
                      cfg: Settings = Depends(get_settings),
                      store: ScanStore = Depends(get_store),
                      dispatcher: ScanDispatcher = Depends(get_dispatcher)):
    try:
        validate_scan_input(req)
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail={"message": str(e), "issues": e.issues})

    state = await _blocking(store.quota_state, req.user_id)
    decision = check_scan_quota(cfg, state, req.user_email)
    if not decision.allowed:
        raise HTTPException(status_code=403, detail=decision.model_dump())

    return await dispatcher.submit(req, plan=decision.plan)

@app.post("/scan/recurring", response_model=RecurringSchedule)
async def set_recurring(req: RecurringRequest, store: ScanStore = Depends(get_store)):
    source = await _blocking(store.latest_scored_job, req.brand_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"No scored scan for brand: {req.brand_id}")
    upcoming = next_run(req.interval) if req.enabled else None
    return await _blocking(store.set_schedule, req.brand_id, source.scan_id, req.enabled,
                           req.interval, upcoming)

@app.post("/cron/run-recurring-scans", response_model=RecurringRunSummary)
async def run_recurring(cfg: Settings = Depends(get_settings),
                        dispatcher: ScanDispatcher = Depends(get_dispatcher),
                        authorization: Optional[str] = Header(default=None)):
    if cfg.CRON_SECRET and authorization != f"Bearer {cfg.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return await run_due_scans(dispatcher, limit=cfg.RECURRING_BATCH_SIZE)

@app.get("/scan-history", response_model=ScanHistory)
async def scan_history(user_id: Optional[str] = None, brand_id: Optional[str] = None,
                       limit: int = 20, store: ScanStore = Depends(get_store)):
    return await _blocking(store.scan_history, user_id, brand_id, max(1, min(limit, 100)))

@app.get("/scan-history/latest", response_model=ScanResult)
async def latest_scan(user_id: Optional[str] = None, brand_id: Optional[str] = None,
                      store: ScanStore = Depends(get_store)):
    result = await _blocking(store.latest_result, user_id, brand_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No completed scan yet")
    return result

@app.get("/scan/{scan_id}/status", response_model=ScanStatusView)
async def scan_status(scan_id: str, store: ScanStore = Depends(get_store)):
    view = await _blocking(store.get_status, scan_id)
    if view is None:
        raise HTTPException(status_code=404, detail=f"Scan not found: {scan_id}")
    return view

@app.get("/scan/{scan_id}", response_model=ScanResult)
async def scan_result(scan_id: str, store: ScanStore = Depends(get_store)):
    result = await _blocking(store.get_result, scan_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Scan not found: {scan_id}")
    return result

@app.get("/brands/{brand_id}/competitors", response_model=List[CompetitorSnapshot])
async def competitor_history(brand_id: str, store: ScanStore = Depends(get_store)):
    return await _blocking(CompetitorTracker(store).history, brand_id)

@app.get("/scan/{scan_id}/queries", response_model=ScanQueries)
async def scan_queries(scan_id: str, provider: Optional[str] = None,
                       store: ScanStore = Depends(get_store)):
    if await _blocking(store.get_status, scan_id) is None:
        raise HTTPException(status_code=404, detail=f"Scan not found: {scan_id}")
    queries = await _blocking(store.list_queries, scan_id)
    results = await _blocking(store.list_responses, scan_id, provider)
    return ScanQueries(
        scan_id=scan_id,
        total=len(results),
        queries=queries,
        results=results,
        providers=sorted({r.provider for r in results}),
        intents=sorted({r.intent for r in results}, key=lambda i: i.value),
    )

@app.get("/scan/{scan_id}/providers", response_model=ScanProviders)
async def scan_providers(scan_id: str, store: ScanStore = Depends(get_store)):
    result = await _blocking(store.get_result, scan_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Scan not found: {scan_id}")
    if result.provider_comparison is None:
        return ScanProviders(scan_id=scan_id,
                             message="Provider comparison not yet available for this scan")
    return ScanProviders(scan_id=scan_id, provider_comparison=result.provider_comparison)
