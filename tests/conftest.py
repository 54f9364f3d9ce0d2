import asyncio
from typing import Optional

import pytest

from mentioned.config import Settings
from mentioned.db.repo import ScanStore
from mentioned.db.session import build_engine, build_sessionmaker
from mentioned.exceptions import ProviderError
from mentioned.models.schemas import (ScanRequest, Query, Intent, INTENT_WEIGHTS, BrandDetection,
                                      ResponseAnalysis, ScanJob)

LIST_ANSWER = """Here are some solid options:

1. **Calendly** - the most popular scheduling link tool.
2. **Cal.com** - open source and highly recommended for developers.
3. **SavvyCal** - great option for prioritising your time.
"""

class InFlight:
    """Concurrent-call counter shared by several FakeProviders."""

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self):
        self.current -= 1

class FakeProvider:
    """Stands in for a completion backend; answers come from a callable or a fixed string."""

    def __init__(self, name: str, answer="", fail: bool = False, delay: float = 0.0,
                 gauge: Optional[InFlight] = None):
        self.name = name
        self.answer = answer
        self.fail = fail
        self.delay = delay
        self.gauge = gauge or InFlight()
        self.calls = []
        self.closed = False

    async def generate_response(self, prompt: str) -> str:
        self.calls.append(prompt)
        self.gauge.enter()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise ProviderError(self.name, "status 503", 503)
            return self.answer(prompt) if callable(self.answer) else self.answer
        finally:
            self.gauge.leave()

    async def close(self):
        self.closed = True

@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        REDIS_URL=None,
        OPENAI_API_KEY=None,
        ANTHROPIC_API_KEY=None,
        GEMINI_API_KEY=None,
        PERPLEXITY_API_KEY=None,
        PROVIDER_TIMEOUT_SECS=2.0,
        STORE_TIMEOUT_SECS=5.0,
        SCAN_TIMEOUT_SECS=20.0,
        SCAN_MAX_RETRIES=1,
        MAX_QUERIES_PER_SCAN=None,
        PRO_WHITELIST_EMAILS=["vip@example.com"],
    )

@pytest.fixture
def store():
    s = ScanStore(build_sessionmaker(build_engine("sqlite://")))
    s.init_schema()
    return s

@pytest.fixture
def scan_request():
    return ScanRequest(
        brand_name="Cal.com",
        website_url="https://cal.com",
        category="scheduling software",
        core_problem="Teams waste hours going back and forth to book meetings",
        target_buyer="startup founders and sales teams",
        differentiators="open source; self hosting; developer friendly API",
        features=["round robin booking", "calendar sync"],
        use_cases=["booking sales demos"],
        competitors=["Calendly", "SavvyCal", "Doodle"],
        buyer_questions=["What scheduling tool do most YC startups use for booking demos?"],
        user_id="user-1",
    )

@pytest.fixture
def make_job(scan_request):
    def _make(scan_id: str = "scan-1", plan: str = "free", request: Optional[ScanRequest] = None) -> ScanJob:
        return ScanJob(scan_id=scan_id, brand_id="cal.com", user_id="user-1", plan=plan,
                       request=request or scan_request)
    return _make

def make_query(text: str = "best scheduling tool?", intent: Intent = Intent.DIRECT_RECOMMENDATION,
               key: Optional[str] = None) -> Query:
    return Query(text=text, intent=intent, intent_weight=INTENT_WEIGHTS[intent],
                 dedupe_key=key or text[:12])

def make_analysis(detected: bool, provider: str = "openai", position: Optional[int] = 1,
                  query: Optional[Query] = None, competitors: int = 0,
                  sentiment: str = "neutral") -> ResponseAnalysis:
    detection = BrandDetection(brand_name="Cal.com", detected=detected,
                               confidence=1.0 if detected else 0.0,
                               position=position if detected else None)
    comps = [BrandDetection(brand_name=f"Comp{i}", detected=True, confidence=1.0)
             for i in range(competitors)]
    return ResponseAnalysis(query=query or make_query(), provider=provider, response_text="...",
                            brand_detection=detection, competitor_detections=comps,
                            sentiment=sentiment)

