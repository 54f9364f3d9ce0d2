from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Dict

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Intent(str, Enum):
    USER_PROVIDED = "user_provided"
    DIRECT_RECOMMENDATION = "direct_recommendation"
    ALTERNATIVES = "alternatives"
    COMPARISON = "comparison"
    PROBLEM_BASED = "problem_based"
    FEATURE_BASED = "feature_based"
    TROUBLESHOOTING = "troubleshooting"
    BUDGET_BASED = "budget_based"

INTENT_WEIGHTS: Dict[Intent, float] = {
    Intent.USER_PROVIDED: 2.0,
    Intent.DIRECT_RECOMMENDATION: 1.5,
    Intent.PROBLEM_BASED: 1.3,
    Intent.ALTERNATIVES: 1.3,
    Intent.COMPARISON: 1.2,
    Intent.TROUBLESHOOTING: 1.0,
    Intent.FEATURE_BASED: 0.9,
    Intent.BUDGET_BASED: 0.8,
}

class ScanStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    GENERATING_STRATEGY = "generating_strategy"
    COMPLETE = "complete"
    FAILED = "failed"
    STRATEGY_FAILED = "strategy_failed"

TERMINAL_STATUSES = {ScanStatus.COMPLETE, ScanStatus.FAILED, ScanStatus.STRATEGY_FAILED}

class ScanRequest(BaseModel):
    brand_name: str
    website_url: str
    core_problem: str
    target_buyer: str
    differentiators: Optional[str] = None
    category: Optional[str] = None
    features: List[str] = []
    use_cases: List[str] = []
    pricing_model: Optional[str] = None
    competitors: List[str] = []
    buyer_questions: List[str] = []
    brand_id: Optional[str] = None  # derived from the domain when omitted
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    scan_id: Optional[str] = None  # client supplied id makes submission idempotent

class ProductProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    brand_name: str
    brand_aliases: List[str] = []
    domain: str = ""
    category: str = ""
    target_audience: str = ""
    core_problem: str = ""
    features: List[str] = []
    competitors: List[str] = []
    pricing_model: str = ""
    unique_selling_points: List[str] = []
    use_cases: List[str] = []
    buyer_questions: List[str] = []

class Query(BaseModel):
    text: str
    intent: Intent
    intent_weight: float
    relevance_score: int = 0
    intent_score: int = 0
    is_relevant: bool = True
    has_brand_bias: bool = False
    dedupe_key: str = ""
    order: int = 0

class RejectedQuery(BaseModel):
    text: str
    reason: str

class QuerySet(BaseModel):
    queries: List[Query] = []
    total_generated: int = 0
    rejected: List[RejectedQuery] = []

    @property
    def is_empty(self) -> bool:
        return not self.queries

class BrandDetection(BaseModel):
    model_config = ConfigDict(frozen=True)

    brand_name: str
    detected: bool = False
    confidence: float = 0.0
    method: str = "regex"  # regex | alias | fuzzy
    position: Optional[int] = None
    snippet: Optional[str] = None

class ResponseAnalysis(BaseModel):
    query: Query
    provider: str
    response_text: str
    brand_detection: BrandDetection
    competitor_detections: List[BrandDetection] = []
    sentiment: str = "neutral"
    analyzed_at: datetime = Field(default_factory=utcnow)

    @property
    def competitors_detected(self) -> List[BrandDetection]:
        return [d for d in self.competitor_detections if d.detected]

class ProviderScore(BaseModel):
    provider: str
    mention_rate: float = 0.0
    mention_count: int = 0
    total_responses: int = 0
    position_score: float = 0.0
    intent_weighted_score: float = 0.0
    visibility_score: int = 0
    sentiment: str = "neutral"

class ScoringBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    final_score: int = 0
    raw_score: float = 0.0
    mention_rate: float = 0.0
    position_score: float = 0.0
    intent_weighted_score: float = 0.0
    cross_model_consistency: float = 1.0
    competitor_density_factor: float = 1.0
    coverage: float = 1.0
    provider_scores: List[ProviderScore] = []

class CompetitorSnapshot(BaseModel):
    scan_id: str
    brand_id: str
    competitor_name: str
    mentioned: bool = False
    mention_count: int = 0
    best_position: Optional[int] = None
    avg_position: float = 99.0
    avg_confidence: float = 0.0
    visibility_estimate: int = 0
    trend: str = "new"  # new | up | down | stable
    recorded_at: datetime = Field(default_factory=utcnow)

class MetricDelta(BaseModel):
    current: float
    previous: Optional[float] = None
    delta: Optional[float] = None

class ScoreDeltas(BaseModel):
    overall: MetricDelta
    mention_rate: MetricDelta
    consistency: MetricDelta
    providers: Dict[str, MetricDelta] = {}
    previous_scan_id: Optional[str] = None
    previous_scan_date: Optional[datetime] = None

class ProviderShare(BaseModel):
    mentions: int
    share: float

class BrandShare(BaseModel):
    name: str
    is_self: bool = False
    total_mentions: int = 0
    share: float = 0.0
    share_pct: int = 0
    per_provider: Dict[str, ProviderShare] = {}

class ShareOfVoice(BaseModel):
    brands: List[BrandShare] = []
    your_rank: int = 0
    total_responses: int = 0
    computed_at: datetime = Field(default_factory=utcnow)

class ProviderComparisonEntry(BaseModel):
    provider: str
    mention_rate: float
    mentions_count: int
    total_queries: int
    avg_position: Optional[float] = None
    sentiment_avg: float = 0.0
    composite_score: int = 0

class ProviderComparison(BaseModel):
    providers: List[ProviderComparisonEntry] = []
    strongest_provider: Optional[str] = None
    weakest_provider: Optional[str] = None
    consistency_score: int = 0
    insights: List[str] = []

class StrategyAction(BaseModel):
    title: str
    description: str
    impact: str = "medium"  # high | medium | low
    effort: str = "medium"
    category: str = "content"

class StrategicPlan(BaseModel):
    executive_summary: str
    actions: List[StrategyAction] = Field(default_factory=list, min_length=1, max_length=8)

class PreviousScanSummary(BaseModel):
    scan_id: str
    score: int
    mention_rate: Optional[float] = None
    consistency: Optional[float] = None
    provider_scores: Dict[str, float] = {}
    created_at: Optional[datetime] = None

class ScanJob(BaseModel):
    scan_id: str
    brand_id: str
    user_id: Optional[str] = None
    plan: str = "free"
    request: ScanRequest
    status: ScanStatus = ScanStatus.QUEUED
    stage: Optional[str] = None
    progress: int = 0
    attempts: int = 0
    error: Optional[str] = None
    failed_phase: Optional[str] = None

class ScanResult(BaseModel):
    scan_id: str
    brand_id: Optional[str] = None
    status: ScanStatus
    score: Optional[int] = None
    breakdown: Optional[ScoringBreakdown] = None
    query_count: int = 0
    competitors: List[CompetitorSnapshot] = []
    deltas: Optional[ScoreDeltas] = None
    share_of_voice: Optional[ShareOfVoice] = None
    provider_comparison: Optional[ProviderComparison] = None
    strategy: Optional[StrategicPlan] = None
    error: Optional[str] = None
    failed_phase: Optional[str] = None

class ScanStatusView(BaseModel):
    scan_id: str
    status: ScanStatus
    stage: Optional[str] = None
    progress: int = 0
    attempts: int = 0
    error: Optional[str] = None
    failed_phase: Optional[str] = None
    updated_at: Optional[datetime] = None

class ScanAccepted(BaseModel):
    scan_id: str
    status: ScanStatus
    mode: str  # queued | inline
    result: Optional[ScanResult] = None

class QuotaDecision(BaseModel):
    allowed: bool
    plan: str
    reason: Optional[str] = None  # upgrade_required | scan_limit_reached
    scans_used: int = 0
    scans_limit: Optional[int] = None

class QuotaState(BaseModel):
    plan: Optional[str] = None  # None -> no subscription
    free_scan_used: bool = False
    scans_used: int = 0
    scans_limit: int = 0

class RecurringInterval(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"

class RecurringRequest(BaseModel):
    brand_id: str
    enabled: bool
    interval: RecurringInterval = RecurringInterval.WEEKLY

class RecurringSchedule(BaseModel):
    brand_id: str
    source_scan_id: str  # its request is replayed on every run
    enabled: bool
    interval: Optional[RecurringInterval] = None
    next_run_at: Optional[datetime] = None
    last_scan_id: Optional[str] = None

class RecurringRunSummary(BaseModel):
    processed: int = 0
    failed: int = 0
    total: int = 0

class ScanHistoryEntry(BaseModel):
    scan_id: str
    brand_id: str
    brand_name: Optional[str] = None
    status: ScanStatus
    score: Optional[int] = None
    mention_rate: Optional[float] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

class ScanHistory(BaseModel):
    history: List[ScanHistoryEntry] = []
    brands: List[str] = []

class StoredQuery(BaseModel):
    rank: int
    text: str
    intent: Intent
    intent_weight: float
    relevance_score: int = 0
    intent_score: int = 0

class StoredResponse(BaseModel):
    provider: str
    query_text: str
    intent: Intent
    response_text: str
    brand_detected: bool
    confidence: float
    method: str
    position: Optional[int] = None
    sentiment: str = "neutral"
    competitors_detected: List[str] = []

class ScanQueries(BaseModel):
    scan_id: str
    total: int = 0
    queries: List[StoredQuery] = []
    results: List[StoredResponse] = []
    providers: List[str] = []
    intents: List[Intent] = []

class ScanProviders(BaseModel):
    scan_id: str
    provider_comparison: Optional[ProviderComparison] = None
    message: Optional[str] = None
