from typing import Optional

from mentioned.config import Settings
from mentioned.models.schemas import QuotaDecision, QuotaState

WHITELIST_PLAN = "pro_monthly"
UNLIMITED_PLANS = {"pro", "pro_monthly", "pro_annual", "pro_plus"}

def check_scan_quota(settings: Settings, state: QuotaState,
                     email: Optional[str] = None) -> QuotaDecision:
    """Decides whether a user may start another scan.

    Whitelisted emails are always allowed. Without a subscription a user gets
    one free scan; starter plans are capped by their period limit and pro plans
    are not capped here.
    """
    if settings.is_whitelisted(email):
        return QuotaDecision(allowed=True, plan=WHITELIST_PLAN)

    plan = (state.plan or "").lower().strip()
    if not plan or plan == "free":
        if state.free_scan_used:
            return QuotaDecision(allowed=False, plan="free", reason="upgrade_required",
                                 scans_used=1, scans_limit=1)
        return QuotaDecision(allowed=True, plan="free", scans_used=0, scans_limit=1)

    if plan in UNLIMITED_PLANS:
        return QuotaDecision(allowed=True, plan=plan, scans_used=state.scans_used)

    limit = state.scans_limit or settings.resolve_plan(plan).scans_per_month
    if state.scans_used >= limit:
        return QuotaDecision(allowed=False, plan=plan, reason="scan_limit_reached",
                             scans_used=state.scans_used, scans_limit=limit)
    return QuotaDecision(allowed=True, plan=plan, scans_used=state.scans_used, scans_limit=limit)
