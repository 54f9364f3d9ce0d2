from typing import List, Dict
from urllib.parse import urlparse

from mentioned.exceptions import InputValidationError
from mentioned.models.schemas import ScanRequest

BLOCKED_DOMAINS = {
    "google.com", "facebook.com", "twitter.com", "youtube.com",
    "linkedin.com", "instagram.com", "tiktok.com", "amazon.com",
    "wikipedia.org", "reddit.com", "github.com",
}

def scan_input_issues(req: ScanRequest) -> List[Dict[str, str]]:
    issues = []

    def issue(field: str, message: str):
        issues.append({"field": field, "message": message})

    name = (req.brand_name or "").strip()
    if not name:
        issue("brand_name", "Brand name is required.")
    elif len(name) > 80:
        issue("brand_name", "Brand name must be 80 characters or less.")

    url = (req.website_url or "").strip()
    if not url:
        issue("website_url", "Website URL is required.")
    else:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            issue("website_url", "URL must use http or https.")
        elif not parsed.hostname:
            issue("website_url", "Please enter a valid URL.")
        elif parsed.hostname.removeprefix("www.") in BLOCKED_DOMAINS:
            issue("website_url", "Please enter your product URL, not a social media or platform site.")

    problem = (req.core_problem or "").strip()
    if len(problem) < 15:
        issue("core_problem", "Please describe the problem in at least 15 characters.")
    elif len(problem) > 300:
        issue("core_problem", "Please keep this under 300 characters.")

    buyer = (req.target_buyer or "").strip()
    if len(buyer) < 8:
        issue("target_buyer", "Please describe your target customer in at least 8 characters.")
    elif len(buyer) > 150:
        issue("target_buyer", "Please keep this under 150 characters.")

    diffs = (req.differentiators or "").strip()
    if diffs and len(diffs) < 10:
        issue("differentiators", "If provided, please give at least 10 characters.")
    elif len(diffs) > 300:
        issue("differentiators", "Please keep this under 300 characters.")

    if len(req.competitors) > 5:
        issue("competitors", "Maximum 5 competitors.")
    for comp in req.competitors:
        if len(comp.strip()) > 60:
            issue("competitors", f'Competitor name "{comp[:20]}..." is too long.')
            break

    if len(req.buyer_questions) > 10:
        issue("buyer_questions", "Maximum 10 questions.")
    for q in req.buyer_questions:
        if len(q.strip()) < 10:
            issue("buyer_questions", f'"{q[:30]}" is too short to be a real question.')
            break
        if name and name.lower() in q.lower():
            issue("buyer_questions", f'Questions should not contain your brand name: "{q[:40]}"')
            break
    return issues

def validate_scan_input(req: ScanRequest) -> ScanRequest:
    issues = scan_input_issues(req)
    if issues:
        raise InputValidationError(issues)
    return req
