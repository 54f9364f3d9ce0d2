import json
import logging
import re
from typing import Optional, Callable, Awaitable, List

from pydantic import BaseModel, ValidationError

from mentioned.exceptions import ProfileValidationError
from mentioned.models.schemas import ProductProfile, ScanRequest
from mentioned.services.aliases import (deterministic_aliases, domain_label, registered_domain,
                                        strip_code_fence)
from mentioned.services.normalizer import clean_text, unique_keep_order

logger = logging.getLogger(__name__)

Ask = Callable[[str], Awaitable[Optional[str]]]

HINTS_PROMPT = """You are a SaaS product analyst. From the description below, infer the product's market.

Brand: {brand}
Website: {url}
Problem it solves: {problem}
Target buyer: {buyer}
Differentiators: {diffs}

Respond ONLY with valid JSON:
{{"category": "string", "features": ["string"], "use_cases": ["string"], "competitors": ["string"]}}

Rules:
- category: a short product category such as "scheduling software"
- features: max 6
- competitors: only well-known products in the same category, never {brand}"""

class ProfileHints(BaseModel):
    category: str = ""
    features: List[str] = []
    use_cases: List[str] = []
    competitors: List[str] = []

def brand_id_for(request: ScanRequest) -> str:
    if request.brand_id:
        return request.brand_id
    domain = registered_domain(request.website_url)
    if domain:
        return domain
    return re.sub(r"[^a-z0-9]+", "-", request.brand_name.lower()).strip("-")

def split_list(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [p for p in (clean_text(x) for x in re.split(r"[;\n,]", text)) if p]

class FormProfiler:
    """Builds the product profile from the scan form.

    When the form leaves the category out, one provider call fills in the
    market hints; form values always win over inferred ones.
    """

    def __init__(self, ask: Optional[Ask] = None):
        self.ask = ask

    async def build(self, request: ScanRequest) -> ProductProfile:
        brand = clean_text(request.brand_name) or ""
        if not brand:
            raise ProfileValidationError([{"field": "brand_name", "message": "Brand name is required."}])

        hints = ProfileHints()
        if not request.category and self.ask is not None:
            hints = await self._infer_hints(request)

        category = clean_text(request.category) or clean_text(hints.category) or ""
        if not category:
            raise ProfileValidationError([{
                "field": "category",
                "message": "Could not determine a product category; please provide one.",
            }])

        domain = registered_domain(request.website_url)
        aliases = deterministic_aliases(brand)
        label = domain_label(request.website_url)
        if label and label != brand.lower():
            aliases.append(label)

        competitors = unique_keep_order(
            c for c in (clean_text(x) for x in request.competitors + hints.competitors)
            if c and c.lower() != brand.lower()
        )
        return ProductProfile(
            brand_name=brand,
            brand_aliases=unique_keep_order(aliases),
            domain=domain,
            category=category,
            target_audience=clean_text(request.target_buyer) or "",
            core_problem=clean_text(request.core_problem) or "",
            features=unique_keep_order(request.features + hints.features),
            competitors=competitors[:5],
            pricing_model=request.pricing_model or "",
            unique_selling_points=split_list(request.differentiators),
            use_cases=unique_keep_order(request.use_cases + hints.use_cases),
            buyer_questions=request.buyer_questions,
        )

    async def _infer_hints(self, request: ScanRequest) -> ProfileHints:
        prompt = HINTS_PROMPT.format(
            brand=request.brand_name, url=request.website_url, problem=request.core_problem,
            buyer=request.target_buyer, diffs=request.differentiators or "none given",
        )
        raw = await self.ask(prompt)
        if not raw:
            return ProfileHints()
        try:
            return ProfileHints.model_validate(json.loads(strip_code_fence(raw)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("profile hints unusable: %s", e)
            return ProfileHints()
