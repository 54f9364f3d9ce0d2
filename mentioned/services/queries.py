import logging
import re
from itertools import combinations, product, islice, zip_longest
from string import Formatter
from typing import List, Dict, Iterator, Optional

from mentioned.exceptions import ProfileValidationError
from mentioned.models.schemas import (ProductProfile, Query, QuerySet, RejectedQuery,
                                      Intent, INTENT_WEIGHTS)
from mentioned.services.detection import name_pattern
from mentioned.services.normalizer import (clean_text, dedupe_key, tokens, jaccard,
                                           unique_keep_order)

logger = logging.getLogger(__name__)

NEAR_DUPLICATE_THRESHOLD = 0.75

TEMPLATES: Dict[Intent, List[str]] = {
    Intent.DIRECT_RECOMMENDATION: [
        "What is the best {category} for {audience}?",
        "Can you recommend a {category} that helps {audience} {problem}?",
        "Which {category} should I use if I need to {problem}?",
        "Recommend a {category} for {audience} that handles {use_case}.",
    ],
    Intent.ALTERNATIVES: [
        "What are the best alternatives to {competitor} for {audience}?",
        "Tools like {competitor} but with better {feature}?",
        "I'm looking to switch from {competitor}. What should I use instead?",
    ],
    Intent.COMPARISON: [
        "Compare {competitor} vs {competitor2} for {audience}.",
        "Which {category} tool is best for {feature}?",
        "Top {category} tools with {usp} compared",
    ],
    Intent.PROBLEM_BASED: [
        "How can {audience} {problem} without wasting hours every week?",
        "My team struggles to {problem}. What tool would help?",
        "What's the easiest way to handle {use_case} as one of {audience}?",
    ],
    Intent.FEATURE_BASED: [
        "What {category} tools offer {feature}?",
        "Is there a {category} with {usp}?",
        "Best {category} that supports {feature} for {audience}",
    ],
    Intent.TROUBLESHOOTING: [
        "Our current tool keeps failing at {use_case}. What should we switch to?",
        "Why is it so hard to {problem}, and which tools fix it?",
    ],
    Intent.BUDGET_BASED: [
        "Affordable {category} for {audience}?",
        "Best value {category} with a {pricing} plan",
        "Is there a free {category} good enough for {audience}?",
    ],
}

PURCHASE_TERMS = ("best", "recommend", "should i", "should we", "which", "buy", "choose",
                  "switch", "alternative", "instead", "tool", "software", "platform",
                  "pricing", "affordable", "free", "value", "plan")
COMPARISON_TERMS = (" vs ", "versus", "compare", "compared", "alternatives", "like ", "better")
QUESTION_OPENERS = ("what", "which", "how", "is there", "can you", "recommend", "why",
                    "should", "are there", "who")

def _problem_phrase(problem: str) -> str:
    problem = (clean_text(problem) or "").rstrip(".!? ")
    if not problem:
        return ""
    return problem[0].lower() + problem[1:]

def slot_values(profile: ProductProfile) -> Dict[str, List[str]]:
    features = unique_keep_order(profile.features + profile.unique_selling_points)
    return {
        "category": [profile.category] if profile.category else [],
        "audience": [profile.target_audience] if profile.target_audience else [],
        "problem": [p for p in [_problem_phrase(profile.core_problem)] if p],
        "feature": features,
        "usp": profile.unique_selling_points or features,
        "use_case": profile.use_cases,
        "competitor": profile.competitors,
        "pricing": [profile.pricing_model] if profile.pricing_model else ["free"],
    }

def expand(template: str, values: Dict[str, List[str]]) -> Iterator[str]:
    slots = unique_keep_order(f for _, f, _, _ in Formatter().parse(template) if f)
    pairs = None
    if "competitor2" in slots:
        pairs = list(combinations(values.get("competitor", []), 2))
        if not pairs:
            return
        slots = [s for s in slots if s not in ("competitor", "competitor2")]
    pools = [values.get(s, []) for s in slots]
    if any(not p for p in pools):
        return
    for pair in pairs or [None]:
        for combo in product(*pools):
            fields = dict(zip(slots, combo))
            if pair:
                fields["competitor"], fields["competitor2"] = pair
            yield template.format(**fields)

def _round_robin(iterators: List[Iterator[str]]) -> Iterator[str]:
    for batch in zip_longest(*iterators):
        for item in batch:
            if item is not None:
                yield item

def relevance_score(text: str, profile: ProductProfile) -> int:
    terms = set()
    for source in [profile.category, profile.target_audience, profile.core_problem,
                   *profile.features, *profile.use_cases, *profile.unique_selling_points]:
        terms |= tokens(source or "", min_len=4)
    terms |= {c.lower() for c in profile.competitors}
    query_tokens = tokens(text, min_len=4)
    lower = text.lower()
    overlap = len(query_tokens & terms) + sum(1 for c in profile.competitors if c.lower() in lower)
    score = 1 + 2 * overlap
    if is_question(text):
        score += 1
    return max(1, min(10, score))

def intent_score(text: str, profile: ProductProfile) -> int:
    lower = " " + text.lower() + " "
    score = 2
    score += min(3, sum(1 for t in PURCHASE_TERMS if t in lower))
    if any(t in lower for t in COMPARISON_TERMS):
        score += 2
    if tokens(text, min_len=4) & tokens(profile.target_audience or "", min_len=4):
        score += 2
    if is_question(text):
        score += 1
    return max(1, min(10, score))

def is_question(text: str) -> bool:
    lower = text.strip().lower()
    return lower.endswith("?") or lower.startswith(QUESTION_OPENERS)

class QueryGenerator:
    """Expands intent templates against a product profile."""

    def generate(self, profile: ProductProfile, max_per_intent: int) -> List[Query]:
        if not profile.brand_name.strip() or not profile.category.strip():
            raise ProfileValidationError([{
                "field": "category" if profile.brand_name.strip() else "brand_name",
                "message": "profile needs a brand name and a category to build queries",
            }])
        out: List[Query] = []
        for text in profile.buyer_questions:
            text = clean_text(text)
            if text:
                out.append(self._query(text, Intent.USER_PROVIDED, len(out)))

        values = slot_values(profile)
        for intent, templates in TEMPLATES.items():
            stream = _round_robin([expand(t, values) for t in templates])
            for text in islice(stream, max_per_intent):
                out.append(self._query(text, intent, len(out)))
        return out

    def _query(self, text: str, intent: Intent, order: int) -> Query:
        return Query(text=text, intent=intent, intent_weight=INTENT_WEIGHTS[intent],
                     dedupe_key=dedupe_key(text), order=order)

class QueryValidator:
    def __init__(self, min_relevance: int = 3, min_intent: int = 3):
        self.min_relevance = min_relevance
        self.min_intent = min_intent

    @staticmethod
    def has_brand_bias(text: str, profile: ProductProfile) -> bool:
        terms = [profile.brand_name, *profile.brand_aliases]
        return any(len(t.strip()) >= 3 and name_pattern(t).search(text) for t in terms)

    def validate(self, candidates: List[Query], profile: ProductProfile,
                 max_queries: int) -> QuerySet:
        rejected: List[RejectedQuery] = []
        kept: List[Query] = []
        seen_keys = set()
        kept_tokens: List[set] = []

        for q in candidates:
            if self.has_brand_bias(q.text, profile):
                rejected.append(RejectedQuery(text=q.text, reason="brand_bias"))
                continue
            if q.dedupe_key in seen_keys:
                rejected.append(RejectedQuery(text=q.text, reason="duplicate"))
                continue
            toks = tokens(q.text)
            if any(jaccard(toks, other) > NEAR_DUPLICATE_THRESHOLD for other in kept_tokens):
                rejected.append(RejectedQuery(text=q.text, reason="near_duplicate"))
                continue

            scored = q.model_copy(update={
                "relevance_score": relevance_score(q.text, profile),
                "intent_score": intent_score(q.text, profile),
            })
            if scored.intent != Intent.USER_PROVIDED:
                if scored.relevance_score < self.min_relevance:
                    rejected.append(RejectedQuery(text=q.text, reason="low_relevance"))
                    continue
                if scored.intent_score < self.min_intent:
                    rejected.append(RejectedQuery(text=q.text, reason="low_intent"))
                    continue
            seen_keys.add(q.dedupe_key)
            kept_tokens.append(toks)
            kept.append(scored)

        kept.sort(key=lambda q: (q.intent != Intent.USER_PROVIDED, -q.relevance_score,
                                 -q.intent_score, q.order))
        if len(kept) > max_queries:
            for q in kept[max_queries:]:
                rejected.append(RejectedQuery(text=q.text, reason="over_limit"))
            kept = kept[:max_queries]
        logger.info("query set built: %d kept, %d rejected of %d generated",
                    len(kept), len(rejected), len(candidates))
        return QuerySet(queries=kept, total_generated=len(candidates), rejected=rejected)

def build_query_set(profile: ProductProfile, max_queries: int, max_per_intent: int,
                    min_relevance: int = 3, min_intent: int = 3,
                    generator: Optional[QueryGenerator] = None) -> QuerySet:
    candidates = (generator or QueryGenerator()).generate(profile, max_per_intent)
    return QueryValidator(min_relevance, min_intent).validate(candidates, profile, max_queries)
