"""Visibility scoring.

final_score = 100 * composite * cross_model_consistency * competitor_density

composite blends mention rate, list position and intent weighted mention rate.
Consistency drops toward 0.6 as providers disagree on the same query, and the
density factor dampens answers crowded with competitors (never below 0.85).
"""
import logging
from collections import Counter, defaultdict
from itertools import combinations
from typing import List, Optional, Dict

from mentioned.models.schemas import ResponseAnalysis, ScoringBreakdown, ProviderScore, BrandDetection

logger = logging.getLogger(__name__)

POSITION_WEIGHTS: Dict[int, float] = {1: 1.0, 2: 0.7, 3: 0.5, 4: 0.3}
UNPLACED_POSITION_FACTOR = 0.6
COMPONENT_WEIGHTS = {"mention_rate": 0.35, "position": 0.35, "intent": 0.30}
DISAGREEMENT_FACTOR = 0.6
DENSITY_STEP = 0.03
DENSITY_FLOOR = 0.85

def position_factor(detection: BrandDetection) -> float:
    if not detection.detected:
        return 0.0
    p = detection.position
    if p is None or p < 1:
        return UNPLACED_POSITION_FACTOR
    if p in POSITION_WEIGHTS:
        return POSITION_WEIGHTS[p]
    return POSITION_WEIGHTS[4] / (p - 3)

def cross_model_consistency(analyses: List[ResponseAnalysis]) -> float:
    by_query: Dict[str, Dict[str, bool]] = defaultdict(dict)
    for a in analyses:
        key = a.query.dedupe_key or a.query.text
        by_query[key][a.provider] = by_query[key].get(a.provider, False) or a.brand_detection.detected
    pairs = agreements = 0
    for verdicts in by_query.values():
        for x, y in combinations(verdicts.values(), 2):
            pairs += 1
            agreements += x == y
    if pairs == 0:
        return 1.0
    return DISAGREEMENT_FACTOR + (1 - DISAGREEMENT_FACTOR) * agreements / pairs

def competitor_density(analyses: List[ResponseAnalysis]) -> float:
    if not analyses:
        return 1.0
    avg = sum(len(a.competitors_detected) for a in analyses) / len(analyses)
    return max(DENSITY_FLOOR, 1.0 - DENSITY_STEP * avg)

def _components(analyses: List[ResponseAnalysis]):
    n = len(analyses)
    detected = sum(1 for a in analyses if a.brand_detection.detected)
    mention_rate = detected / n
    position = sum(position_factor(a.brand_detection) for a in analyses) / n
    total_weight = sum(a.query.intent_weight for a in analyses)
    intent = (sum(a.query.intent_weight for a in analyses if a.brand_detection.detected) / total_weight
              if total_weight > 0 else 0.0)
    composite = (COMPONENT_WEIGHTS["mention_rate"] * mention_rate
                 + COMPONENT_WEIGHTS["position"] * position
                 + COMPONENT_WEIGHTS["intent"] * intent)
    return detected, mention_rate, position, intent, composite

def _clamp_score(value: float) -> int:
    return max(0, min(100, round(value)))

class ScoringEngine:
    def score(self, analyses: List[ResponseAnalysis], total_queries: int,
              providers_attempted: Optional[int] = None) -> ScoringBreakdown:
        if not analyses:
            return ScoringBreakdown(final_score=0, mention_rate=0.0, coverage=0.0)

        _, mention_rate, position, intent, composite = _components(analyses)
        consistency = cross_model_consistency(analyses)
        density = competitor_density(analyses)
        raw = 100 * composite * consistency * density

        coverage = 1.0
        if total_queries and providers_attempted:
            coverage = min(1.0, len(analyses) / (total_queries * providers_attempted))

        breakdown = ScoringBreakdown(
            final_score=_clamp_score(raw),
            raw_score=round(raw, 4),
            mention_rate=mention_rate,
            position_score=round(position, 4),
            intent_weighted_score=round(intent, 4),
            cross_model_consistency=round(consistency, 4),
            competitor_density_factor=round(density, 4),
            coverage=round(coverage, 4),
            provider_scores=self.provider_scores(analyses),
        )
        logger.info("scored %d analyses: final=%d mention_rate=%.2f consistency=%.2f",
                    len(analyses), breakdown.final_score, mention_rate, consistency)
        return breakdown

    def provider_scores(self, analyses: List[ResponseAnalysis]) -> List[ProviderScore]:
        grouped: Dict[str, List[ResponseAnalysis]] = defaultdict(list)
        for a in analyses:
            grouped[a.provider].append(a)
        out = []
        for provider in sorted(grouped):
            items = grouped[provider]
            detected, mention_rate, position, intent, composite = _components(items)
            moods = Counter(a.sentiment for a in items if a.brand_detection.detected)
            out.append(ProviderScore(
                provider=provider,
                mention_rate=mention_rate,
                mention_count=detected,
                total_responses=len(items),
                position_score=round(position, 4),
                intent_weighted_score=round(intent, 4),
                visibility_score=_clamp_score(100 * composite * competitor_density(items)),
                sentiment=moods.most_common(1)[0][0] if moods else "neutral",
            ))
        return out
