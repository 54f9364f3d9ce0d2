"""Post-scoring enrichment: deltas against the prior scan, share of voice and
provider comparison. Everything here is best effort for the orchestrator."""
from collections import defaultdict
from typing import Dict, List, Optional

from mentioned.models.schemas import (
    ResponseAnalysis, ScoringBreakdown, ScoreDeltas, MetricDelta, PreviousScanSummary,
    ShareOfVoice, BrandShare, ProviderShare, ProviderComparison, ProviderComparisonEntry,
)
from mentioned.services.scoring import COMPONENT_WEIGHTS, POSITION_WEIGHTS

SENTIMENT_VALUES = {"positive": 1.0, "neutral": 0.0, "negative": -1.0}
MAX_INSIGHTS = 4

def _delta(current: float, previous: Optional[float]) -> MetricDelta:
    if previous is None:
        return MetricDelta(current=current)
    return MetricDelta(current=current, previous=previous, delta=round(current - previous, 4))

def compute_deltas(breakdown: ScoringBreakdown,
                   previous: Optional[PreviousScanSummary]) -> ScoreDeltas:
    providers = {p.provider: p.visibility_score for p in breakdown.provider_scores}
    if previous is None:
        return ScoreDeltas(
            overall=_delta(breakdown.final_score, None),
            mention_rate=_delta(breakdown.mention_rate, None),
            consistency=_delta(breakdown.cross_model_consistency, None),
            providers={k: _delta(v, None) for k, v in providers.items()},
        )
    return ScoreDeltas(
        overall=_delta(breakdown.final_score, previous.score),
        mention_rate=_delta(breakdown.mention_rate, previous.mention_rate),
        consistency=_delta(breakdown.cross_model_consistency, previous.consistency),
        providers={k: _delta(v, previous.provider_scores.get(k)) for k, v in providers.items()},
        previous_scan_id=previous.scan_id,
        previous_scan_date=previous.created_at,
    )

def share_of_voice(brand_name: str, analyses: List[ResponseAnalysis]) -> ShareOfVoice:
    totals: Dict[str, int] = {brand_name: 0}
    by_provider: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))

    def bump(name: str, provider: str):
        totals[name] = totals.get(name, 0) + 1
        by_provider[name][provider] += 1

    for a in analyses:
        if a.brand_detection.detected:
            bump(brand_name, a.provider)
        for d in a.competitors_detected:
            bump(d.brand_name, a.provider)

    all_mentions = sum(totals.values())
    provider_totals: Dict[str, int] = defaultdict(int)
    for counts in by_provider.values():
        for provider, n in counts.items():
            provider_totals[provider] += n

    brands = []
    for name, total in totals.items():
        share = total / all_mentions if all_mentions else 0.0
        brands.append(BrandShare(
            name=name,
            is_self=name == brand_name,
            total_mentions=total,
            share=round(share, 4),
            share_pct=round(share * 100),
            per_provider={p: ProviderShare(mentions=n, share=round(n / provider_totals[p], 4))
                          for p, n in by_provider[name].items()},
        ))
    # stable sort keeps the brand ahead of competitors on ties
    brands.sort(key=lambda b: -b.share)
    rank = next((i + 1 for i, b in enumerate(brands) if b.is_self), 0)
    return ShareOfVoice(brands=brands, your_rank=rank, total_responses=len(analyses))

def _rank_from_position_score(score: float, mentioned: bool) -> Optional[float]:
    if not mentioned:
        return None
    for rank, weight in sorted(POSITION_WEIGHTS.items()):
        if score >= weight - 0.05:
            return float(rank)
    return float(max(POSITION_WEIGHTS) + 1)

def provider_comparison(breakdown: ScoringBreakdown) -> ProviderComparison:
    entries = []
    for ps in breakdown.provider_scores:
        composite = (COMPONENT_WEIGHTS["mention_rate"] * ps.mention_rate
                     + COMPONENT_WEIGHTS["position"] * ps.position_score
                     + COMPONENT_WEIGHTS["intent"] * ps.intent_weighted_score)
        entries.append(ProviderComparisonEntry(
            provider=ps.provider,
            mention_rate=ps.mention_rate,
            mentions_count=ps.mention_count,
            total_queries=ps.total_responses,
            avg_position=_rank_from_position_score(
                ps.position_score / ps.mention_rate if ps.mention_rate else 0.0,
                ps.mention_count > 0),
            sentiment_avg=SENTIMENT_VALUES.get(ps.sentiment, 0.0),
            composite_score=min(100, round(composite * 100)),
        ))
    if not entries:
        return ProviderComparison()

    ranked = sorted(entries, key=lambda e: -e.composite_score)
    strongest, weakest = ranked[0], ranked[-1]
    rates = [e.mention_rate for e in entries]
    spread = max(rates) - min(rates)

    insights = []
    if strongest.composite_score > weakest.composite_score + 10:
        insights.append(f"{strongest.provider} outperforms {weakest.provider} by "
                        f"{strongest.composite_score - weakest.composite_score} points")
    if spread > 0.3:
        insights.append(f"Large mention rate gap between providers "
                        f"({round(max(rates) * 100)}% vs {round(min(rates) * 100)}%)")
    elif spread < 0.1 and len(entries) > 1:
        insights.append("Mention rates are consistent across all providers")
    positive = [e.provider for e in entries if e.sentiment_avg > 0]
    negative = [e.provider for e in entries if e.sentiment_avg < 0]
    if positive and negative:
        insights.append(f"Mixed sentiment: {', '.join(positive)} positive vs "
                        f"{', '.join(negative)} negative")
    silent = [e.provider for e in entries if e.mentions_count == 0]
    if silent and len(silent) < len(entries):
        insights.append(f"Not mentioned by: {', '.join(silent)}")

    return ProviderComparison(
        providers=entries,
        strongest_provider=strongest.provider,
        weakest_provider=weakest.provider,
        consistency_score=round((1 - spread) * 100),
        insights=insights[:MAX_INSIGHTS],
    )
