import logging
from typing import List, Dict, Optional, Iterable

from mentioned.models.schemas import CompetitorSnapshot, ResponseAnalysis, utcnow

logger = logging.getLogger(__name__)

NO_POSITION = 99.0

def _trend(count: int, previous: Optional[CompetitorSnapshot]) -> str:
    if previous is None:
        return "new"
    if count > previous.mention_count:
        return "up"
    if count < previous.mention_count:
        return "down"
    return "stable"

def latest_by_competitor(history: Iterable[CompetitorSnapshot]) -> Dict[str, CompetitorSnapshot]:
    latest: Dict[str, CompetitorSnapshot] = {}
    for snap in history:
        key = snap.competitor_name.lower()
        if key not in latest or snap.recorded_at >= latest[key].recorded_at:
            latest[key] = snap
    return latest

def build_snapshots(scan_id: str, brand_id: str, competitors: List[str],
                    analyses: List[ResponseAnalysis],
                    previous: Optional[Dict[str, CompetitorSnapshot]] = None) -> List[CompetitorSnapshot]:
    """One snapshot per tracked competitor, mentioned or not."""
    previous = previous or {}
    recorded_at = utcnow()
    total = len(analyses)
    out = []
    for name in competitors:
        key = name.lower()
        hits = [d for a in analyses for d in a.competitor_detections
                if d.detected and d.brand_name.lower() == key]
        positions = [d.position for d in hits if d.position is not None]
        count = len(hits)
        out.append(CompetitorSnapshot(
            scan_id=scan_id,
            brand_id=brand_id,
            competitor_name=name,
            mentioned=count > 0,
            mention_count=count,
            best_position=min(positions) if positions else None,
            avg_position=round(sum(positions) / len(positions), 2) if positions else NO_POSITION,
            avg_confidence=round(sum(d.confidence for d in hits) / count, 3) if count else 0.0,
            visibility_estimate=min(100, round(count / total * 100)) if total else 0,
            trend=_trend(count, previous.get(key)),
            recorded_at=recorded_at,
        ))
    return out

class CompetitorTracker:
    """Appends competitor snapshots per scan and reads the trend series back."""

    def __init__(self, store):
        self.store = store

    def record(self, scan_id: str, brand_id: str, competitors: List[str],
               analyses: List[ResponseAnalysis]) -> List[CompetitorSnapshot]:
        previous = latest_by_competitor(
            s for s in self.store.competitor_history(brand_id) if s.scan_id != scan_id
        )
        snapshots = build_snapshots(scan_id, brand_id, competitors, analyses, previous)
        self.store.append_competitor_snapshots(snapshots)
        logger.info("recorded %d competitor snapshots for brand %s (%d mentioned)",
                    len(snapshots), brand_id, sum(1 for s in snapshots if s.mentioned))
        return snapshots

    def history(self, brand_id: str) -> List[CompetitorSnapshot]:
        return self.store.competitor_history(brand_id)
