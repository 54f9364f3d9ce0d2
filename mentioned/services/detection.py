"""Brand mention detection over a single provider response.

Three stages run in order and the first hit wins:

* regex: the brand as a whole token, case-insensitive (confidence 1.0)
* alias: a registered alias, exact (0.9) or close spelling (0.75)
* fuzzy: normalized Levenshtein similarity against tokens or word windows (0.5-0.7)

The list position of the mention is extracted separately from whichever stage
matched, by looking at the numbered item or bold span that contains it.
"""
import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Iterable

from rapidfuzz.distance import Levenshtein

from mentioned.models.schemas import BrandDetection
from mentioned.services.aliases import AliasRegistry, deterministic_aliases
from mentioned.services.normalizer import clean_text

logger = logging.getLogger(__name__)

REGEX_CONFIDENCE = 1.0
ALIAS_CONFIDENCE = 0.9
FUZZY_ALIAS_CONFIDENCE = 0.75
FUZZY_ALIAS_THRESHOLD = 0.85
FUZZY_ALIAS_MIN_LEN = 5
FUZZY_CONFIDENCE_SCALE = 0.7
FUZZY_MIN_NAME_LEN = 4
FUZZY_MAX_LENGTH_GAP = 0.3
SNIPPET_RADIUS = 80
SENTIMENT_RADIUS = 300

NUMBERED_ITEM = re.compile(r"^\s*(?:#{1,6}\s*)?(?:\*\*|__)?(\d+)[.)]\s")
HEADING = re.compile(r"^\s*#{1,6}\s")
BOLD_SPAN = re.compile(r"(\*\*|__)(.+?)\1", re.S)
# underscores are separators, as in _emphasis_
WORD = re.compile(r"[^\W_]+(?:[.'\-][^\W_]+)*")

# words that sit one edit away from plenty of short brand names
COMMON_WORDS = frozenset("""
about above after again against also always another answer around because
before being below best better between both brand build built business
change check choose clear close could cover create custom daily data
design different does doing during each easy email every example features
first focus follow friendly from full great group growth guide have help
here high however ideal into just keep know large later learn level like
line list make manage many market might model money month more most much
need never next offer often only open option order other over part people
place plan plans point price pricing product project quite rate read real
really right same scale search service set should show simple since small
some something start still such support sure system take team teams than
that their them then there these they thing think this those through time
today tool tools track under until used user users using value very want
well what when where which while will with within without work works
would year your
""".split())

POSITIVE_SIGNALS = (
    "recommend", "highly recommend", "top pick", "best choice", "excellent",
    "outstanding", "leading", "popular choice", "well-regarded", "well-known",
    "trusted", "reliable", "powerful", "robust", "versatile", "intuitive",
    "user-friendly", "standout", "go-to", "first choice", "top-rated",
    "best-in-class", "market leader", "industry leader", "widely used",
    "great option", "strong contender", "ideal for", "perfect for",
    "excels at", "shines in", "highly rated", "worth considering", "solid choice",
)
NEGATIVE_SIGNALS = (
    "not recommend", "wouldn't recommend", "avoid", "lacks", "limited",
    "expensive", "overpriced", "buggy", "unreliable", "clunky", "outdated",
    "steep learning curve", "poor support", "frustrating", "disappointing",
    "inferior", "falls short", "not ideal", "drawback", "downside", "weakness",
    "shortcoming", "better alternatives", "not the best", "hard to use",
    "difficult to", "complicated", "underwhelming", "mediocre", "subpar",
)
HEDGING_SIGNALS = (
    "however", "although", "on the other hand", "that said", "keep in mind",
    "worth noting", "caveat", "depending on", "trade-off", "trade off",
)

def name_pattern(name: str) -> re.Pattern:
    """Whole-token pattern; inner whitespace matches any run of whitespace."""
    words = [re.escape(w) for w in name.strip().split()]
    return re.compile(r"(?<![^\W_])" + r"\s+".join(words) + r"(?![^\W_])", re.I)

def classify_sentiment(window: str) -> str:
    lower = window.lower()
    positive = sum(1 for s in POSITIVE_SIGNALS if s in lower)
    negative = sum(1 for s in NEGATIVE_SIGNALS if s in lower)
    hedging = sum(1 for s in HEDGING_SIGNALS if s in lower)
    if hedging >= 2:
        positive = max(0, positive - 1)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"

@dataclass
class _Match:
    method: str
    confidence: float
    spans: List[Tuple[int, int]]

class DetectionEngine:
    def __init__(self, registry: Optional[AliasRegistry] = None):
        self.registry: AliasRegistry = dict(registry or {})

    def aliases_for(self, brand: str) -> List[str]:
        found = self.registry.get(brand.lower())
        if found is not None:
            return found
        return deterministic_aliases(brand)

    def detect(self, text: str, brand: str, aliases: Optional[Iterable[str]] = None) -> BrandDetection:
        detection, _ = self.analyze(text, brand, aliases)
        return detection

    def detect_all(self, text: str, brands: Iterable[str]) -> List[BrandDetection]:
        return [self.detect(text, b) for b in brands]

    def analyze(self, text: str, brand: str,
                aliases: Optional[Iterable[str]] = None) -> Tuple[BrandDetection, str]:
        """Detection plus the sentiment of the window around the first mention."""
        if not text or not brand or not brand.strip():
            return BrandDetection(brand_name=brand or ""), "neutral"
        alias_list = list(aliases) if aliases is not None else self.aliases_for(brand)
        match = (self._regex_stage(text, brand)
                 or self._alias_stage(text, brand, alias_list)
                 or self._fuzzy_stage(text, brand))
        if match is None:
            return BrandDetection(brand_name=brand), "neutral"

        start, end = match.spans[0]
        detection = BrandDetection(
            brand_name=brand,
            detected=True,
            confidence=match.confidence,
            method=match.method,
            position=extract_position(text, match.spans),
            snippet=clean_text(text[max(0, start - SNIPPET_RADIUS):end + SNIPPET_RADIUS]),
        )
        window = text[max(0, start - SENTIMENT_RADIUS):end + SENTIMENT_RADIUS]
        return detection, classify_sentiment(window)

    def _regex_stage(self, text: str, brand: str) -> Optional[_Match]:
        spans = [m.span() for m in name_pattern(brand).finditer(text)]
        if spans:
            return _Match("regex", REGEX_CONFIDENCE, spans)
        return None

    def _alias_stage(self, text: str, brand: str, aliases: List[str]) -> Optional[_Match]:
        brand_key = brand.strip().lower()
        candidates = [a for a in aliases if a and a.strip().lower() != brand_key]
        for alias in candidates:
            spans = [m.span() for m in name_pattern(alias).finditer(text)]
            if spans:
                return _Match("alias", ALIAS_CONFIDENCE, spans)
        for alias in candidates:
            if len(alias) < FUZZY_ALIAS_MIN_LEN:
                continue
            spans = _similar_windows(text, alias.lower(), FUZZY_ALIAS_THRESHOLD)
            if spans:
                return _Match("alias", FUZZY_ALIAS_CONFIDENCE, [s for s, _ in spans])
        return None

    def _fuzzy_stage(self, text: str, brand: str) -> Optional[_Match]:
        target = brand.strip().lower()
        if len(target) < FUZZY_MIN_NAME_LEN:
            return None
        threshold = 0.8 if len(target) <= 7 else 0.75
        hits = _similar_windows(text, target, threshold)
        if not hits:
            return None
        best = max(sim for _, sim in hits)
        return _Match("fuzzy", round(FUZZY_CONFIDENCE_SCALE * best, 2), [s for s, _ in hits])

def _similar_windows(text: str, target: str, threshold: float) -> List[Tuple[Tuple[int, int], float]]:
    words = list(WORD.finditer(text))
    size = len(target.split())
    hits = []
    for i in range(len(words) - size + 1):
        chunk = words[i:i + size]
        candidate = " ".join(w.group(0).lower() for w in chunk)
        if len(candidate) < 3 or candidate == target:
            continue
        if abs(len(candidate) - len(target)) > FUZZY_MAX_LENGTH_GAP * len(target):
            continue
        if size == 1 and candidate in COMMON_WORDS:
            continue
        sim = Levenshtein.normalized_similarity(candidate, target)
        if sim >= threshold:
            hits.append(((chunk[0].start(), chunk[-1].end()), sim))
    return hits

def extract_position(text: str, spans: List[Tuple[int, int]]) -> Optional[int]:
    """Rank of the list item holding the mention.

    A numbered item anywhere in the text wins over bold spans; bold spans are
    counted within the markdown section that contains them.
    """
    lines = text.split("\n")
    starts = []
    offset = 0
    for line in lines:
        starts.append(offset)
        offset += len(line) + 1

    def line_of(pos: int) -> int:
        lo, hi = 0, len(starts) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if starts[mid] <= pos:
                lo = mid
            else:
                hi = mid - 1
        return lo

    for start, _ in spans:
        idx = line_of(start)
        while idx >= 0 and lines[idx].strip():
            m = NUMBERED_ITEM.match(lines[idx])
            if m:
                return int(m.group(1))
            if HEADING.match(lines[idx]):
                break
            idx -= 1

    bolds = list(BOLD_SPAN.finditer(text))
    if not bolds:
        return None
    section_starts = [starts[i] for i, line in enumerate(lines) if HEADING.match(line)]
    for start, end in spans:
        for b in bolds:
            if b.start() <= start and end <= b.end():
                section = max((s for s in section_starts if s <= b.start()), default=0)
                return sum(1 for o in bolds if section <= o.start() <= b.start())
    return None
