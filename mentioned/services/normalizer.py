import hashlib
import re
from typing import Optional, List, Iterable

_PUNCT = re.compile(r"[^\w\s]")
_WS = re.compile(r"\s+")

def clean_text(s: Optional[str]) -> Optional[str]:
    if not s:
        return s
    s = _WS.sub(" ", s).strip()
    return s

def unique_keep_order(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for x in items:
        key = x.lower()
        if x and key not in seen:
            out.append(x)
            seen.add(key)
    return out

def normalize_for_hash(text: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace."""
    text = _PUNCT.sub("", text.lower())
    return _WS.sub(" ", text).strip()

def dedupe_key(text: str) -> str:
    return hashlib.md5(normalize_for_hash(text).encode("utf-8")).hexdigest()[:12]

def tokens(text: str, min_len: int = 3) -> set:
    return {t for t in normalize_for_hash(text).split(" ") if len(t) >= min_len}

def jaccard(a: set, b: set) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0
