"""Alias registry for the target brand and its competitors.

Aliases are derived deterministically from the brand name (domain style
names, hyphen/space removal, camel case splits, distinctive last words).
Plans with alias enrichment may add provider suggested variants on top.
"""
import json
import logging
import re
import tldextract
from typing import Dict, List, Iterable, Optional, Callable, Awaitable

logger = logging.getLogger(__name__)

# offline extractor, the bundled suffix snapshot is enough for brand names
_extract = tldextract.TLDExtract(suffix_list_urls=())

AliasRegistry = Dict[str, List[str]]

def domain_label(url_or_name: str) -> str:
    ext = _extract(url_or_name)
    return ext.domain.lower() if ext.suffix else ""

def registered_domain(url: str) -> str:
    ext = _extract(url)
    if not ext.suffix:
        return ""
    return f"{ext.domain}.{ext.suffix}".lower()

def deterministic_aliases(brand_name: str) -> List[str]:
    name = brand_name.strip()
    lower = name.lower()
    out: List[str] = []

    def add(alias: str):
        alias = alias.strip()
        if alias and alias != lower and alias not in out:
            out.append(alias)

    # "Cal.com" -> "cal"
    if "." in lower and " " not in lower:
        add(domain_label(lower))
    if "-" in lower or " " in lower:
        add(re.sub(r"[-\s]+", "", lower))
    camel = re.sub(r"([a-z])([A-Z])", r"\1 \2", name).lower()
    if camel != lower:
        add(camel)
        add(camel.replace(" ", "-"))
    parts = [p for p in re.split(r"[\s.\-]+", name) if p]
    if len(parts) > 1 and len(parts[-1]) >= 5:
        add(parts[-1].lower())
    if "." in lower:
        add(lower.replace(".", ""))
    return out

def build_registry(brand_name: str, brand_aliases: Iterable[str],
                   competitors: Iterable[str]) -> AliasRegistry:
    registry: AliasRegistry = {}
    key = brand_name.lower()
    registry[key] = _merge(key, list(brand_aliases) + deterministic_aliases(brand_name))
    for comp in competitors:
        registry[comp.lower()] = deterministic_aliases(comp)
    return registry

def _merge(key: str, aliases: Iterable[str]) -> List[str]:
    merged: List[str] = []
    for a in aliases:
        a = a.lower().strip()
        if a and a != key and a not in merged:
            merged.append(a)
    return merged

ENRICH_PROMPT = """For each software product below, list 1-3 common abbreviations, alternate names, or domain variations that users might use to refer to it. If none exist, return an empty array.

Products: {products}

Respond ONLY with JSON:
{{"ProductName": ["alias1", "alias2"], ...}}"""

def strip_code_fence(raw: str) -> str:
    return re.sub(r"```(?:json)?\s*", "", raw).replace("```", "").strip()

async def enrich_registry(registry: AliasRegistry, names: List[str],
                          ask: Callable[[str], Awaitable[Optional[str]]]) -> AliasRegistry:
    """One batched provider call; the deterministic registry is kept on any failure."""
    if not names:
        return registry
    raw = await ask(ENRICH_PROMPT.format(products=", ".join(names)))
    if not raw:
        logger.warning("alias enrichment returned nothing, using deterministic aliases")
        return registry
    try:
        parsed = json.loads(strip_code_fence(raw))
    except json.JSONDecodeError:
        logger.warning("alias enrichment was not valid JSON, using deterministic aliases")
        return registry
    if not isinstance(parsed, dict):
        return registry
    enriched = dict(registry)
    for name, aliases in parsed.items():
        if not isinstance(aliases, list):
            continue
        key = str(name).lower()
        extra = [str(a) for a in aliases if isinstance(a, str)]
        enriched[key] = _merge(key, enriched.get(key, []) + extra)
    return enriched
