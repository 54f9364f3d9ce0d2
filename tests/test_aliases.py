import pytest

from mentioned.services.aliases import (deterministic_aliases, build_registry, enrich_registry,
                                        registered_domain, domain_label)

class TestDeterministicAliases:
    def test_domain_style_name(self):
        aliases = deterministic_aliases("Cal.com")
        assert "cal" in aliases
        assert "calcom" in aliases
        assert "cal.com" not in aliases

    def test_spaces_and_last_word(self):
        aliases = deterministic_aliases("Lemon Squeezy")
        assert "lemonsqueezy" in aliases
        assert "squeezy" in aliases

    def test_camel_case_split(self):
        aliases = deterministic_aliases("HubSpot")
        assert "hub spot" in aliases
        assert "hub-spot" in aliases

    def test_short_last_word_is_skipped(self):
        assert "ai" not in deterministic_aliases("Jasper AI")

    def test_plain_name_has_no_aliases(self):
        assert deterministic_aliases("Asana") == []

class TestRegistry:
    def test_brand_and_competitors_registered(self):
        registry = build_registry("Cal.com", ["calcom", "Cal"], ["Lemon Squeezy", "Asana"])
        assert registry["cal.com"] == ["calcom", "cal"]
        assert "lemonsqueezy" in registry["lemon squeezy"]
        assert registry["asana"] == []

    def test_domains(self):
        assert registered_domain("https://www.cal.com/pricing") == "cal.com"
        assert domain_label("https://app.savvycal.com") == "savvycal"

@pytest.mark.asyncio
async def test_enrichment_merges_provider_aliases():
    async def ask(prompt):
        assert "Calendly" in prompt
        return '```json\n{"Calendly": ["calendly.com", "Calendly"]}\n```'

    registry = build_registry("Cal.com", [], ["Calendly"])
    enriched = await enrich_registry(registry, ["Calendly"], ask)
    assert enriched["calendly"] == ["calendly.com"]
    assert registry["calendly"] == []

@pytest.mark.asyncio
async def test_enrichment_keeps_registry_on_bad_json():
    async def ask(prompt):
        return "sorry, I can't help with that"

    registry = build_registry("Cal.com", [], ["Calendly"])
    assert await enrich_registry(registry, ["Calendly"], ask) == registry
