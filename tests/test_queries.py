import pytest

from conftest import make_query
from mentioned.exceptions import ProfileValidationError
from mentioned.models.schemas import ProductProfile, Intent
from mentioned.services.normalizer import dedupe_key
from mentioned.services.queries import (QueryGenerator, QueryValidator, build_query_set, expand,
                                        relevance_score, intent_score, is_question)

@pytest.fixture
def profile():
    return ProductProfile(
        brand_name="Cal.com",
        brand_aliases=["calcom"],
        domain="cal.com",
        category="scheduling software",
        target_audience="startup founders",
        core_problem="Book meetings without endless email back and forth",
        features=["round robin booking", "calendar sync"],
        competitors=["Calendly", "SavvyCal"],
        use_cases=["booking sales demos"],
        unique_selling_points=["open source"],
        buyer_questions=["What scheduling tool do YC startups use for demos?"],
    )

def q(text, intent=Intent.DIRECT_RECOMMENDATION):
    return make_query(text, intent=intent, key=dedupe_key(text))

class TestGenerator:
    def test_user_questions_come_first(self, profile):
        out = QueryGenerator().generate(profile, max_per_intent=4)
        assert out[0].intent == Intent.USER_PROVIDED
        assert out[0].intent_weight == 2.0
        assert [x.order for x in out] == list(range(len(out)))

    def test_per_intent_cap(self, profile):
        out = QueryGenerator().generate(profile, max_per_intent=2)
        per_intent = {}
        for x in out:
            per_intent[x.intent] = per_intent.get(x.intent, 0) + 1
        assert all(n <= 2 for i, n in per_intent.items() if i != Intent.USER_PROVIDED)
        assert Intent.COMPARISON in per_intent

    def test_missing_category_is_rejected(self):
        with pytest.raises(ProfileValidationError) as exc:
            QueryGenerator().generate(ProductProfile(brand_name="Cal.com"), max_per_intent=3)
        assert exc.value.issues[0]["field"] == "category"

    def test_comparison_template_pairs_competitors(self):
        values = {"competitor": ["Calendly", "SavvyCal", "Doodle"], "audience": ["founders"]}
        out = list(expand("Compare {competitor} vs {competitor2} for {audience}.", values))
        assert len(out) == 3
        assert "Compare Calendly vs SavvyCal for founders." in out

    def test_template_with_empty_slot_yields_nothing(self):
        assert list(expand("Tools like {competitor}?", {"competitor": []})) == []

class TestValidator:
    def test_brand_name_never_leaks(self, profile):
        qs = build_query_set(profile, max_queries=40, max_per_intent=6)
        assert qs.queries
        for x in qs.queries:
            assert "cal.com" not in x.text.lower()
            assert "calcom" not in x.text.lower()

    def test_brand_biased_question_is_rejected(self, profile):
        candidates = [q("Is Cal.com better than Calendly?", Intent.USER_PROVIDED)]
        qs = QueryValidator().validate(candidates, profile, max_queries=10)
        assert qs.is_empty
        assert qs.rejected[0].reason == "brand_bias"

    def test_exact_duplicates_removed(self, profile):
        text = "What is the best scheduling software for startup founders?"
        qs = QueryValidator().validate([q(text), q(text.upper())], profile, max_queries=10)
        assert len(qs.queries) == 1
        assert [r.reason for r in qs.rejected] == ["duplicate"]

    def test_near_duplicates_removed(self, profile):
        a = "What is the best scheduling software for startup founders?"
        b = "What is the best scheduling software for startup founders today?"
        qs = QueryValidator().validate([q(a), q(b)], profile, max_queries=10)
        assert [x.text for x in qs.queries] == [a]
        assert qs.rejected[0].reason == "near_duplicate"

    def test_low_relevance_and_intent(self, profile):
        qs = QueryValidator(min_relevance=11).validate(
            [q("What is the best scheduling software for startup founders?")], profile, 10)
        assert qs.is_empty and qs.rejected[0].reason == "low_relevance"

        qs = QueryValidator(min_relevance=1, min_intent=11).validate(
            [q("What is the best scheduling software for startup founders?")], profile, 10)
        assert qs.is_empty and qs.rejected[0].reason == "low_intent"

    def test_user_questions_skip_thresholds(self, profile):
        candidates = [q("Anything for demos?", Intent.USER_PROVIDED)]
        qs = QueryValidator(min_relevance=11, min_intent=11).validate(candidates, profile, 10)
        assert len(qs.queries) == 1

    def test_cap_keeps_user_questions_and_reports_overflow(self, profile):
        qs = build_query_set(profile, max_queries=3, max_per_intent=6)
        assert len(qs.queries) == 3
        assert qs.queries[0].intent == Intent.USER_PROVIDED
        assert any(r.reason == "over_limit" for r in qs.rejected)
        assert qs.total_generated > 3

    def test_scores_are_attached(self, profile):
        qs = build_query_set(profile, max_queries=10, max_per_intent=3)
        for x in qs.queries:
            assert 1 <= x.relevance_score <= 10
            assert 1 <= x.intent_score <= 10

class TestScoringHeuristics:
    def test_relevance_rewards_profile_terms(self, profile):
        on_topic = relevance_score("Best scheduling software for startup founders?", profile)
        off_topic = relevance_score("Good pizza near me", profile)
        assert on_topic > off_topic

    def test_intent_rewards_buying_language(self, profile):
        buying = intent_score("Which scheduling tool should I buy instead of Calendly?", profile)
        idle = intent_score("History of calendars", profile)
        assert buying > idle

    def test_is_question(self):
        assert is_question("Which tool is best?")
        assert is_question("recommend a scheduler")
        assert not is_question("Calendars in history")
