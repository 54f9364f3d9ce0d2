import pytest

from conftest import make_analysis, make_query
from mentioned.models.schemas import BrandDetection, Intent
from mentioned.services.scoring import (ScoringEngine, position_factor, cross_model_consistency,
                                        competitor_density)

@pytest.fixture
def engine():
    return ScoringEngine()

class TestPositionFactor:
    @pytest.mark.parametrize("position,expected", [(1, 1.0), (2, 0.7), (3, 0.5), (4, 0.3), (5, 0.15)])
    def test_ranked(self, position, expected):
        d = BrandDetection(brand_name="x", detected=True, confidence=1.0, position=position)
        assert position_factor(d) == pytest.approx(expected)

    def test_unplaced_and_missing(self):
        assert position_factor(BrandDetection(brand_name="x", detected=True, confidence=1.0)) == 0.6
        assert position_factor(BrandDetection(brand_name="x")) == 0.0

class TestScoringEngine:
    def test_empty_input(self, engine):
        b = engine.score([], total_queries=0)
        assert b.final_score == 0
        assert b.mention_rate == 0.0
        assert b.coverage == 0.0

    def test_perfect_visibility(self, engine):
        q1, q2 = make_query("q one", key="k1"), make_query("q two", key="k2")
        analyses = [make_analysis(True, p, position=1, query=q)
                    for q in (q1, q2) for p in ("openai", "claude")]
        b = engine.score(analyses, total_queries=2, providers_attempted=2)
        assert b.final_score == 100
        assert b.cross_model_consistency == 1.0
        assert b.coverage == 1.0
        assert [p.provider for p in b.provider_scores] == ["claude", "openai"]

    def test_never_mentioned(self, engine):
        analyses = [make_analysis(False, "openai"), make_analysis(False, "claude")]
        b = engine.score(analyses, total_queries=1, providers_attempted=2)
        assert b.final_score == 0
        assert b.mention_rate == 0.0

    def test_disagreement_lowers_consistency(self, engine):
        q = make_query(key="shared")
        analyses = [make_analysis(True, "openai", query=q), make_analysis(False, "claude", query=q)]
        assert cross_model_consistency(analyses) == pytest.approx(0.6)
        b = engine.score(analyses, total_queries=1, providers_attempted=2)
        # composite 0.35*0.5 + 0.35*0.5 + 0.3*0.5 = 0.5, times 0.6 consistency
        assert b.final_score == 30

    def test_high_weight_intents_count_more(self, engine):
        direct = make_query("direct", Intent.DIRECT_RECOMMENDATION, key="d")
        budget = make_query("budget", Intent.BUDGET_BASED, key="b")
        hit_direct = engine.score([make_analysis(True, query=direct), make_analysis(False, query=budget)], 2)
        hit_budget = engine.score([make_analysis(False, query=direct), make_analysis(True, query=budget)], 2)
        assert hit_direct.mention_rate == hit_budget.mention_rate
        assert hit_direct.intent_weighted_score > hit_budget.intent_weighted_score
        assert hit_direct.final_score > hit_budget.final_score

    def test_coverage_reflects_failed_calls(self, engine):
        b = engine.score([make_analysis(True, "openai")], total_queries=1, providers_attempted=2)
        assert b.coverage == 0.5

    def test_score_bounds(self, engine):
        analyses = [make_analysis(i % 2 == 0, position=i + 1, competitors=i, query=make_query(key=str(i)))
                    for i in range(8)]
        b = engine.score(analyses, total_queries=8, providers_attempted=1)
        assert 0 <= b.final_score <= 100

class TestCompetitorDensity:
    def test_no_competitors(self):
        assert competitor_density([make_analysis(True)]) == 1.0

    def test_scales_with_average_competitors(self):
        assert competitor_density([make_analysis(True, competitors=2)]) == pytest.approx(0.94)

    def test_floor(self):
        assert competitor_density([make_analysis(True, competitors=20)]) == 0.85

def test_provider_scores_report_sentiment():
    analyses = [make_analysis(True, "gemini", sentiment="positive", query=make_query(key="a")),
                make_analysis(True, "gemini", sentiment="positive", query=make_query(key="b")),
                make_analysis(False, "gemini", sentiment="negative", query=make_query(key="c"))]
    [score] = ScoringEngine().provider_scores(analyses)
    assert score.provider == "gemini"
    assert score.mention_count == 2
    assert score.total_responses == 3
    assert score.sentiment == "positive"
