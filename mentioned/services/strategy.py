import json
import logging
from typing import List, Optional, Callable, Awaitable

from pydantic import ValidationError

from mentioned.exceptions import StrategyError
from mentioned.models.schemas import (ProductProfile, ScoringBreakdown, CompetitorSnapshot,
                                      StrategicPlan)
from mentioned.services.aliases import strip_code_fence

logger = logging.getLogger(__name__)

MAX_ACTIONS = 8

STRATEGY_PROMPT = """You are an AI search visibility strategist. A brand was scanned across AI assistants.

Brand: {brand} ({category})
Target buyer: {buyer}
Visibility score: {score}/100
Mention rate: {mention_rate:.0%}
Average list position score: {position:.2f}
Provider scores: {providers}
Competitors mentioned: {competitors}

Write a plan that raises the brand's visibility in AI answers.
Respond ONLY with valid JSON:
{{"executive_summary": "2-3 sentences",
  "actions": [{{"title": "string", "description": "string",
               "impact": "high|medium|low", "effort": "high|medium|low",
               "category": "content|comparison|technical|authority"}}]}}
Give 5 to 8 actions, highest impact first."""

class StrategyGenerator:
    def __init__(self, ask: Callable[[str], Awaitable[Optional[str]]]):
        self.ask = ask

    def build_prompt(self, profile: ProductProfile, breakdown: ScoringBreakdown,
                     competitors: List[CompetitorSnapshot]) -> str:
        mentioned = [f"{c.competitor_name} ({c.mention_count}x)" for c in competitors if c.mentioned]
        return STRATEGY_PROMPT.format(
            brand=profile.brand_name,
            category=profile.category,
            buyer=profile.target_audience,
            score=breakdown.final_score,
            mention_rate=breakdown.mention_rate,
            position=breakdown.position_score,
            providers=", ".join(f"{p.provider}={p.visibility_score}" for p in breakdown.provider_scores) or "none",
            competitors=", ".join(mentioned) or "none",
        )

    async def generate(self, profile: ProductProfile, breakdown: ScoringBreakdown,
                       competitors: List[CompetitorSnapshot]) -> StrategicPlan:
        raw = await self.ask(self.build_prompt(profile, breakdown, competitors))
        if not raw:
            raise StrategyError("strategy provider returned no answer")
        try:
            data = json.loads(strip_code_fence(raw))
            if isinstance(data, dict) and isinstance(data.get("actions"), list):
                data["actions"] = data["actions"][:MAX_ACTIONS]
            plan = StrategicPlan.model_validate(data)
        except (json.JSONDecodeError, ValidationError) as e:
            raise StrategyError(f"strategy plan was not usable: {e}") from e
        logger.info("strategy plan with %d actions for %s", len(plan.actions), profile.brand_name)
        return plan
