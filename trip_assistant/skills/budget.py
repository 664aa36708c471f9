from typing import Any, Dict, Tuple

from trip_assistant.skills.base import SkillRequest

# Share of the daily budget per spending category.
BUDGET_SPLIT: Tuple[Tuple[str, float], ...] = (
    ("lodging", 0.40),
    ("food", 0.25),
    ("transport", 0.15),
    ("activities", 0.20),
)


class BudgetEstimateSkill:
    """Splits a stated total budget into a per-day spending breakdown."""

    name = "budget_estimate"
    intents: Tuple[str, ...] = ("budget_analysis", "travel_planning", "booking_help")

    def __init__(self, currency: str = "USD"):
        self.currency = currency

    def applies(self, request: SkillRequest) -> bool:
        req = request.requirements
        return req.budget is not None and req.duration is not None

    async def run(self, request: SkillRequest) -> Dict[str, Any]:
        req = request.requirements
        days = req.duration.in_days()
        daily = req.budget / days
        return {
            "destination": req.destination,
            "currency": self.currency,
            "total": round(req.budget, 2),
            "days": days,
            "daily": round(daily, 2),
            "breakdown": {category: round(daily * share, 2) for category, share in BUDGET_SPLIT},
        }
