from trip_assistant.skills.base import Skill, SkillOutcome, SkillRequest, should_dispatch
from trip_assistant.skills.budget import BudgetEstimateSkill
from trip_assistant.skills.weather import WeatherForecastSkill

__all__ = [
    "BudgetEstimateSkill",
    "Skill",
    "SkillOutcome",
    "SkillRequest",
    "WeatherForecastSkill",
    "should_dispatch",
]
