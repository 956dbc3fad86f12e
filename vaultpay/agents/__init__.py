"""
AI Agents Package

Optional spending-insight narration over aggregated figures.
"""

from vaultpay.agents.ai_agents import (
    NOT_ENOUGH_DATA,
    InsightAgent,
    InsightServiceError,
    build_prompt,
    parse_insights,
)

__all__ = [
    "NOT_ENOUGH_DATA",
    "InsightAgent",
    "InsightServiceError",
    "build_prompt",
    "parse_insights",
]
