"""
AI Spending Insights

DESIGN DECISION: The LLM is a NARRATOR, not an ORACLE.

CRITICAL BOUNDARIES:
- CAN: Turn aggregated spending figures into short, readable tips
- CANNOT: Read the ledger, vaults or accounts directly
- CANNOT: Move money or change any state
- MUST: Work only from the InsightInput handed to it

The only data the model ever sees is an InsightInput built by the
reconciliation engine. Correctness of money movement never depends on
anything in this module.
"""

import re
from typing import Any, Optional

import google.generativeai as genai
import structlog
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from vaultpay.audit import AuditLogger, create_correlation_id
from vaultpay.config import GeminiSettings, gemini_settings_or_none
from vaultpay.models.money import format_inr
from vaultpay.models.results import InsightInput


logger = structlog.get_logger(__name__)

NOT_ENOUGH_DATA = "Not enough spending data yet to generate insights. Keep using VaultPay!"

SYSTEM_INSTRUCTION = (
    "You are a helpful financial assistant for the VaultPay app providing "
    "brief, actionable spending insights based on user data."
)

_LIST_MARKER = re.compile(r"^[\d.*\-•)]+\s*")


class InsightServiceError(Exception):
    """The insight model is not configured or did not produce usable output."""
    pass


def build_prompt(data: InsightInput, top: int = 5) -> str:
    """Prompt text built from aggregated figures only."""
    categories = "\n".join(
        f"- {c.category}: {format_inr(c.amount)} ({c.percentage}%)"
        for c in data.spending_by_category[:top]
    )
    vaults = "\n".join(
        f"- {v.vault_name or v.vault_id}: {format_inr(v.amount)} ({v.percentage_of_total}% of total)"
        for v in data.spending_by_vault[:top]
    )
    period = f"{data.period_start:%d %b %Y} - {data.period_end:%d %b %Y}"

    return f"""Analyze the following user spending data from the VaultPay app for the period: {period}.
Total spent: {format_inr(data.total_spent)}.

Spending by Category (Top {top}):
{categories}

Spending by Vault (Top {top}):
{vaults}

Based *only* on the data provided, generate 3 to 5 concise (1-2 sentences each), actionable insights or tips for better money management specific to this user.
Focus on trends, potential savings, or areas needing attention. Frame the tips positively.
Do not invent data. Output a simple bulleted list, one insight per line, with no greetings or filler."""


def parse_insights(text: str) -> list[str]:
    """Split a model reply into insight lines, dropping list markers and fragments."""
    insights = []
    for line in text.splitlines():
        line = _LIST_MARKER.sub("", line.strip()).strip()
        if len(line) > 5:
            insights.append(line)
    return insights


class InsightAgent:
    """
    Generates spending tips from an InsightInput.

    RESPONSIBILITIES:
    - Build a prompt from aggregated figures
    - Call the model, retrying transient failures
    - Return clean lines of text

    BOUNDARIES:
    - NEVER touches storage
    - NEVER invents figures: no spend means a fixed message, no model call
    """

    def __init__(
        self,
        settings: Optional[GeminiSettings] = None,
        audit: Optional[AuditLogger] = None,
        model: Optional[Any] = None,
        retry_attempts: int = 3,
        retry_wait: float = 2.0,
    ):
        """
        Args:
            settings: Gemini configuration; read from the environment if omitted.
            audit: Audit logger for model failures.
            model: A ready model object exposing `generate_content_async`.
                When given, no Gemini configuration is needed.
            retry_attempts: Model calls per insight request.
            retry_wait: Minimum back-off between calls, in seconds.
        """
        self._settings = settings or gemini_settings_or_none()
        self._audit = audit or AuditLogger()
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait
        self._model = model
        if self._model is None and self._settings is not None:
            self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            system_instruction=SYSTEM_INSTRUCTION,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            },
        )

    @property
    def is_configured(self) -> bool:
        return self._model is not None

    async def generate_insights(self, data: InsightInput) -> list[str]:
        """
        Turn aggregated spending into 3-5 short tips.

        Raises:
            InsightServiceError: Model not configured, or still failing
                after retries, or its reply had no usable lines.
        """
        if not data.has_spending:
            logger.info("insights_skipped", reason="no_spending")
            return [NOT_ENOUGH_DATA]

        if not self.is_configured:
            raise InsightServiceError("AI service is not configured (API key missing)")

        correlation_id = create_correlation_id()
        prompt = build_prompt(data)

        try:
            text = await self._generate(prompt)
        except Exception as e:
            logger.warning("insight_generation_failed", error=str(e))
            await self._audit.log_external_service_error(
                service="gemini",
                error_message=str(e),
                correlation_id=correlation_id,
            )
            raise InsightServiceError("Could not generate AI insights at this time.") from e

        insights = parse_insights(text)
        if not insights:
            await self._audit.log_external_service_error(
                service="gemini",
                error_message="Reply could not be parsed into insights",
                correlation_id=correlation_id,
            )
            raise InsightServiceError("AI response could not be parsed into insights.")

        logger.info("insights_generated", count=len(insights))
        return insights

    async def _generate(self, prompt: str) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_wait, min=self._retry_wait, max=10),
            reraise=True,
        ):
            with attempt:
                response = await self._model.generate_content_async(prompt)
                text = (response.text or "").strip()
                if not text:
                    raise InsightServiceError("AI service returned an empty response.")
        return text
