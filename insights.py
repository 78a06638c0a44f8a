import json
import logging
import re
from typing import TYPE_CHECKING, Optional

import google.generativeai as genai

from config import get_settings
from errors import InsightError

if TYPE_CHECKING:  # pragma: no cover
    from services import MonthlyStats


logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = (
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
)

_FENCE_RE = re.compile(r"```(?:json)?\n?")


def _money(cents: int) -> str:
    return f"${cents / 100:.2f}"


def build_prompt(stats: "MonthlyStats", month_label: str) -> str:
    categories = ", ".join(
        f"{category}: {_money(amount)}" for category, amount in stats.by_category.items()
    )
    return f"""
    Analyze this financial data and provide 3 concise, actionable insights.
    Focus on spending patterns and practical advice.
    Keep it friendly and conversational.

    Financial Data for {month_label}:
    - Total Income: {_money(stats.total_income)}
    - Total Expenses: {_money(stats.total_expenses)}
    - Net Income: {_money(stats.net)}
    - Expense Categories: {categories}

    Format the response as a JSON array of strings, like this:
    ["insight 1", "insight 2", "insight 3"]
    """


def parse_insights(text: str) -> list[str]:
    cleaned = _FENCE_RE.sub("", text or "").strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise InsightError("Insight response is not valid JSON") from exc
    if (
        not isinstance(payload, list)
        or not payload
        or not all(isinstance(item, str) for item in payload)
    ):
        raise InsightError("Insight response is not a list of strings")
    return [item.strip() for item in payload]


class GeminiInsightGenerator:
    """Asks Gemini for report insights; any failure yields FALLBACK_INSIGHTS."""

    def __init__(
        self, api_key: Optional[str] = None, model_name: Optional[str] = None
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.gemini_model
        self._model = None

    def _get_model(self):
        if self._model is None:
            if not self.api_key:
                raise InsightError("Gemini API key is not configured")
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(model_name=self.model_name)
        return self._model

    def generate(self, stats: "MonthlyStats", month_label: str) -> list[str]:
        try:
            response = self._get_model().generate_content(
                build_prompt(stats, month_label)
            )
            return parse_insights(response.text)
        except Exception as exc:
            logger.warning(f"insights_fallback: month={month_label} error={exc}")
            return list(FALLBACK_INSIGHTS)
