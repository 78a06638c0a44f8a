import pytest

import insights
from errors import InsightError
from insights import FALLBACK_INSIGHTS, GeminiInsightGenerator, build_prompt, parse_insights
from services import MonthlyStats


def _stats() -> MonthlyStats:
    return MonthlyStats(
        total_income=300_000,
        total_expenses=125_050,
        by_category={"rent": 100_000, "food": 25_050},
        transaction_count=7,
    )


class FakeModel:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error
        self.prompts = []

    def generate_content(self, prompt):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return type("Response", (), {"text": self.text})()


def _generator_with(monkeypatch, model: FakeModel) -> GeminiInsightGenerator:
    monkeypatch.setattr(insights.genai, "configure", lambda **kwargs: None)
    monkeypatch.setattr(insights.genai, "GenerativeModel", lambda **kwargs: model)
    return GeminiInsightGenerator(api_key="test-key", model_name="gemini-test")


def test_prompt_lists_totals_and_categories():
    prompt = build_prompt(_stats(), "March")

    assert "Financial Data for March" in prompt
    assert "Total Income: $3000.00" in prompt
    assert "Total Expenses: $1250.50" in prompt
    assert "Net Income: $1749.50" in prompt
    assert "rent: $1000.00, food: $250.50" in prompt


def test_parse_insights_strips_code_fences():
    text = '```json\n["Cook at home", "Cancel unused subscriptions"]\n```'
    assert parse_insights(text) == ["Cook at home", "Cancel unused subscriptions"]


@pytest.mark.parametrize("text", ["not json", '{"tip": "x"}', "[]", "[1, 2]"])
def test_parse_insights_rejects_unexpected_shapes(text):
    with pytest.raises(InsightError):
        parse_insights(text)


def test_generator_returns_model_insights(monkeypatch):
    model = FakeModel(text='["One", "Two", "Three"]')
    generator = _generator_with(monkeypatch, model)

    assert generator.generate(_stats(), "March") == ["One", "Two", "Three"]
    assert "Financial Data for March" in model.prompts[0]


def test_generator_falls_back_when_model_errors(monkeypatch):
    generator = _generator_with(monkeypatch, FakeModel(error=RuntimeError("quota")))

    assert generator.generate(_stats(), "March") == list(FALLBACK_INSIGHTS)


def test_generator_falls_back_on_garbage(monkeypatch):
    generator = _generator_with(monkeypatch, FakeModel(text="Sure! Here you go"))

    assert generator.generate(_stats(), "March") == list(FALLBACK_INSIGHTS)


def test_generator_without_api_key_uses_fallback():
    generator = GeminiInsightGenerator()
    generator.api_key = None

    result = generator.generate(_stats(), "March")

    assert result == list(FALLBACK_INSIGHTS)
    assert len(result) == 3
