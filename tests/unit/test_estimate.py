"""Tests for budget estimation."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from quote_intake.ai import AIProvider
from quote_intake.errors import ProviderError
from quote_intake.estimate import (
    AIEstimateStrategy,
    BudgetEstimator,
    RuleBasedEstimateStrategy,
    build_budget_estimator,
)


def make_provider(answer: str | Exception) -> MagicMock:
    provider = MagicMock(spec=AIProvider)
    provider.name = "openai"
    if isinstance(answer, Exception):
        provider.complete = AsyncMock(side_effect=answer)
    else:
        provider.complete = AsyncMock(return_value=answer)
    return provider


class TestRuleBased:
    @pytest.fixture
    def rules(self):
        return RuleBasedEstimateStrategy()

    def test_simple_homepage_change(self, rules):
        estimate = rules.compute("website", "Simpele aanpassing van de homepage")
        assert (estimate.min, estimate.max) == (350, 10500)
        assert estimate.confidence == 0.6
        assert estimate.reasoning == "Schatting op basis van service type en beschrijving keywords"

    def test_base_range_without_keywords(self, rules):
        estimate = rules.compute("crm_setup", "Wij zoeken hulp bij het inrichten van ons CRM")
        assert (estimate.min, estimate.max) == (1000, 5000)
        assert estimate.confidence == 0.5

    def test_high_complexity(self, rules):
        estimate = rules.compute("marketing", "Uitgebreide campagne voor meerdere merken")
        assert (estimate.min, estimate.max) == (375, 4500)
        assert estimate.confidence == 0.6

    def test_low_keywords_override_high(self, rules):
        estimate = rules.compute("website", "Eenvoudige site met een koppeling via api")
        assert (estimate.min, estimate.max) == (350, 10500)

    def test_urgency_multiplier(self, rules):
        estimate = rules.compute("support", "We hebben met spoed hulp nodig bij updates")
        assert (estimate.min, estimate.max) == (90, 2400)

    def test_long_description(self, rules):
        estimate = rules.compute("website", "x" * 501)
        assert (estimate.min, estimate.max) == (550, 16500)
        assert estimate.confidence == 0.6

    def test_confidence_is_capped(self, rules):
        estimate = rules.compute("website", "Maatwerk platform " + "x" * 600)
        assert estimate.confidence <= 0.8

    def test_unknown_service_type(self, rules):
        estimate = rules.compute("other", "Iets heel anders dan de rest hier")
        assert (estimate.min, estimate.max) == (500, 5000)


class TestAIStrategy:
    async def test_valid_answer(self):
        provider = make_provider(
            json.dumps({"min": 1200, "max": 3400.4, "confidence": 0.7, "reasoning": "Webshop"})
        )
        estimate = await AIEstimateStrategy(provider).estimate("website", "Een webshop graag")
        assert (estimate.min, estimate.max) == (1200, 3400)
        assert estimate.confidence == 0.7

    @pytest.mark.parametrize(
        "answer",
        [
            "geen json",
            json.dumps({"min": 1000, "max": 3000}),
            json.dumps({"min": 3000, "max": 1000, "confidence": 0.5, "reasoning": "x"}),
            json.dumps({"min": 1000, "max": 3000, "confidence": 2, "reasoning": "x"}),
            json.dumps({"min": True, "max": 3000, "confidence": 0.5, "reasoning": "x"}),
            ProviderError("rate limited"),
        ],
    )
    async def test_failures_mean_try_next(self, answer):
        strategy = AIEstimateStrategy(make_provider(answer))
        assert await strategy.estimate("website", "Een webshop graag") is None


class TestBudgetEstimator:
    @pytest.mark.parametrize("service_type", ["website", "crm_setup", "marketing", "other"])
    async def test_short_description_gives_no_estimate(self, service_type):
        provider = make_provider("{}")
        result = await build_budget_estimator(provider).estimate(service_type, "Korte tekst")

        assert result.estimate is None
        assert result.reason == "too_short"
        assert result.to_dict() == {
            "estimate": None,
            "message": "Description too short for estimation",
        }
        provider.complete.assert_not_called()

    async def test_unconfigured_provider_uses_rules(self):
        result = await build_budget_estimator(None).estimate(
            "website", "Simpele aanpassing van de homepage"
        )
        assert result.source == "rules"
        assert result.estimate.max == 10500

    async def test_provider_error_falls_back_to_rules(self):
        provider = make_provider(ProviderError("boom"))
        result = await build_budget_estimator(provider).estimate(
            "website", "Simpele aanpassing van de homepage"
        )
        assert result.source == "rules"
        assert (result.estimate.min, result.estimate.max) == (350, 10500)
        provider.complete.assert_awaited_once()

    async def test_unexpected_provider_exception_falls_back_to_rules(self):
        provider = make_provider(RuntimeError("connection reset"))
        result = await build_budget_estimator(provider).estimate(
            "website", "Simpele aanpassing van de homepage"
        )
        assert result.source == "rules"
        assert result.estimate.max == 10500

    async def test_ai_answer_is_preferred(self):
        provider = make_provider(
            json.dumps({"min": 800, "max": 1600, "confidence": 0.75, "reasoning": "Klein werk"})
        )
        result = await build_budget_estimator(provider).estimate(
            "website", "Simpele aanpassing van de homepage"
        )
        assert result.source == "ai"
        assert result.to_dict()["estimate"]["min"] == 800

    async def test_strategies_run_in_order(self):
        first = MagicMock()
        first.source = "first"
        first.estimate = AsyncMock(return_value=None)
        second = RuleBasedEstimateStrategy()

        result = await BudgetEstimator([first, second]).estimate("website", "x" * 30)

        first.estimate.assert_awaited_once()
        assert result.source == "rules"
