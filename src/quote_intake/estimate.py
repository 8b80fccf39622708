"""
Quick budget estimates for the public request form.

Strategies are tried in order; each returns an Estimate or None to hand over
to the next one. The rule-based strategy always answers, so it goes last.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from .ai import AIProvider, parse_json_response
from .errors import ProviderError

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_LENGTH = 20

SERVICE_BASE_RANGES = {
    "website": (500, 15000),
    "crm_setup": (1000, 5000),
    "marketing": (250, 3000),
    "support": (75, 2000),
}
DEFAULT_BASE_RANGE = (500, 5000)

HIGH_COMPLEXITY_KEYWORDS = (
    "complex",
    "uitgebreid",
    "groot",
    "enterprise",
    "integratie",
    "api",
    "custom",
    "maatwerk",
    "multiple",
    "meerdere",
)
LOW_COMPLEXITY_KEYWORDS = ("simpel", "eenvoudig", "klein", "basic", "standaard", "simple")
URGENCY_KEYWORDS = ("spoed", "urgent", "snel")

MAX_RULE_CONFIDENCE = 0.8
RULES_REASONING = "Schatting op basis van service type en beschrijving keywords"

ESTIMATE_PROMPT = """Je bent prijscalculator bij een Nederlands webbureau. Schat het budget voor dit project.

Service: {service_type}
Beschrijving: {description}

Standaardprijzen:
- Website: EUR 500 - 15.000
- CRM Setup: EUR 1.000 - 5.000
- Marketing: EUR 250 - 3.000
- Support: EUR 75 - 150 per uur

Antwoord met uitsluitend JSON in deze vorm:
{{"min": 1000, "max": 3000, "confidence": 0.7, "reasoning": "Korte uitleg in 1 zin"}}

confidence ligt tussen 0.0 en 1.0."""


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


@dataclass
class Estimate:
    """A budget range in euros."""

    min: int
    max: int
    confidence: float
    reasoning: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "min": self.min,
            "max": self.max,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


@dataclass
class EstimateResult:
    """An estimate and the strategy that produced it, or a reason for none."""

    estimate: Estimate | None
    source: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.estimate is None:
            return {"estimate": None, "message": "Description too short for estimation"}
        return {"estimate": self.estimate.to_dict(), "source": self.source}


class EstimateStrategy(ABC):
    """One way of estimating a budget."""

    source: str = "base"

    @abstractmethod
    async def estimate(self, service_type: str, description: str) -> Estimate | None:
        """Return an estimate, or None to let the next strategy try."""


class RuleBasedEstimateStrategy(EstimateStrategy):
    """Keyword heuristics over a per-service base range."""

    source = "rules"

    def compute(self, service_type: str, description: str) -> Estimate:
        base_min, base_max = SERVICE_BASE_RANGES.get(service_type, DEFAULT_BASE_RANGE)
        text = description.lower()

        multiplier = 1.0
        confidence = 0.5

        if any(word in text for word in HIGH_COMPLEXITY_KEYWORDS):
            multiplier = max(multiplier, 1.5)
            confidence = 0.6
        if any(word in text for word in LOW_COMPLEXITY_KEYWORDS):
            multiplier = min(multiplier, 0.7)
            confidence = 0.6

        if any(word in text for word in URGENCY_KEYWORDS):
            multiplier *= 1.2

        if len(description) > 500:
            multiplier *= 1.1
            confidence += 0.1

        return Estimate(
            min=_round_half_up(base_min * multiplier),
            max=_round_half_up(base_max * multiplier),
            confidence=round(min(confidence, MAX_RULE_CONFIDENCE), 2),
            reasoning=RULES_REASONING,
        )

    async def estimate(self, service_type: str, description: str) -> Estimate:
        return self.compute(service_type, description)


class AIEstimateStrategy(EstimateStrategy):
    """Ask the AI provider for a JSON estimate; any failure means "try next"."""

    source = "ai"

    def __init__(self, provider: AIProvider, timeout_seconds: float = 10.0, max_tokens: int = 256):
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens

    @staticmethod
    def parse(data: dict[str, Any]) -> Estimate:
        values = []
        for name in ("min", "max", "confidence"):
            value = data.get(name)
            if isinstance(value, bool) or not isinstance(value, int | float):
                raise ValueError(f"{name} must be a number")
            values.append(value)
        low, high, confidence = values

        if low < 0 or high < low:
            raise ValueError(f"Invalid range {low}-{high}")
        if not 0 <= confidence <= 1:
            raise ValueError(f"Confidence out of range: {confidence}")

        reasoning = data.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            raise ValueError("Missing reasoning")

        return Estimate(
            min=_round_half_up(low),
            max=_round_half_up(high),
            confidence=float(confidence),
            reasoning=reasoning.strip(),
        )

    async def estimate(self, service_type: str, description: str) -> Estimate | None:
        prompt = ESTIMATE_PROMPT.format(service_type=service_type, description=description)
        try:
            text = await asyncio.wait_for(
                self.provider.complete(prompt, self.max_tokens), timeout=self.timeout_seconds
            )
            return self.parse(parse_json_response(text))
        except asyncio.TimeoutError:
            logger.warning("AI estimate timed out, falling back")
        except ProviderError as e:
            logger.warning(f"AI estimate failed, falling back: {e}")
        except ValueError as e:
            logger.warning(f"Malformed AI estimate, falling back: {e}")
        except Exception:
            logger.exception("Unexpected AI estimate error, falling back")
        return None


class BudgetEstimator:
    """Runs estimate strategies in order until one answers."""

    def __init__(self, strategies: list[EstimateStrategy]):
        self.strategies = strategies

    async def estimate(self, service_type: str, description: str) -> EstimateResult:
        if len(description) < MIN_DESCRIPTION_LENGTH:
            return EstimateResult(estimate=None, reason="too_short")

        for strategy in self.strategies:
            estimate = await strategy.estimate(service_type, description)
            if estimate is not None:
                return EstimateResult(estimate=estimate, source=strategy.source)

        # Only reachable with a strategy list that has no rule-based tail.
        rules = RuleBasedEstimateStrategy()
        return EstimateResult(rules.compute(service_type, description), source=rules.source)


def build_budget_estimator(
    provider: AIProvider | None, timeout_seconds: float = 10.0
) -> BudgetEstimator:
    strategies: list[EstimateStrategy] = []
    if provider is not None:
        strategies.append(AIEstimateStrategy(provider, timeout_seconds=timeout_seconds))
    strategies.append(RuleBasedEstimateStrategy())
    return BudgetEstimator(strategies)
