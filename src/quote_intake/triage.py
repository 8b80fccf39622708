"""
AI triage analysis of quote requests, cached for 90 days.

A cached analysis is authoritative: ``get_or_compute`` never calls the
provider on a hit unless asked to recompute. Failed computations are never
cached, so the next call retries.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from .ai import AIProvider, parse_json_response
from .errors import ProviderError
from .kv import AuditLog, KVStore
from .models import QuoteRequest, ServiceType, now_iso

logger = logging.getLogger(__name__)

CACHE_TTL_DAYS = 90
COMPLEXITY_LEVELS = ("simple", "moderate", "complex")
URGENCY_LEVELS = ("low", "medium", "high")
SENTIMENTS = ("positive", "neutral", "negative")

TRIAGE_PROMPT = """Je bent een ervaren sales consultant bij een Nederlands webbureau.
Analyseer de onderstaande offerte-aanvraag.

AANVRAAG:
- Service type: {service_type}
- Beschrijving: {description}
- Budget indicatie: {budget}
- Bedrijfsnaam: {company}

DIENSTEN EN PRIJSINDICATIES:
- website: websites, webshops, landingspagina's, redesigns (EUR 500 - 15.000)
- crm_setup: CRM implementatie en configuratie (EUR 1.000 - 5.000)
- marketing: marketingmateriaal, branding, design (EUR 250 - 3.000)
- support: onderhoud en ondersteuning (EUR 75 - 150 per uur)

Antwoord met uitsluitend een JSON object in deze vorm:
{{
  "suggestedServiceTypes": ["website"],
  "confidence": 0.8,
  "estimatedBudgetRange": {{"min": 1000, "max": 3000, "currency": "EUR"}},
  "budgetJustification": "Korte onderbouwing van het budget",
  "improvedDescription": "Duidelijkere versie van de klantbeschrijving",
  "keyRequirements": ["..."],
  "potentialChallenges": ["..."],
  "urgencyLevel": "medium",
  "complexity": "moderate",
  "sentiment": "neutral",
  "suggestedQuestions": ["..."],
  "suggestedApproach": "Aanbevolen aanpak"
}}

Regels:
- suggestedServiceTypes bevat alleen: website, crm_setup, marketing, support
- confidence ligt tussen 0 en 1
- urgencyLevel is low, medium of high
- complexity is simple, moderate of complex
- sentiment is positive, neutral of negative
- alle teksten in het Nederlands
"""


def build_triage_prompt(request: QuoteRequest) -> str:
    return TRIAGE_PROMPT.format(
        service_type=request.service_type,
        description=request.description,
        budget=request.budget_indication or "Niet opgegeven",
        company=request.company_name or "Niet opgegeven",
    )


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"{name} must be a number")
    return float(value)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def _choice(value: Any, choices: tuple[str, ...]) -> str | None:
    return value if value in choices else None


@dataclass
class TriageAnalysis:
    """Structured triage of one quote request."""

    complexity: str
    budget_min: float
    budget_max: float
    confidence: float
    reasoning: str
    provider: str
    processed_at: str
    currency: str = "EUR"
    suggested_service_types: list[str] = field(default_factory=list)
    improved_description: str | None = None
    key_requirements: list[str] = field(default_factory=list)
    potential_challenges: list[str] = field(default_factory=list)
    urgency_level: str | None = None
    sentiment: str | None = None
    suggested_questions: list[str] = field(default_factory=list)
    suggested_approach: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any], provider: str) -> "TriageAnalysis":
        """
        Build from a provider's JSON answer.

        Raises ValueError (or KeyError/TypeError) if the required fields are
        missing or out of range; optional fields are dropped when malformed.
        """
        complexity = data["complexity"]
        if complexity not in COMPLEXITY_LEVELS:
            raise ValueError(f"Unknown complexity: {complexity!r}")

        budget = data["estimatedBudgetRange"]
        budget_min = _number(budget["min"], "estimatedBudgetRange.min")
        budget_max = _number(budget["max"], "estimatedBudgetRange.max")
        if budget_min < 0 or budget_max < budget_min:
            raise ValueError(f"Invalid budget range: {budget_min}-{budget_max}")

        confidence = _number(data["confidence"], "confidence")
        if not 0 <= confidence <= 1:
            raise ValueError(f"Confidence out of range: {confidence}")

        reasoning = data.get("budgetJustification") or data.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            raise ValueError("Missing budget justification")

        service_types = {s.value for s in ServiceType}
        improved = data.get("improvedDescription")
        approach = data.get("suggestedApproach")

        return cls(
            complexity=complexity,
            budget_min=budget_min,
            budget_max=budget_max,
            confidence=confidence,
            reasoning=reasoning.strip(),
            provider=provider,
            processed_at=now_iso(),
            suggested_service_types=[
                s for s in _string_list(data.get("suggestedServiceTypes")) if s in service_types
            ],
            improved_description=improved if isinstance(improved, str) else None,
            key_requirements=_string_list(data.get("keyRequirements")),
            potential_challenges=_string_list(data.get("potentialChallenges")),
            urgency_level=_choice(data.get("urgencyLevel"), URGENCY_LEVELS),
            sentiment=_choice(data.get("sentiment"), SENTIMENTS),
            suggested_questions=_string_list(data.get("suggestedQuestions")),
            suggested_approach=approach if isinstance(approach, str) else None,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriageAnalysis":
        budget = data["estimated_budget_range"]
        return cls(
            complexity=data["complexity"],
            budget_min=budget["min"],
            budget_max=budget["max"],
            currency=budget.get("currency", "EUR"),
            confidence=data["confidence"],
            reasoning=data["reasoning"],
            provider=data["provider"],
            processed_at=data["processed_at"],
            suggested_service_types=data.get("suggested_service_types", []),
            improved_description=data.get("improved_description"),
            key_requirements=data.get("key_requirements", []),
            potential_challenges=data.get("potential_challenges", []),
            urgency_level=data.get("urgency_level"),
            sentiment=data.get("sentiment"),
            suggested_questions=data.get("suggested_questions", []),
            suggested_approach=data.get("suggested_approach"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity,
            "estimated_budget_range": {
                "min": self.budget_min,
                "max": self.budget_max,
                "currency": self.currency,
            },
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "suggested_service_types": self.suggested_service_types,
            "improved_description": self.improved_description,
            "key_requirements": self.key_requirements,
            "potential_challenges": self.potential_challenges,
            "urgency_level": self.urgency_level,
            "sentiment": self.sentiment,
            "suggested_questions": self.suggested_questions,
            "suggested_approach": self.suggested_approach,
            "provider": self.provider,
            "processed_at": self.processed_at,
        }


class TriageAnalysisCache:
    """Compute-or-retrieve triage analyses keyed by request id."""

    def __init__(
        self,
        kv: KVStore,
        ttl_days: int = CACHE_TTL_DAYS,
        timeout_seconds: float = 15.0,
        max_tokens: int = 2048,
        audit: AuditLog | None = None,
    ):
        self.kv = kv
        self.ttl_seconds = ttl_days * 24 * 3600
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.audit = audit

    @staticmethod
    def cache_key(request_id: str) -> str:
        return f"quote_request_ai:{request_id}"

    def get(self, request_id: str) -> TriageAnalysis | None:
        """Cached analysis only; never contacts a provider."""
        data = self.kv.get_json(self.cache_key(request_id))
        if data is None:
            return None
        try:
            return TriageAnalysis.from_dict(data)
        except (KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cached analysis for {request_id}: {e}")
            return None

    def _record_failure(self, request_id: str, message: str) -> None:
        logger.warning(message)
        if self.audit is not None:
            self.audit.append("triage_failed", message, request_id=request_id)

    async def get_or_compute(
        self,
        request: QuoteRequest,
        provider: AIProvider | None,
        force: bool = False,
    ) -> TriageAnalysis | None:
        """
        Return the cached analysis, computing and caching it on a miss.

        Returns None when no provider is configured or the computation fails
        (timeout, provider error, malformed answer). With ``force`` the cache
        is bypassed, but an existing entry is only replaced by a successful
        result.
        """
        if not force:
            cached = self.get(request.request_id)
            if cached is not None:
                logger.debug(f"Triage cache hit for {request.request_id}")
                return cached

        if provider is None:
            logger.info(f"No AI provider configured, skipping triage of {request.request_id}")
            return None

        try:
            text = await asyncio.wait_for(
                provider.complete(build_triage_prompt(request), self.max_tokens),
                timeout=self.timeout_seconds,
            )
            analysis = TriageAnalysis.from_response(parse_json_response(text), provider.name)
        except asyncio.TimeoutError:
            self._record_failure(
                request.request_id,
                f"Triage of {request.request_id} timed out after {self.timeout_seconds}s",
            )
            return None
        except ProviderError as e:
            self._record_failure(request.request_id, f"Triage provider error: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            self._record_failure(
                request.request_id, f"Malformed triage answer for {request.request_id}: {e}"
            )
            return None
        except Exception as e:
            logger.exception(f"Unexpected triage error for {request.request_id}")
            self._record_failure(request.request_id, f"Triage failed: {type(e).__name__}: {e}")
            return None

        self.kv.put_json(
            self.cache_key(request.request_id), analysis.to_dict(), ttl_seconds=self.ttl_seconds
        )
        logger.info(
            f"Triage for {request.request_id}: {analysis.complexity}, "
            f"EUR {analysis.budget_min:.0f}-{analysis.budget_max:.0f}"
        )
        return analysis
