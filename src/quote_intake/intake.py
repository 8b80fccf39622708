"""
Entry point for public quote-request submissions.

The synchronous path (validation, abuse guard, persistence) decides the
response. Triage analysis and the team notification run afterwards as
background tasks whose failures are logged and audited, never raised.
"""

import asyncio
import logging
import re
import secrets
import time
from collections.abc import Coroutine, Mapping
from typing import Any

from .abuse import AbuseGuard, Submission
from .ai import AIProvider, build_ai_provider
from .captcha import TurnstileVerifier
from .config import IntakeConfig
from .errors import AbuseRejection, RequestNotFound, ValidationError
from .estimate import BudgetEstimator, EstimateResult, build_budget_estimator
from .kv import AuditLog, Clock, KVStore
from .models import (
    IntakeDatabase,
    Locale,
    QuoteRequest,
    RequestStatus,
    ServiceType,
    SimilarityMatch,
    now_iso,
)
from .notify import DiscordNotifier, build_discord_notifier, build_email_notifier
from .rate_limit import RateLimiter
from .similarity import SimilarityMatcher, build_similarity_matcher, build_vector_index
from .tokens import TokenStore
from .triage import TriageAnalysis, TriageAnalysisCache
from .verification import VerificationFlow

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# field -> max length
REQUIRED_FIELDS = {
    "service_type": 32,
    "description": 5000,
    "contact_email": 254,
    "contact_name": 200,
}
OPTIONAL_FIELDS = {
    "company_name": 200,
    "phone": 50,
    "budget_indication": 100,
    "locale": 8,
}

# Aliases used by the public form
FIELD_ALIASES = {
    "serviceType": "service_type",
    "contactEmail": "contact_email",
    "email": "contact_email",
    "contactName": "contact_name",
    "companyName": "company_name",
    "budgetIndication": "budget_indication",
}


def normalize_submission(payload: Mapping[str, Any], default_locale: str = "nl") -> dict[str, Any]:
    """
    Validate submission fields and return the cleaned values.

    Raises ValidationError listing every problem found.
    """
    values: dict[str, Any] = {}
    for name, value in payload.items():
        key = FIELD_ALIASES.get(name, name)
        if key in REQUIRED_FIELDS or key in OPTIONAL_FIELDS:
            values.setdefault(key, value)

    errors: dict[str, str] = {}
    cleaned: dict[str, Any] = {}

    for name, max_length in {**REQUIRED_FIELDS, **OPTIONAL_FIELDS}.items():
        value = values.get(name)
        if value is not None and not isinstance(value, str):
            errors[name] = "must be a string"
            continue
        value = (value or "").strip()
        if not value:
            if name in REQUIRED_FIELDS:
                errors[name] = "required"
            continue
        if len(value) > max_length:
            errors[name] = f"longer than {max_length} characters"
            continue
        cleaned[name] = value

    email = cleaned.get("contact_email")
    if email is not None:
        if EMAIL_PATTERN.match(email):
            cleaned["contact_email"] = email.lower()
        else:
            errors["contact_email"] = "invalid e-mail address"

    service_type = cleaned.get("service_type")
    if service_type is not None and service_type not in {s.value for s in ServiceType}:
        errors["service_type"] = "unknown service type"

    locale = cleaned.setdefault("locale", default_locale)
    if locale not in {loc.value for loc in Locale}:
        errors["locale"] = "unsupported locale"

    if errors:
        raise ValidationError(errors)
    return cleaned


class BackgroundTasks:
    """Fire-and-forget tasks that are kept referenced until they finish."""

    def __init__(self, audit: AuditLog | None = None):
        self.audit = audit
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(
        self, coro: Coroutine[Any, Any, Any], name: str, request_id: str | None = None
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, name, request_id), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str, request_id: str | None):
        try:
            await coro
        except Exception as e:
            logger.exception(f"Background task {name} failed")
            if self.audit is not None:
                self.audit.append(
                    "background_error",
                    f"{name} failed: {e}",
                    request_id=request_id,
                    payload={"task": name, "error_type": type(e).__name__},
                )

    async def drain(self) -> None:
        """Wait for every pending task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class IntakeOrchestrator:
    """Accepts submissions and serves the triage features built on them."""

    def __init__(
        self,
        db: IntakeDatabase,
        kv: KVStore,
        audit: AuditLog,
        guard: AbuseGuard,
        verification: VerificationFlow,
        triage: TriageAnalysisCache,
        estimator: BudgetEstimator,
        similarity: SimilarityMatcher,
        provider: AIProvider | None = None,
        discord: DiscordNotifier | None = None,
        run_triage_on_submit: bool = True,
        default_locale: str = Locale.NL.value,
        trust_proxy_headers: bool = False,
    ):
        self.db = db
        self.kv = kv
        self.audit = audit
        self.guard = guard
        self.verification = verification
        self.triage = triage
        self.estimator = estimator
        self.similarity = similarity
        self.provider = provider
        self.discord = discord
        self.run_triage_on_submit = run_triage_on_submit
        self.default_locale = default_locale
        self.trust_proxy_headers = trust_proxy_headers
        self.tasks = BackgroundTasks(audit)

    def get_request(self, request_id: str) -> QuoteRequest:
        request = self.db.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        payload: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
        client_host: str | None = None,
    ) -> QuoteRequest:
        """
        Validate, screen and persist a public submission.

        Raises ValidationError or AbuseRejection; nothing is stored in either
        case. Background work is scheduled only after the row is committed.
        """
        fields = normalize_submission(payload, self.default_locale)

        submission = Submission(
            dict(payload), headers or {}, client_host, self.trust_proxy_headers
        )
        outcome = await self.guard.evaluate(submission)
        if not outcome.passed:
            reason = outcome.reason.value if outcome.reason else "unknown"
            logger.warning(f"Rejected submission from {submission.ip}: {reason}")
            self.audit.append(
                "abuse_rejected",
                f"Submission rejected: {reason}",
                payload={"reason": reason, "detail": outcome.detail, "ip": submission.ip},
            )
            raise AbuseRejection(outcome)
        if outcome.reason is not None:
            logger.info(f"Submission accepted in degraded mode: {outcome.reason.value}")

        request = self.db.create_request(
            QuoteRequest(
                request_id=secrets.token_hex(16),
                created_ts=now_iso(),
                status=RequestStatus.NEW.value,
                **fields,
            )
        )
        logger.info(f"Created quote request {request.request_id} ({request.service_type})")

        if self.run_triage_on_submit and self.provider is not None:
            self.tasks.spawn(
                self.triage.get_or_compute(request, self.provider),
                name="triage",
                request_id=request.request_id,
            )
        if self.discord is not None:
            self.tasks.spawn(
                self.discord.notify_request_received(request),
                name="discord_notification",
                request_id=request.request_id,
            )
        return request

    # -------------------------------------------------------------------------
    # Triage features
    # -------------------------------------------------------------------------

    def cached_analysis(self, request_id: str) -> TriageAnalysis | None:
        self.get_request(request_id)
        return self.triage.get(request_id)

    async def analyze(self, request_id: str, force: bool = False) -> TriageAnalysis | None:
        request = self.get_request(request_id)
        return await self.triage.get_or_compute(request, self.provider, force=force)

    async def find_similar(self, request_id: str) -> SimilarityMatch:
        return await self.similarity.find_similar(self.get_request(request_id))

    async def estimate(self, service_type: str, description: str) -> EstimateResult:
        return await self.estimator.estimate(service_type, description)

    def purge_expired(self) -> int:
        return self.kv.purge_expired()


def build_intake(config: IntakeConfig, clock: Clock = time.time) -> IntakeOrchestrator:
    """Wire every component from configuration."""
    db = IntakeDatabase(config.db_path)
    kv = KVStore(config.db_path, clock=clock)
    audit = AuditLog(
        config.db_path,
        max_entries=config.audit_log.max_entries,
        ttl_seconds=config.audit_log.ttl_seconds,
        clock=clock,
    )

    verifier = TurnstileVerifier(
        config.captcha.get_secret_key(),
        verify_url=config.captcha.verify_url,
        timeout_seconds=config.captcha.timeout_seconds,
    )
    guard = AbuseGuard(
        RateLimiter(kv),
        verifier,
        config.rate_limits,
        fail_open_when_unconfigured=config.captcha.fail_open_when_unconfigured,
        min_submit_seconds=config.captcha.min_submit_seconds,
    )

    verification = VerificationFlow(
        db,
        kv,
        TokenStore(kv, ttl_seconds=config.verification.token_ttl_seconds),
        build_email_notifier(config.notifications),
        base_url=config.base_url,
        verify_path=config.verification.verify_path,
        cooldown_seconds=config.verification.resend_cooldown_seconds,
    )

    provider = build_ai_provider(config.llm)
    triage = TriageAnalysisCache(
        kv,
        ttl_days=config.analysis.cache_ttl_days,
        timeout_seconds=config.llm.timeout_seconds,
        max_tokens=config.llm.max_tokens,
        audit=audit,
    )

    return IntakeOrchestrator(
        db=db,
        kv=kv,
        audit=audit,
        guard=guard,
        verification=verification,
        triage=triage,
        estimator=build_budget_estimator(provider, timeout_seconds=config.llm.timeout_seconds),
        similarity=build_similarity_matcher(db, build_vector_index(config.vector), config.vector),
        provider=provider,
        discord=build_discord_notifier(config.notifications),
        run_triage_on_submit=config.analysis.run_on_submit,
        default_locale=config.verification.default_locale,
        trust_proxy_headers=config.trust_proxy_headers,
    )
