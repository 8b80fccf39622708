"""
Abuse guard for public quote-request submissions.

Checks run cheapest first and stop at the first failure:

1. Honeypot fields must be empty (no external calls).
2. Submission timing, when the form reports when it was opened.
3. Rate limits per IP, fingerprint and e-mail address.
4. Turnstile CAPTCHA, when a secret is configured.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .captcha import TurnstileVerifier
from .config import RateLimitRule
from .models import RejectionReason, SpamCheckOutcome
from .rate_limit import RateLimiter, client_ip, fingerprint

logger = logging.getLogger(__name__)

HONEYPOT_FIELDS = ("website", "url", "fax_number", "company_website", "honeypot")
CAPTCHA_TOKEN_FIELDS = ("captcha_token", "turnstile_token", "cf-turnstile-response")


@dataclass
class Submission:
    """A raw submission plus the request metadata the guard needs."""

    payload: dict[str, Any]
    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None
    trust_proxy_headers: bool = False

    @property
    def ip(self) -> str:
        return client_ip(self.headers, self.client_host, self.trust_proxy_headers)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.headers, self.ip)

    @property
    def email(self) -> str | None:
        value = self.payload.get("contact_email") or self.payload.get("email")
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
        return None

    @property
    def captcha_token(self) -> str | None:
        for name in CAPTCHA_TOKEN_FIELDS:
            value = self.payload.get(name)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


def detect_honeypot(payload: Mapping[str, Any]) -> str | None:
    """Return the name of the first filled honeypot field, if any."""
    for name in HONEYPOT_FIELDS:
        value = payload.get(name)
        if value is not None and str(value).strip() != "":
            return name
    return None


class AbuseGuard:
    """Single pass/fail decision over honeypot, rate limits and CAPTCHA."""

    def __init__(
        self,
        limiter: RateLimiter,
        verifier: TurnstileVerifier,
        rate_limits: list[RateLimitRule],
        fail_open_when_unconfigured: bool = True,
        min_submit_seconds: float = 0.0,
    ):
        self.limiter = limiter
        self.verifier = verifier
        self.rate_limits = rate_limits
        self.fail_open_when_unconfigured = fail_open_when_unconfigured
        self.min_submit_seconds = min_submit_seconds

    def _rate_limit_value(self, rule: RateLimitRule, submission: Submission) -> str | None:
        if rule.key_source == "ip":
            return submission.ip
        if rule.key_source == "fingerprint":
            return submission.fingerprint
        if rule.key_source == "email":
            return submission.email
        logger.warning(f"Unknown rate limit key source: {rule.key_source}")
        return None

    def _submitted_too_fast(self, payload: Mapping[str, Any]) -> bool:
        started = payload.get("form_started_ms")
        if self.min_submit_seconds <= 0 or isinstance(started, bool):
            return False
        if not isinstance(started, int | float):
            return False
        elapsed_ms = self.limiter.kv.clock() * 1000 - started
        return elapsed_ms < self.min_submit_seconds * 1000

    async def evaluate(self, submission: Submission) -> SpamCheckOutcome:
        """Decide whether ``submission`` may be persisted."""
        filled = detect_honeypot(submission.payload)
        if filled:
            logger.warning(f"Honeypot field filled: {filled}")
            return SpamCheckOutcome.fail(RejectionReason.HONEYPOT, detail=filled)

        if self._submitted_too_fast(submission.payload):
            return SpamCheckOutcome.fail(RejectionReason.SUBMITTED_TOO_FAST)

        for rule in self.rate_limits:
            value = self._rate_limit_value(rule, submission)
            if value is None:
                continue
            allowed = self.limiter.check_and_increment(
                f"{rule.name}:{value}", rule.window_seconds, rule.max_count
            )
            if not allowed:
                return SpamCheckOutcome.fail(RejectionReason.RATE_LIMITED, detail=rule.name)

        if not self.verifier.is_configured:
            if self.fail_open_when_unconfigured:
                logger.debug("Turnstile secret not configured, skipping verification")
                return SpamCheckOutcome.ok(RejectionReason.CAPTCHA_UNCONFIGURED_FAIL_OPEN)
            return SpamCheckOutcome.fail(RejectionReason.CAPTCHA_FAILED, detail="unconfigured")

        if not await self.verifier.verify(submission.captcha_token, submission.ip):
            return SpamCheckOutcome.fail(RejectionReason.CAPTCHA_FAILED)

        return SpamCheckOutcome.ok()
