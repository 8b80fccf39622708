"""
Data models and database operations for quote-intake.
"""

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any


class ServiceType(str, Enum):
    """Services a quote can be requested for."""

    WEBSITE = "website"
    CRM_SETUP = "crm_setup"
    MARKETING = "marketing"
    SUPPORT = "support"
    OTHER = "other"


class RequestStatus(str, Enum):
    """Staff-facing lifecycle of a quote request."""

    NEW = "new"
    IN_PROGRESS = "in_progress"
    QUOTED = "quoted"
    CLOSED = "closed"


class Locale(str, Enum):
    """Languages we correspond in."""

    NL = "nl"
    EN = "en"
    ES = "es"


class RejectionReason(str, Enum):
    """Why the abuse guard rejected (or degraded) a submission."""

    HONEYPOT = "honeypot"
    SUBMITTED_TOO_FAST = "submitted_too_fast"
    RATE_LIMITED = "rate_limited"
    CAPTCHA_FAILED = "captcha_failed"
    CAPTCHA_UNCONFIGURED_FAIL_OPEN = "captcha_unconfigured_fail_open"


@dataclass
class SpamCheckOutcome:
    """Result of AbuseGuard.evaluate.

    ``reason`` is set on failure, and also on the fail-open pass when CAPTCHA
    is not configured.
    """

    passed: bool
    reason: RejectionReason | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, reason: RejectionReason | None = None) -> "SpamCheckOutcome":
        return cls(passed=True, reason=reason)

    @classmethod
    def fail(cls, reason: RejectionReason, detail: str | None = None) -> "SpamCheckOutcome":
        return cls(passed=False, reason=reason, detail=detail)


@dataclass
class QuoteRequest:
    """A public quote request."""

    request_id: str
    created_ts: str
    contact_email: str
    contact_name: str
    service_type: str
    description: str
    status: str = RequestStatus.NEW.value
    company_name: str | None = None
    phone: str | None = None
    budget_indication: str | None = None
    locale: str = Locale.NL.value
    updated_ts: str | None = None
    assigned_to: str | None = None
    internal_notes: str | None = None

    def summary(self) -> dict[str, str | None]:
        """Fields the triage analysis and similarity search work from."""
        return {
            "service_type": self.service_type,
            "description": self.description,
            "budget_indication": self.budget_indication,
            "company_name": self.company_name,
        }

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Quote:
    """A historical quote, as needed for comparisons."""

    quote_id: str
    title: str
    created_ts: str
    description: str | None = None
    service_type: str | None = None
    total: float = 0.0
    status: str = "draft"
    request_id: str | None = None
    customer_name: str | None = None
    customer_company: str | None = None
    line_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.quote_id,
            "title": self.title,
            "description": self.description,
            "service_type": self.service_type,
            "total": self.total,
            "status": self.status,
            "created_ts": self.created_ts,
            "customer": (
                {"name": self.customer_name, "company": self.customer_company}
                if self.customer_name or self.customer_company
                else None
            ),
            "line_count": self.line_count,
        }


@dataclass
class SimilarityResult:
    """A comparable quote; ``score`` is None for fallback matches."""

    quote: Quote
    score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**self.quote.to_dict(), "score": self.score}


@dataclass
class SimilarityMatch:
    """Ordered similar quotes plus where they came from ("vector" or "fallback")."""

    source: str
    results: list[SimilarityResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "count": len(self.results),
            "results": [r.to_dict() for r in self.results],
        }


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


class IntakeDatabase:
    """Database operations for quote requests and historical quotes."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Quote requests
    # -------------------------------------------------------------------------

    def create_request(self, request: QuoteRequest) -> QuoteRequest:
        """Insert a new quote request."""
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO quote_requests
                    (request_id, created_ts, contact_email, contact_name, company_name,
                     phone, service_type, description, budget_indication, locale, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    request.request_id,
                    request.created_ts,
                    request.contact_email,
                    request.contact_name,
                    request.company_name,
                    request.phone,
                    request.service_type,
                    request.description,
                    request.budget_indication,
                    request.locale,
                    request.status,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return request

    def get_request(self, request_id: str) -> QuoteRequest | None:
        """Get a single request by ID."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM quote_requests WHERE request_id = ?", (request_id,)
            ).fetchone()
            return QuoteRequest(**dict(row)) if row else None
        finally:
            conn.close()

    def update_request(self, request_id: str, **fields) -> None:
        """Update fields on a quote request; stamps updated_ts."""
        if not fields:
            return

        fields["updated_ts"] = now_iso()
        conn = self._connect()
        try:
            set_clause = ", ".join(f"{k} = ?" for k in fields)
            values = list(fields.values()) + [request_id]
            conn.execute(
                f"UPDATE quote_requests SET {set_clause} WHERE request_id = ?",
                values,
            )
            conn.commit()
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    def add_quote(self, quote: Quote) -> Quote:
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO quotes
                    (quote_id, request_id, title, description, service_type, total,
                     status, customer_name, customer_company, line_count, created_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    quote.quote_id,
                    quote.request_id,
                    quote.title,
                    quote.description,
                    quote.service_type,
                    quote.total,
                    quote.status,
                    quote.customer_name,
                    quote.customer_company,
                    quote.line_count,
                    quote.created_ts,
                ),
            )
            conn.commit()
        finally:
            conn.close()
        return quote

    def get_quotes_by_service_type(self, service_type: str, limit: int = 5) -> list[Quote]:
        """Most recent quotes for a service type, newest first."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT * FROM quotes
                WHERE service_type = ?
                ORDER BY created_ts DESC
                LIMIT ?
                """,
                (service_type, limit),
            )
            return [Quote(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_quotes_by_ids(self, quote_ids: list[str]) -> list[Quote]:
        """Quotes with the given ids (unknown ids are skipped), newest first."""
        if not quote_ids:
            return []

        placeholders = ", ".join("?" for _ in quote_ids)
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"SELECT * FROM quotes WHERE quote_id IN ({placeholders}) "
                "ORDER BY created_ts DESC",
                list(quote_ids),
            )
            return [Quote(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()
