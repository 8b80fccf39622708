"""Shared pytest fixtures for quote-intake tests."""

import secrets

import pytest
from datasette.app import Datasette

from datasette_quote_intake.migrations import run_migrations
from quote_intake.kv import AuditLog, KVStore
from quote_intake.models import IntakeDatabase, Quote, QuoteRequest


class FakeClock:
    """Manually advanced stand-in for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_quote_intake.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kv(db_path, clock):
    return KVStore(db_path, clock=clock)


@pytest.fixture
def audit(db_path, clock):
    return AuditLog(db_path, max_entries=50, clock=clock)


@pytest.fixture
def intake_db(db_path):
    return IntakeDatabase(db_path)


@pytest.fixture
def make_request(intake_db):
    """Factory that stores a quote request and returns it."""

    def _make(**overrides) -> QuoteRequest:
        fields = {
            "request_id": secrets.token_hex(8),
            "created_ts": "2025-03-01T09:00:00+00:00",
            "contact_email": "jan@bakkerij-devries.nl",
            "contact_name": "Jan de Vries",
            "company_name": "Bakkerij De Vries",
            "service_type": "website",
            "description": "Nieuwe website met online bestelmodule voor taarten",
            "locale": "nl",
        }
        fields.update(overrides)
        return intake_db.create_request(QuoteRequest(**fields))

    return _make


@pytest.fixture
def make_quote(intake_db):
    """Factory that stores a historical quote and returns it."""

    def _make(quote_id: str, created_ts: str, service_type: str = "website", **overrides) -> Quote:
        fields = {
            "quote_id": quote_id,
            "title": f"Offerte {quote_id}",
            "created_ts": created_ts,
            "service_type": service_type,
            "description": "Website met CMS",
            "total": 2500.0,
            "status": "sent",
        }
        fields.update(overrides)
        return intake_db.add_quote(Quote(**fields))

    return _make


@pytest.fixture
def make_datasette(db_path):
    """Factory for a Datasette instance with plugin settings merged over defaults.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """

    def _make(**overrides) -> Datasette:
        settings = {
            "db_path": str(db_path),
            "base_url": "https://crm.example.nl",
            "captcha": {"min_submit_seconds": 0},
        }
        settings.update(overrides)
        return Datasette(
            [str(db_path)],
            config={"plugins": {"datasette-quote-intake": settings}},
        )

    return _make


@pytest.fixture
def datasette(make_datasette):
    return make_datasette()
