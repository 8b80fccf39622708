"""Tests for the intake orchestrator."""

import json
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from quote_intake.ai import AIProvider
from quote_intake.config import IntakeConfig, RateLimitRule
from quote_intake.errors import AbuseRejection, RequestNotFound, ValidationError
from quote_intake.intake import BackgroundTasks, build_intake, normalize_submission
from quote_intake.models import RejectionReason
from quote_intake.notify import DiscordNotifier

VALID = {
    "service_type": "website",
    "description": "Nieuwe website met online bestelmodule voor taarten",
    "contact_email": "Jan@Bakkerij-DeVries.nl",
    "contact_name": "Jan de Vries",
    "company_name": "Bakkerij De Vries",
}

HEADERS = {"user-agent": "Mozilla/5.0", "accept-language": "nl-NL"}

ANALYSIS = {
    "confidence": 0.8,
    "estimatedBudgetRange": {"min": 2000, "max": 5000, "currency": "EUR"},
    "budgetJustification": "Webshop",
    "complexity": "moderate",
}


def count_requests(db_path) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM quote_requests").fetchone()[0]
    finally:
        conn.close()


def make_provider(answer) -> MagicMock:
    provider = MagicMock(spec=AIProvider)
    provider.name = "anthropic"
    if isinstance(answer, Exception):
        provider.complete = AsyncMock(side_effect=answer)
    else:
        provider.complete = AsyncMock(return_value=answer)
    return provider


@pytest.fixture
def config(db_path):
    return IntakeConfig.from_dict({"db_path": str(db_path)})


@pytest.fixture
def intake(config, clock):
    return build_intake(config, clock=clock)


class TestValidation:
    def test_valid_submission_is_normalized(self):
        fields = normalize_submission({**VALID, "description": "  padded description text  "})
        assert fields["contact_email"] == "jan@bakkerij-devries.nl"
        assert fields["description"] == "padded description text"
        assert fields["locale"] == "nl"

    def test_form_aliases(self):
        fields = normalize_submission(
            {
                "serviceType": "marketing",
                "description": "Nieuwe huisstijl",
                "email": "a@example.nl",
                "contactName": "Anna",
                "companyName": "Anna BV",
            }
        )
        assert fields["service_type"] == "marketing"
        assert fields["contact_email"] == "a@example.nl"
        assert fields["company_name"] == "Anna BV"

    def test_missing_fields_are_listed(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_submission({"service_type": "website"})
        assert set(exc_info.value.field_errors) == {
            "description",
            "contact_email",
            "contact_name",
        }

    @pytest.mark.parametrize(
        "field,value",
        [
            ("contact_email", "not-an-email"),
            ("service_type", "catering"),
            ("locale", "de"),
            ("description", "x" * 5001),
            ("contact_name", 42),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError) as exc_info:
            normalize_submission({**VALID, field: value})
        assert field in exc_info.value.field_errors


class TestSubmit:
    async def test_accepted_submission_is_persisted(self, intake, db_path):
        request = await intake.submit(VALID, HEADERS, "203.0.113.7")

        stored = intake.db.get_request(request.request_id)
        assert stored.contact_email == "jan@bakkerij-devries.nl"
        assert stored.status == "new"
        assert len(request.request_id) == 32
        assert count_requests(db_path) == 1

    async def test_validation_error_stores_nothing(self, intake, db_path):
        with pytest.raises(ValidationError):
            await intake.submit({**VALID, "contact_email": ""}, HEADERS, "203.0.113.7")
        assert count_requests(db_path) == 0

    async def test_honeypot_rejection_is_audited(self, intake, db_path):
        with pytest.raises(AbuseRejection) as exc_info:
            await intake.submit({**VALID, "website": "x"}, HEADERS, "203.0.113.7")

        assert exc_info.value.outcome.reason == RejectionReason.HONEYPOT
        assert "honeypot" not in exc_info.value.public_message
        assert count_requests(db_path) == 0
        entry = intake.audit.recent(kind="abuse_rejected")[0]
        assert entry.payload["reason"] == "honeypot"

    async def test_rate_limit_rejection(self, config, clock, db_path):
        config.rate_limits = [RateLimitRule("quote_request_ip", "ip", 1, 600)]
        intake = build_intake(config, clock=clock)

        await intake.submit(VALID, HEADERS, "203.0.113.7")
        with pytest.raises(AbuseRejection) as exc_info:
            await intake.submit(VALID, HEADERS, "203.0.113.7")

        assert exc_info.value.outcome.reason == RejectionReason.RATE_LIMITED
        assert count_requests(db_path) == 1

    async def test_background_triage_runs_after_persist(self, intake):
        intake.provider = make_provider(json.dumps(ANALYSIS))

        request = await intake.submit(VALID, HEADERS, "203.0.113.7")
        await intake.tasks.drain()

        assert intake.triage.get(request.request_id).complexity == "moderate"
        prompt = intake.provider.complete.await_args.args[0]
        assert VALID["description"] in prompt

    async def test_background_failure_does_not_fail_submission(self, intake):
        intake.provider = make_provider(json.dumps(ANALYSIS))
        discord = MagicMock(spec=DiscordNotifier)
        discord.notify_request_received = AsyncMock(side_effect=RuntimeError("webhook down"))
        intake.discord = discord

        request = await intake.submit(VALID, HEADERS, "203.0.113.7")
        await intake.tasks.drain()

        assert intake.db.get_request(request.request_id) is not None
        assert intake.triage.get(request.request_id) is not None
        entry = intake.audit.recent(kind="background_error")[0]
        assert entry.request_id == request.request_id
        assert entry.payload["task"] == "discord_notification"

    async def test_triage_on_submit_can_be_disabled(self, intake):
        intake.provider = make_provider(json.dumps(ANALYSIS))
        intake.run_triage_on_submit = False

        await intake.submit(VALID, HEADERS, "203.0.113.7")

        assert len(intake.tasks) == 0
        intake.provider.complete.assert_not_called()


class TestFeatures:
    async def test_unknown_request(self, intake):
        with pytest.raises(RequestNotFound):
            await intake.find_similar("nope")
        with pytest.raises(RequestNotFound):
            intake.cached_analysis("nope")

    async def test_analyze_without_provider(self, intake, make_request):
        assert await intake.analyze(make_request().request_id) is None

    async def test_estimate_without_provider_uses_rules(self, intake):
        result = await intake.estimate("website", "Simpele aanpassing van de homepage")
        assert result.source == "rules"


class TestBackgroundTasks:
    async def test_drain_waits_for_tasks(self):
        tasks = BackgroundTasks()
        done = []

        async def work():
            done.append(True)

        tasks.spawn(work(), name="work")
        await tasks.drain()

        assert done == [True]
        assert len(tasks) == 0

    async def test_errors_are_logged_and_audited(self, audit, caplog):
        tasks = BackgroundTasks(audit)

        async def broken():
            raise ValueError("kapot")

        tasks.spawn(broken(), name="broken", request_id="req1")
        await tasks.drain()

        assert "Background task broken failed" in caplog.text
        entry = audit.recent()[0]
        assert entry.kind == "background_error"
        assert entry.message == "broken failed: kapot"
