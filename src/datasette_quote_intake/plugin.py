"""
Datasette plugin exposing the quote-intake JSON API.

Routes live under ``/-/quote-intake/``. Public routes accept anonymous
callers and are CSRF-exempt; the audit log is for staff actors only.
"""

import json
import logging
import weakref
from typing import Any

from datasette import Response, hookimpl
from datasette.utils.asgi import Request

from quote_intake.config import PLUGIN_NAME, IntakeConfig
from quote_intake.errors import AbuseRejection, RequestNotFound, TokenError, ValidationError
from quote_intake.intake import IntakeOrchestrator, build_intake
from quote_intake.models import RejectionReason

logger = logging.getLogger(__name__)

ROUTE_PREFIX = "/-/quote-intake/"

TOKEN_ERROR_STATUS = {
    "not_found": 404,
    "expired": 410,
    "already_consumed": 409,
}

_intakes: "weakref.WeakKeyDictionary[Any, IntakeOrchestrator]" = weakref.WeakKeyDictionary()


# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_plugin_config(datasette) -> IntakeConfig:
    """Get plugin configuration from datasette.yaml."""
    return IntakeConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_intake(datasette) -> IntakeOrchestrator:
    """The orchestrator for this Datasette instance, built on first use."""
    intake = _intakes.get(datasette)
    if intake is None:
        intake = build_intake(get_plugin_config(datasette))
        _intakes[datasette] = intake
    return intake


def ensure_db_exists(datasette) -> None:
    from datasette_quote_intake.migrations import run_migrations

    run_migrations(get_plugin_config(datasette).db_path, verbose=False)


# -----------------------------------------------------------------------------
# Request Helpers
# -----------------------------------------------------------------------------


def is_staff(request: Request) -> bool:
    """Check if the current actor is staff."""
    actor = request.actor
    return actor is not None and actor.get("principal_type") == "staff"


def error_response(message: str, status: int, **extra) -> Response:
    return Response.json({"error": message, **extra}, status=status)


def client_host(request: Request) -> str | None:
    client = request.scope.get("client")
    return client[0] if client else None


async def read_payload(request: Request) -> dict[str, Any]:
    """Request body as a dict, from JSON or form encoding."""
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        body = await request.post_body()
        if not body:
            return {}
        try:
            data = json.loads(body)
        except ValueError as e:
            raise ValidationError({"body": "invalid JSON"}) from e
        if not isinstance(data, dict):
            raise ValidationError({"body": "expected a JSON object"})
        return data
    return dict(await request.post_vars())


# -----------------------------------------------------------------------------
# Submission
# -----------------------------------------------------------------------------


async def submit_request(request: Request, datasette) -> Response:
    """POST /-/quote-intake/requests"""
    if request.method != "POST":
        return error_response("Method not allowed", 405)

    intake = get_intake(datasette)
    try:
        payload = await read_payload(request)
        quote_request = await intake.submit(payload, request.headers, client_host(request))
    except ValidationError as e:
        return error_response("Missing or invalid fields", 400, fields=e.field_errors)
    except AbuseRejection as e:
        status = 429 if e.outcome.reason == RejectionReason.RATE_LIMITED else 400
        return error_response(e.public_message, status)

    return Response.json(
        {"id": quote_request.request_id, "message": "Quote request submitted successfully"},
        status=201,
    )


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------


async def request_verification(request: Request, datasette) -> Response:
    """GET: verification status. POST: send the verification e-mail."""
    request_id = request.url_vars["request_id"]
    intake = get_intake(datasette)

    try:
        if request.method == "POST":
            outcome = await intake.verification.send(request_id)
        else:
            return Response.json(intake.verification.status(request_id))
    except RequestNotFound:
        return error_response("Quote request not found", 404)

    if outcome.status == "cooldown":
        return Response.json(
            {**outcome.to_dict(), "error": f"Please wait {outcome.wait_seconds} seconds"},
            status=429,
        )
    if outcome.status == "failed":
        return error_response("Verification e-mail could not be sent", 502)
    return Response.json(outcome.to_dict())


async def verify_token(request: Request, datasette) -> Response:
    """GET/POST /-/quote-intake/verify?token=..."""
    token = request.args.get("token")
    if not token and request.method == "POST":
        try:
            token = (await read_payload(request)).get("token")
        except ValidationError:
            return error_response("Invalid JSON body", 400)
    if not token or not isinstance(token, str):
        return error_response("Missing token", 400)

    try:
        request_id = get_intake(datasette).verification.verify(token)
    except TokenError as e:
        return error_response(str(e), TOKEN_ERROR_STATUS.get(e.code, 400), code=e.code)

    return Response.json({"verified": True, "request_id": request_id})


# -----------------------------------------------------------------------------
# Triage
# -----------------------------------------------------------------------------


async def request_analysis(request: Request, datasette) -> Response:
    """GET: cached analysis only. POST: compute (or recompute) now."""
    request_id = request.url_vars["request_id"]
    intake = get_intake(datasette)

    try:
        if request.method == "POST":
            if intake.provider is None:
                return error_response("AI analysis not available. Check AI configuration.", 503)
            analysis = await intake.analyze(request_id, force=True)
            if analysis is None:
                return error_response("AI analysis failed", 503)
        else:
            analysis = intake.cached_analysis(request_id)
            if analysis is None:
                return error_response("Analysis not available yet", 404)
    except RequestNotFound:
        return error_response("Quote request not found", 404)

    return Response.json(analysis.to_dict())


async def similar_quotes(request: Request, datasette) -> Response:
    """GET /-/quote-intake/requests/<id>/similar-quotes"""
    try:
        match = await get_intake(datasette).find_similar(request.url_vars["request_id"])
    except RequestNotFound:
        return error_response("Quote request not found", 404)
    return Response.json(match.to_dict())


async def estimate_budget(request: Request, datasette) -> Response:
    """POST /-/quote-intake/estimate"""
    if request.method != "POST":
        return error_response("Method not allowed", 405)

    try:
        payload = await read_payload(request)
    except ValidationError:
        return error_response("Invalid JSON body", 400)

    service_type = payload.get("service_type") or payload.get("serviceType")
    description = payload.get("description")
    if not isinstance(service_type, str) or not isinstance(description, str) or not description:
        return error_response("service_type and description required", 400)

    result = await get_intake(datasette).estimate(service_type, description)
    return Response.json(result.to_dict())


# -----------------------------------------------------------------------------
# Staff
# -----------------------------------------------------------------------------


async def recent_errors(request: Request, datasette) -> Response:
    """GET /-/quote-intake/errors: newest audit log entries."""
    if not is_staff(request):
        return error_response("Unauthorized", 403)

    try:
        limit = max(1, min(int(request.args.get("limit", 100)), 500))
    except ValueError:
        return error_response("limit must be an integer", 400)

    entries = get_intake(datasette).audit.recent(limit=limit, kind=request.args.get("kind"))
    return Response.json({"count": len(entries), "entries": [e.to_dict() for e in entries]})


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/-/quote-intake/requests$", submit_request),
        (r"^/-/quote-intake/requests/(?P<request_id>[^/]+)/verify$", request_verification),
        (r"^/-/quote-intake/requests/(?P<request_id>[^/]+)/analysis$", request_analysis),
        (r"^/-/quote-intake/requests/(?P<request_id>[^/]+)/similar-quotes$", similar_quotes),
        (r"^/-/quote-intake/verify$", verify_token),
        (r"^/-/quote-intake/estimate$", estimate_budget),
        (r"^/-/quote-intake/errors$", recent_errors),
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """Public JSON API: anonymous callers have no page to obtain a token from."""
    if scope.get("path", "").startswith(ROUTE_PREFIX):
        return True
    return None


@hookimpl
def startup(datasette):
    """Apply pending migrations to the configured database."""
    ensure_db_exists(datasette)
