"""
E-mail verification flow for quote requests.

``send`` mails (or, without an e-mail API, logs) a link carrying the
request's current token, at most once per cooldown interval. ``verify``
consumes a token from such a link.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

from jinja2 import Environment, PackageLoader, StrictUndefined, select_autoescape

from .errors import RequestNotFound
from .kv import KVStore
from .models import IntakeDatabase, Locale
from .notify import EmailMessage, EmailNotifier
from .tokens import TokenStore

logger = logging.getLogger(__name__)

RESEND_COOLDOWN_SECONDS = 60

EMAIL_STRINGS: dict[str, dict[str, Any]] = {
    "nl": {
        "subject": "Bevestig uw offerte aanvraag",
        "greeting": "Beste",
        "intro": (
            "Bedankt voor uw offerte aanvraag. Klik op de onderstaande knop om uw "
            "e-mailadres te bevestigen."
        ),
        "button": "E-mail Bevestigen",
        "expiry": "Deze link is 24 uur geldig.",
        "ignore": "Als u deze aanvraag niet heeft ingediend, kunt u deze e-mail negeren.",
        "footer": ["Met vriendelijke groet,", "Het Tesoro Team"],
    },
    "en": {
        "subject": "Confirm your quote request",
        "greeting": "Dear",
        "intro": (
            "Thank you for your quote request. Please click the button below to verify "
            "your email address."
        ),
        "button": "Verify Email",
        "expiry": "This link is valid for 24 hours.",
        "ignore": "If you did not submit this request, you can ignore this email.",
        "footer": ["Best regards,", "The Tesoro Team"],
    },
    "es": {
        "subject": "Confirme su solicitud de presupuesto",
        "greeting": "Estimado/a",
        "intro": (
            "Gracias por su solicitud de presupuesto. Haga clic en el botón de abajo para "
            "verificar su dirección de correo electrónico."
        ),
        "button": "Verificar Email",
        "expiry": "Este enlace es válido durante 24 horas.",
        "ignore": "Si no envió esta solicitud, puede ignorar este correo electrónico.",
        "footer": ["Atentamente,", "El equipo de Tesoro"],
    },
}

_env = Environment(
    loader=PackageLoader("quote_intake", "templates"),
    autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)


def build_verification_url(base_url: str, verify_path: str, token: str) -> str:
    return f"{base_url.rstrip('/')}{verify_path}?{urlencode({'token': token})}"


def render_verification_email(
    to: str,
    locale: str,
    verification_url: str,
    contact_name: str,
    company_name: str | None = None,
) -> EmailMessage:
    """Render subject, HTML and text bodies; unknown locales fall back to Dutch."""
    if locale not in EMAIL_STRINGS:
        locale = Locale.NL.value
    strings = EMAIL_STRINGS[locale]
    context = {
        "t": strings,
        "locale": locale,
        "verification_url": verification_url,
        "contact_name": contact_name,
        "company_name": company_name,
    }
    return EmailMessage(
        to=to,
        subject=strings["subject"],
        html=_env.get_template("email/verification.html").render(context).strip(),
        text=_env.get_template("email/verification.txt").render(context).strip(),
    )


@dataclass
class SendOutcome:
    """What happened on a send attempt.

    ``status`` is one of ``sent``, ``logged`` (no e-mail API configured),
    ``already_verified``, ``cooldown`` or ``failed``. ``verification_url``
    carries the token and stays out of ``to_dict``.
    """

    status: str
    wait_seconds: int = 0
    verification_url: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("sent", "logged", "already_verified")

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status, "success": self.ok}
        if self.status == "cooldown":
            result["wait_seconds"] = self.wait_seconds
        if self.status == "already_verified":
            result["verified"] = True
        return result


class VerificationFlow:
    """Sends verification e-mails and checks verification state."""

    def __init__(
        self,
        db: IntakeDatabase,
        kv: KVStore,
        tokens: TokenStore,
        notifier: EmailNotifier | None,
        base_url: str,
        verify_path: str = "/aanvragen/verify",
        cooldown_seconds: int = RESEND_COOLDOWN_SECONDS,
    ):
        self.db = db
        self.kv = kv
        self.tokens = tokens
        self.notifier = notifier
        self.base_url = base_url
        self.verify_path = verify_path
        self.cooldown_seconds = cooldown_seconds

    def is_verified(self, request_id: str) -> bool:
        return self.tokens.is_verified(request_id)

    def status(self, request_id: str) -> dict[str, Any]:
        """Verification state of a request; raises RequestNotFound."""
        if self.db.get_request(request_id) is None:
            raise RequestNotFound(request_id)
        return {
            "request_id": request_id,
            "verified": self.tokens.is_verified(request_id),
            "resend_available_in": max(
                0, math.ceil(self.kv.ttl_remaining(f"last_sent:{request_id}") or 0)
            ),
        }

    def verify(self, token: str) -> str:
        """Consume ``token``; returns the verified request id or raises TokenError."""
        return self.tokens.consume(token)

    def _claim_send_slot(self, request_id: str) -> int:
        """Claim the cooldown slot; returns 0 on success, else seconds to wait."""
        key = f"last_sent:{request_id}"
        now = self.kv.clock()
        if self.kv.put_if_absent(key, repr(now), ttl_seconds=self.cooldown_seconds):
            return 0
        last_sent = float(self.kv.get(key) or now)
        return max(1, math.ceil(self.cooldown_seconds - (now - last_sent)))

    async def send(self, request_id: str, base_url: str | None = None) -> SendOutcome:
        """Send (or resend) the verification e-mail for ``request_id``."""
        request = self.db.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)

        if self.tokens.is_verified(request_id):
            return SendOutcome("already_verified")

        wait = self._claim_send_slot(request_id)
        if wait:
            return SendOutcome("cooldown", wait_seconds=wait)

        token = self.tokens.create_or_reuse(request_id, request.contact_email)
        url = build_verification_url(base_url or self.base_url, self.verify_path, token)
        message = render_verification_email(
            to=request.contact_email,
            locale=request.locale,
            verification_url=url,
            contact_name=request.contact_name,
            company_name=request.company_name,
        )

        if self.notifier is None:
            logger.info(
                "Verification e-mail (no e-mail API configured)\n"
                f"To: {message.to}\nSubject: {message.subject}\nURL: {url}\n\n{message.text}"
            )
            return SendOutcome("logged", verification_url=url)

        if not await self.notifier.send(message):
            # Undelivered sends do not start a cooldown.
            self.kv.delete(f"last_sent:{request_id}")
            return SendOutcome("failed")

        logger.info(f"Verification e-mail sent for request {request_id}")
        return SendOutcome("sent")
