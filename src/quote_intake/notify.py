"""
Outbound notifications: transactional e-mail and the team Discord webhook.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from .config import NotificationConfig
from .models import QuoteRequest

logger = logging.getLogger(__name__)

SERVICE_TYPE_LABELS = {
    "website": "Website",
    "crm_setup": "CRM Setup",
    "marketing": "Marketing",
    "support": "Support",
    "other": "Overig",
}

DISCORD_INFO_COLOR = 0x3B82F6


@dataclass
class EmailMessage:
    """A rendered e-mail."""

    to: str
    subject: str
    html: str
    text: str


class EmailNotifier:
    """Sends e-mail through an HTTP e-mail API with a bearer key."""

    def __init__(self, endpoint: str, api_key: str, timeout_seconds: float = 10.0):
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout_seconds

    async def send(self, message: EmailMessage) -> bool:
        """Returns True if the API accepted the message."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    self.endpoint,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={
                        "to": message.to,
                        "subject": message.subject,
                        "html": message.html,
                        "text": message.text,
                    },
                )
            except httpx.RequestError as e:
                logger.error(f"E-mail API unreachable: {e}")
                return False

        if response.status_code >= 400:
            logger.error(f"E-mail API error {response.status_code}: {response.text[:200]}")
            return False
        return True


def build_email_notifier(config: NotificationConfig) -> EmailNotifier | None:
    """An EmailNotifier, or None when no e-mail API is configured."""
    api_key = config.get_email_api_key()
    if not config.email_api_endpoint or not api_key:
        return None
    return EmailNotifier(config.email_api_endpoint, api_key, config.timeout_seconds)


class DiscordNotifier:
    """Posts team notifications to a Discord webhook."""

    def __init__(self, webhook_url: str, app_url: str, timeout_seconds: float = 10.0):
        self.webhook_url = webhook_url
        self.app_url = app_url.rstrip("/")
        self.timeout = timeout_seconds

    def request_received_embed(self, request: QuoteRequest) -> dict:
        description = request.description[:200]
        if len(request.description) > 200:
            description += "..."
        return {
            "title": "Nieuwe Offerte Aanvraag",
            "description": description,
            "color": DISCORD_INFO_COLOR,
            "fields": [
                {"name": "Contactpersoon", "value": request.contact_name, "inline": True},
                {"name": "E-mail", "value": request.contact_email, "inline": True},
                {
                    "name": "Bedrijf",
                    "value": request.company_name or "Niet opgegeven",
                    "inline": True,
                },
                {
                    "name": "Type",
                    "value": SERVICE_TYPE_LABELS.get(request.service_type, request.service_type),
                    "inline": True,
                },
                {
                    "name": "Budget",
                    "value": request.budget_indication or "Niet opgegeven",
                    "inline": True,
                },
            ],
            "url": f"{self.app_url}/aanvragen",
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def notify_request_received(self, request: QuoteRequest) -> bool:
        payload = {"username": "Quote Intake", "embeds": [self.request_received_embed(request)]}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.webhook_url, json=payload)
            except httpx.RequestError as e:
                logger.error(f"Discord webhook unreachable: {e}")
                return False

        if response.status_code >= 400:
            logger.error(f"Discord webhook failed {response.status_code}: {response.text[:200]}")
            return False
        return True


def build_discord_notifier(config: NotificationConfig) -> DiscordNotifier | None:
    webhook_url = config.get_discord_webhook_url()
    if not webhook_url:
        return None
    return DiscordNotifier(webhook_url, config.app_url, config.timeout_seconds)
