"""
Cloudflare Turnstile verification.

API Documentation: https://developers.cloudflare.com/turnstile/get-started/server-side-validation/
"""

import logging

import httpx

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class TurnstileVerifier:
    """Checks a client challenge token against the Turnstile siteverify endpoint."""

    def __init__(
        self,
        secret_key: str | None,
        verify_url: str = TURNSTILE_VERIFY_URL,
        timeout_seconds: float = 10.0,
    ):
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.timeout = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def verify(self, token: str | None, ip: str | None = None) -> bool:
        """
        Return True if Turnstile accepts ``token``.

        A missing token, a non-success answer, or a transport failure all
        count as a failed challenge.
        """
        if not token:
            logger.info("Turnstile token missing")
            return False

        form = {"secret": self.secret_key or "", "response": token}
        if ip and ip != "unknown":
            form["remoteip"] = ip

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(self.verify_url, data=form)
                response.raise_for_status()
                result = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Turnstile verification unavailable: {e}")
                return False

        if not result.get("success"):
            logger.info(f"Turnstile verification failed: {result.get('error-codes', [])}")
            return False
        return True
