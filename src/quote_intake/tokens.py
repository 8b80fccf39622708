"""
Single-use e-mail verification tokens.

Key layout in the KV store:

- ``verify_token:{token}``      token payload (request id, e-mail, timestamps)
- ``verify_request:{id}``       the current token for a request
- ``verify_consumed:{token}``   consumption marker, claimed exactly once
- ``verified:{id}``             set once any token for the request is consumed

Token payloads outlive their logical expiry by a grace period so an expired
link can be told apart from one that was never issued.
"""

import logging
import secrets

from .errors import TokenAlreadyConsumed, TokenExpired, TokenNotFound
from .kv import KVStore

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 24 * 3600
EXPIRED_GRACE_SECONDS = 7 * 24 * 3600
VERIFIED_TTL_SECONDS = 365 * 24 * 3600


def generate_token() -> str:
    """48 URL-safe characters from the OS CSPRNG."""
    return secrets.token_urlsafe(36)


class TokenStore:
    """Issues, reuses and consumes verification tokens."""

    def __init__(self, kv: KVStore, ttl_seconds: int = TOKEN_TTL_SECONDS):
        self.kv = kv
        self.ttl_seconds = ttl_seconds

    def _payload(self, token: str) -> dict | None:
        return self.kv.get_json(f"verify_token:{token}")

    def _is_current(self, token: str) -> bool:
        payload = self._payload(token)
        if payload is None or payload["expires_ts"] <= self.kv.clock():
            return False
        return self.kv.get(f"verify_consumed:{token}") is None

    def current_token(self, request_id: str) -> str | None:
        """The unconsumed, unexpired token for ``request_id``, if any."""
        token = self.kv.get(f"verify_request:{request_id}")
        if token and self._is_current(token):
            return token
        return None

    def create_or_reuse(self, request_id: str, email: str) -> str:
        """
        Return the current token for ``request_id``, minting one if needed.

        At most one token is current per request: concurrent callers race on
        the ``verify_request`` claim and the loser returns the winner's token.
        """
        existing = self.current_token(request_id)
        if existing:
            return existing

        token = generate_token()
        now = self.kv.clock()
        self.kv.put_json(
            f"verify_token:{token}",
            {
                "request_id": request_id,
                "email": email,
                "created_ts": now,
                "expires_ts": now + self.ttl_seconds,
            },
            ttl_seconds=self.ttl_seconds + EXPIRED_GRACE_SECONDS,
        )

        pointer = f"verify_request:{request_id}"
        stale = self.kv.get(pointer)
        if stale and not self._is_current(stale):
            self.kv.delete(pointer)

        if self.kv.put_if_absent(pointer, token, ttl_seconds=self.ttl_seconds):
            logger.info(f"Issued verification token for request {request_id}")
            return token

        winner = self.current_token(request_id)
        self.kv.delete(f"verify_token:{token}")
        if winner is None:
            # The winner expired or was consumed between the two reads.
            return self.create_or_reuse(request_id, email)
        return winner

    def is_verified(self, request_id: str) -> bool:
        return self.kv.get(f"verified:{request_id}") is not None

    def consume(self, token: str) -> str:
        """
        Mark ``token`` used and return its request id.

        Raises TokenAlreadyConsumed on replay, TokenExpired after the TTL and
        TokenNotFound for tokens that were never issued.
        """
        if self.kv.get(f"verify_consumed:{token}") is not None:
            raise TokenAlreadyConsumed("Verification link was already used")

        payload = self._payload(token)
        if payload is None:
            raise TokenNotFound("Verification link is invalid")
        if payload["expires_ts"] <= self.kv.clock():
            raise TokenExpired("Verification link has expired")

        request_id = payload["request_id"]
        if not self.kv.put_if_absent(
            f"verify_consumed:{token}", request_id, ttl_seconds=VERIFIED_TTL_SECONDS
        ):
            raise TokenAlreadyConsumed("Verification link was already used")

        self.kv.put_json(
            f"verified:{request_id}",
            {"email": payload["email"], "verified_ts": self.kv.clock()},
            ttl_seconds=VERIFIED_TTL_SECONDS,
        )
        if self.kv.get(f"verify_request:{request_id}") == token:
            self.kv.delete(f"verify_request:{request_id}")

        logger.info(f"Verified e-mail for request {request_id}")
        return request_id
