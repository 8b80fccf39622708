"""
Rolling-window rate limiting for public submissions.
"""

import hashlib
import logging
from collections.abc import Mapping

from .kv import KVStore

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-bucket submission counters kept in the shared KV store.

    Each key is counted per window bucket (``floor(now / window)``). The
    counter is created with the bucket's remaining lifetime, so it expires
    on its own when the window rolls over.
    """

    def __init__(self, kv: KVStore):
        self.kv = kv

    def bucket_key(self, key: str, window_seconds: int) -> tuple[str, float]:
        """Return (storage key, seconds left in the current bucket)."""
        now = self.kv.clock()
        bucket = int(now // window_seconds)
        remaining = (bucket + 1) * window_seconds - now
        return f"rate_limit:{key}:{window_seconds}:{bucket}", remaining

    def check_and_increment(self, key: str, window_seconds: int, max_count: int) -> bool:
        """
        Count one submission for ``key``.

        Returns False once ``max_count`` submissions were already counted in
        the current window. Denied attempts do not bump the counter.
        """
        storage_key, remaining = self.bucket_key(key, window_seconds)
        count = self.kv.increment_if_below(storage_key, max_count, remaining)
        if count is None:
            logger.info(f"Rate limit reached for {key} ({max_count}/{window_seconds}s)")
            return False
        return True

    def current_count(self, key: str, window_seconds: int) -> int:
        storage_key, _ = self.bucket_key(key, window_seconds)
        return self.kv.get_counter(storage_key)


def _header(headers: Mapping[str, str], name: str) -> str | None:
    # ASGI header names are lower-case; plain dicts in tests may not be
    value = headers.get(name.lower())
    if value is None:
        value = headers.get(name)
    return value.strip() if value else None


def client_ip(
    headers: Mapping[str, str], fallback: str | None = None, trust_proxy_headers: bool = False
) -> str:
    """
    Client address for rate limiting.

    Proxy headers (CF-Connecting-IP, X-Forwarded-For, X-Real-IP) are only
    honoured with ``trust_proxy_headers``; otherwise any caller could pick
    its own address. Without them the ASGI peer (``fallback``) is used.
    """
    if not trust_proxy_headers:
        return fallback or "unknown"
    ip = _header(headers, "CF-Connecting-IP")
    if ip:
        return ip
    forwarded = _header(headers, "X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    ip = _header(headers, "X-Real-IP")
    if ip:
        return ip
    return fallback or "unknown"


def fingerprint(headers: Mapping[str, str], ip: str) -> str:
    """Coarse client fingerprint from address, user agent and language."""
    user_agent = (_header(headers, "User-Agent") or "unknown")[:50]
    accept_language = (_header(headers, "Accept-Language") or "")[:20]
    combined = f"{ip}-{user_agent}-{accept_language}"
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:32]
