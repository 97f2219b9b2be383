import hashlib
from collections.abc import Sequence

from django.core.cache import cache


def _cache_key(*, scope: str, key_parts: Sequence[str]) -> str:
    payload = "\x1f".join([scope, *[str(part).strip().lower() for part in key_parts]])
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"rate-limit:{scope}:{digest}"


def allow_request(*, scope: str, key_parts: Sequence[str], limit: int, window_seconds: int) -> bool:
    """Fixed-window counter stored in the Django cache.

    Returns False once more than `limit` requests for the same scope and key
    were seen inside the window. Counters expire with the cache TTL, so idle
    keys do not accumulate.
    """
    if limit <= 0:
        return False

    key = _cache_key(scope=scope, key_parts=key_parts)
    cache.add(key, 0, timeout=window_seconds)
    try:
        count = int(cache.incr(key))
    except ValueError:
        # The key expired between add() and incr().
        cache.set(key, 1, timeout=window_seconds)
        count = 1

    # Some backends drop the expiry on incr(); without it the key never resets.
    cache.touch(key, window_seconds)
    return count <= limit


class RateLimiter:
    """Injectable per-scope limiter for views."""

    def __init__(self, *, scope: str, limit: int, window_seconds: int) -> None:
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds

    def allow(self, *key_parts: str) -> bool:
        return allow_request(
            scope=self.scope,
            key_parts=list(key_parts),
            limit=self.limit,
            window_seconds=self.window_seconds,
        )
