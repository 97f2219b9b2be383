import hashlib
import hmac

from django.conf import settings
from django.http import HttpRequest


def _normalize_str(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _client_ip(request: HttpRequest) -> str:
    # X-Forwarded-For is client-controlled; gunicorn already resolves the peer.
    return _normalize_str(request.META.get("REMOTE_ADDR"))


def _request_id(request: HttpRequest) -> str:
    request_id = _normalize_str(request.META.get("HTTP_X_REQUEST_ID"))
    if not request_id:
        request_id = _normalize_str(request.headers.get("X-Request-ID"))
    return request_id


def hash_for_log(value: str) -> str:
    """Keyed hash so PII can be correlated across log lines without being stored."""
    return hmac.new(
        key=str(settings.SECRET_KEY).encode("utf-8"),
        msg=value.lower().encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def parse_positive_int(value: object, *, default: int, maximum: int | None = None) -> int:
    raw = _normalize_str(value)
    try:
        parsed = int(raw)
    except ValueError:
        return default
    if parsed < 1:
        return default
    if maximum is not None:
        return min(parsed, maximum)
    return parsed
