import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import requests
from django.conf import settings
from django.core.cache import cache

from members.member_validation import is_valid_pincode
from members.views_utils import _normalize_str

logger = logging.getLogger(__name__)

_PINCODE_CACHE_PREFIX = "pincode_lookup:"
_PINCODE_CACHE_TTL_SECONDS = 24 * 60 * 60
_PINCODE_MAX_ATTEMPTS = 3

INVALID_PINCODE_MESSAGE = "Invalid Indian pincode"
LOOKUP_FAILED_MESSAGE = "Failed to validate pincode"


@dataclass(frozen=True)
class PincodeLookupResult:
    is_valid: bool
    city: str = ""
    state: str = ""
    areas: list[str] = field(default_factory=list)
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        return {
            "isValid": payload["is_valid"],
            "city": payload["city"],
            "state": payload["state"],
            "areas": payload["areas"],
            **({"error": payload["error"]} if payload["error"] else {}),
        }


def _result_from_payload(payload: Any) -> PincodeLookupResult:
    # The API answers with a one-element list.
    entry = payload[0] if isinstance(payload, list) and payload else None
    if not isinstance(entry, dict):
        return PincodeLookupResult(is_valid=False, error=INVALID_PINCODE_MESSAGE)

    post_offices = entry.get("PostOffice")
    if _normalize_str(entry.get("Status")) != "Success" or not isinstance(post_offices, list) or not post_offices:
        return PincodeLookupResult(is_valid=False, error=INVALID_PINCODE_MESSAGE)

    offices = [office for office in post_offices if isinstance(office, dict)]
    if not offices:
        return PincodeLookupResult(is_valid=False, error=INVALID_PINCODE_MESSAGE)

    areas: list[str] = []
    for office in offices:
        name = _normalize_str(office.get("Name"))
        if name and name not in areas:
            areas.append(name)

    first = offices[0]
    return PincodeLookupResult(
        is_valid=True,
        city=_normalize_str(first.get("District")),
        state=_normalize_str(first.get("State")),
        areas=areas,
    )


def lookup_pincode(pincode: str, *, timeout_seconds: int | None = None) -> PincodeLookupResult:
    """Resolve an Indian pincode to its district, state and post-office areas.

    Definitive answers are cached for a day; transport failures are not cached.
    """
    code = _normalize_str(pincode)
    if not is_valid_pincode(code):
        return PincodeLookupResult(is_valid=False, error=INVALID_PINCODE_MESSAGE)

    cache_key = f"{_PINCODE_CACHE_PREFIX}{code}"
    cached = cache.get(cache_key)
    if isinstance(cached, PincodeLookupResult):
        return cached

    endpoint = str(settings.PINCODE_LOOKUP_ENDPOINT).rstrip("/")
    timeout = timeout_seconds if timeout_seconds is not None else settings.PINCODE_LOOKUP_TIMEOUT
    payload: Any = None
    fetched = False
    last_error: Exception | None = None
    for attempt in range(1, _PINCODE_MAX_ATTEMPTS + 1):
        try:
            response = requests.get(
                f"{endpoint}/{code}",
                headers={"User-Agent": "mdpva-members/1.0"},
                timeout=timeout,
            )
            response.raise_for_status()
            payload = response.json()
            fetched = True
            break
        except (requests.RequestException, ValueError) as exc:
            last_error = exc
            logger.warning(
                "Pincode lookup attempt failed pincode=%s attempt=%d/%d error=%s",
                code,
                attempt,
                _PINCODE_MAX_ATTEMPTS,
                exc,
            )
            # Client errors are permanent; retrying won't help.
            if isinstance(exc, requests.HTTPError):
                response = exc.response
                if response is not None and 400 <= response.status_code < 500:
                    break

    if not fetched:
        logger.error("Pincode lookup failed pincode=%s error=%s", code, last_error)
        return PincodeLookupResult(is_valid=False, error=LOOKUP_FAILED_MESSAGE)

    result = _result_from_payload(payload)
    cache.set(cache_key, result, timeout=_PINCODE_CACHE_TTL_SECONDS)
    return result
