"""
Failure normalization for the generation runner and task processor.
Classifies upstream and transport failures for the retry policy, refunds and
user-facing messages.
"""
from enum import Enum
from typing import Any


class FailureType(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"  # 429
    TRANSPORT_TRANSIENT = "transport_transient"  # 5xx, connection errors
    UNAUTHORIZED = "unauthorized"  # 401/403, invalid key
    QUOTA_EXCEEDED = "quota_exceeded"  # upstream account out of quota
    CLIENT_NON_RETRIABLE = "client_non_retriable"  # other 4xx
    CIRCUIT_OPEN = "circuit_open"
    SOFT_REFUSAL = "soft_refusal"  # HTTP 200 with a refusal in the text
    NO_IMAGE_URL = "no_image_url"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


# Failure types for which one fallback retry is allowed
RETRYABLE_FAILURES = frozenset({
    FailureType.TIMEOUT,
    FailureType.RATE_LIMITED,
    FailureType.TRANSPORT_TRANSIENT,
})

QUOTA_ERROR_CODES = frozenset({
    "insufficient_quota",
    "insufficient_user_quota",
})

AUTH_ERROR_CODES = frozenset({
    "invalid_api_key",
    "invalid_token",
})


def _looks_like_timeout(message: str) -> bool:
    text = message.lower()
    return "timeout" in text or "timed out" in text or "etimedout" in text


def classify_failure(
    http_status: int | None,
    detail: dict[str, Any],
    message: str = "",
    elapsed: float | None = None,
    timeout_threshold: float | None = None,
) -> tuple[FailureType, bool]:
    """
    Classify an upstream failure.
    Returns (failure_type, retry_allowed).
    """
    if detail.get("failure_type"):
        failure_type = FailureType(detail["failure_type"])
        return (failure_type, failure_type in RETRYABLE_FAILURES)

    if detail.get("timeout") or _looks_like_timeout(message):
        return (FailureType.TIMEOUT, True)
    # Any error arriving after the threshold is an apparent timeout
    if elapsed is not None and timeout_threshold is not None and elapsed >= timeout_threshold:
        return (FailureType.TIMEOUT, True)

    error_code = (detail.get("error_code") or "").strip().lower()
    if error_code in QUOTA_ERROR_CODES:
        return (FailureType.QUOTA_EXCEEDED, False)
    if error_code in AUTH_ERROR_CODES:
        return (FailureType.UNAUTHORIZED, False)

    if http_status is not None:
        if http_status == 429:
            return (FailureType.RATE_LIMITED, True)
        if http_status in (401, 403):
            return (FailureType.UNAUTHORIZED, False)
        if http_status in (408, 504):
            return (FailureType.TIMEOUT, True)
        if 500 <= http_status < 600:
            return (FailureType.TRANSPORT_TRANSIENT, True)
        if 400 <= http_status < 500:
            return (FailureType.CLIENT_NON_RETRIABLE, False)

    lowered = message.lower()
    if "rate limit" in lowered:
        return (FailureType.RATE_LIMITED, True)
    if "unauthorized" in lowered or "invalid_api_key" in lowered:
        return (FailureType.UNAUTHORIZED, False)

    # No status and no detail (network error): transient
    return (FailureType.TRANSPORT_TRANSIENT, True)
