"""
Generation runner: one upstream call with at most one fallback retry,
failure classification and structured logging.

The retry only happens for transient failures (timeout, rate limit, network,
5xx). It goes out with a shortened prompt and the configured fallback model,
and is never repeated.
"""
import logging
import random
import time
from typing import Any, Callable

import pybreaker

from app.services.image_generation.base import (
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageGenerationError,
)
from app.services.image_generation.failure_types import (
    FailureType,
    classify_failure,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2
MAX_RETRY_AFTER_SECONDS = 30.0

Invoke = Callable[[ImageGenerationProvider, ImageGenerationRequest], ImageGenerationResponse]


def _default_invoke(provider: ImageGenerationProvider, request: ImageGenerationRequest) -> ImageGenerationResponse:
    return provider.generate(request)


def shorten_prompt(prompt: str, max_chars: int) -> str:
    """Cut the prompt to max_chars, preferring a word or sentence boundary."""
    prompt = (prompt or "").strip()
    if len(prompt) <= max_chars:
        return prompt
    cut = prompt[:max_chars]
    for sep in ("。", ".", "，", ",", " "):
        idx = cut.rfind(sep)
        if idx >= max_chars // 2:
            return cut[:idx].rstrip()
    return cut.rstrip()


def build_fallback_request(request: ImageGenerationRequest, settings: Any) -> ImageGenerationRequest:
    return ImageGenerationRequest(
        prompt=shorten_prompt(request.prompt, settings.generation_fallback_prompt_chars),
        model=settings.generation_fallback_model,
        style=request.style,
        aspect_ratio=request.aspect_ratio,
        size=request.size,
        image_base64=request.image_base64,
        image_url=request.image_url,
        max_tokens=request.max_tokens,
        stream=request.stream,
        is_fallback=True,
    )


def generate_with_retry(
    provider: ImageGenerationProvider,
    request: ImageGenerationRequest,
    settings: Any,
    *,
    invoke: Invoke | None = None,
    breaker: pybreaker.CircuitBreaker | None = None,
) -> ImageGenerationResponse:
    """
    Run the request, retrying once with the fallback request when the failure allows it.
    Raises ImageGenerationError with detail["failure_type"] and detail["attempts"] set.
    Anything else raised by `invoke` (e.g. cancellation) propagates untouched.
    """
    if breaker is None:
        from app.services.circuit_breaker import image_provider_breaker

        breaker = image_provider_breaker
    invoke = invoke or _default_invoke
    backoff_seconds = getattr(settings, "generation_retry_backoff_seconds", 2.0)
    timeout_threshold = getattr(settings, "generation_timeout_threshold_seconds", None)

    current = request
    attempt = 0
    while True:
        attempt += 1
        started = time.monotonic()
        try:
            result = breaker.call(invoke, provider, current)
            if attempt > 1:
                _log_structured(
                    model=result.model,
                    attempt=attempt,
                    success_after_retry=True,
                )
            return result
        except pybreaker.CircuitBreakerError as e:
            cause = e.__context__
            if isinstance(cause, ImageGenerationError):
                error = cause
            else:
                error = ImageGenerationError(
                    "上游服务暂时不可用",
                    detail={"failure_type": FailureType.CIRCUIT_OPEN.value},
                )
        except ImageGenerationError as e:
            error = e

        elapsed = time.monotonic() - started
        detail = error.detail
        failure_type, retry_allowed = classify_failure(
            detail.get("http_status"),
            detail,
            str(error),
            elapsed=elapsed,
            timeout_threshold=timeout_threshold,
        )
        detail["failure_type"] = failure_type.value
        detail["attempts"] = attempt
        detail["model"] = current.model

        _log_structured(
            model=current.model,
            attempt=attempt,
            success_after_retry=False,
            failure_type=failure_type.value,
            retry_allowed=retry_allowed,
            elapsed=round(elapsed, 2),
        )

        if not retry_allowed or attempt >= MAX_ATTEMPTS or current.is_fallback:
            raise error

        delay = backoff_seconds
        if failure_type == FailureType.RATE_LIMITED and detail.get("retry_after"):
            try:
                delay = min(float(detail["retry_after"]), MAX_RETRY_AFTER_SECONDS)
            except (TypeError, ValueError):
                pass
        if delay > 0:
            delay += random.uniform(0, 1)
        current = build_fallback_request(current, settings)
        logger.info(
            "generation_retry_scheduled",
            extra={
                "attempt": attempt,
                "model": current.model,
                "failure_type": failure_type.value,
                "duration_ms": int(delay * 1000),
            },
        )
        time.sleep(delay)


def _log_structured(**kwargs: Any) -> None:
    """Emit one structured log line per attempt."""
    extra = {k: v for k, v in kwargs.items() if v is not None}
    logger.info("generation_attempt_result", extra=extra)
