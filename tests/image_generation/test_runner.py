"""Tests for generate_with_retry: single fallback retry, breaker handling."""
from types import SimpleNamespace
from unittest.mock import patch

import pybreaker
import pytest

from app.services.image_generation.base import ImageGenerationError, ImageGenerationRequest
from app.services.image_generation.runner import (
    build_fallback_request,
    generate_with_retry,
    shorten_prompt,
)


def _settings(**kwargs):
    values = {
        "generation_fallback_model": "dall-e-3",
        "generation_fallback_prompt_chars": 20,
        "generation_retry_backoff_seconds": 0,
        "generation_timeout_threshold_seconds": 240,
    }
    values.update(kwargs)
    return SimpleNamespace(**values)


def _breaker(fail_max=5):
    return pybreaker.CircuitBreaker(fail_max=fail_max, reset_timeout=60)


def _timeout():
    return ImageGenerationError("Request timed out.", detail={"timeout": True})


class TestRetryPolicy:
    def test_timeout_retries_once_with_fallback(self, make_provider):
        provider = make_provider(_timeout(), "![img](https://files.test/a.png)")
        request = ImageGenerationRequest(prompt="一只坐在沙发上的橘猫，阳光从窗户照进来，温暖的午后", model="gpt-4o-all")

        response = generate_with_retry(provider, request, _settings(), breaker=_breaker())

        assert response.model == "dall-e-3"
        assert len(provider.requests) == 2
        retry = provider.requests[1]
        assert retry.is_fallback is True
        assert retry.model == "dall-e-3"
        assert len(retry.prompt) <= 20

    def test_non_retriable_error_is_not_retried(self, make_provider):
        error = ImageGenerationError("invalid key", detail={"http_status": 401})
        provider = make_provider(error)

        with pytest.raises(ImageGenerationError) as exc_info:
            generate_with_retry(provider, ImageGenerationRequest(prompt="cat"), _settings(), breaker=_breaker())

        assert len(provider.requests) == 1
        assert exc_info.value.detail["failure_type"] == "unauthorized"
        assert exc_info.value.detail["attempts"] == 1

    def test_fallback_failure_is_final(self, make_provider):
        provider = make_provider(_timeout(), _timeout())

        with pytest.raises(ImageGenerationError) as exc_info:
            generate_with_retry(provider, ImageGenerationRequest(prompt="cat"), _settings(), breaker=_breaker())

        assert len(provider.requests) == 2
        assert exc_info.value.detail["attempts"] == 2
        assert exc_info.value.detail["model"] == "dall-e-3"

    def test_rate_limit_honours_retry_after(self, make_provider):
        error = ImageGenerationError("slow down", detail={"http_status": 429, "retry_after": "3"})
        provider = make_provider(error, "https://files.test/a.png")

        with patch("app.services.image_generation.runner.time.sleep") as sleep_mock:
            generate_with_retry(provider, ImageGenerationRequest(prompt="cat"), _settings(), breaker=_breaker())

        delay = sleep_mock.call_args.args[0]
        assert 3 <= delay <= 4

    def test_cancellation_propagates_untouched(self, make_provider):
        from app.services.image_generation.base import GenerationAborted

        class Stop(GenerationAborted):
            pass

        provider = make_provider(Stop("stop"))
        breaker = pybreaker.CircuitBreaker(fail_max=1, exclude=[GenerationAborted])

        with pytest.raises(Stop):
            generate_with_retry(provider, ImageGenerationRequest(prompt="cat"), _settings(), breaker=breaker)
        assert breaker.current_state == pybreaker.STATE_CLOSED


class TestCircuitBreaker:
    def test_open_breaker_stops_the_retry(self, make_provider):
        provider = make_provider(_timeout(), "https://files.test/a.png")
        breaker = _breaker(fail_max=1)

        with pytest.raises(ImageGenerationError) as exc_info:
            generate_with_retry(provider, ImageGenerationRequest(prompt="cat"), _settings(), breaker=breaker)

        assert len(provider.requests) == 1
        assert exc_info.value.detail["failure_type"] == "circuit_open"


class TestFallbackRequest:
    def test_shorten_prompt_prefers_boundary(self):
        assert shorten_prompt("a red fox, sitting in snow, at dusk", 25) == "a red fox, sitting in"
        assert shorten_prompt("short", 25) == "short"

    def test_build_fallback_request_keeps_image(self):
        request = ImageGenerationRequest(prompt="cat", image_url="https://files.test/in.png", style="吉卜力")
        fallback = build_fallback_request(request, _settings())

        assert fallback.image_url == "https://files.test/in.png"
        assert fallback.style == "吉卜力"
        assert fallback.is_fallback is True
