"""Tests for ChatCompletionImageProvider and the provider factory (upstream client mocked)."""
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from app.services.image_generation.base import ImageGenerationError, ImageGenerationRequest
from app.services.image_generation.factory import ImageProviderFactory, resolve_provider_config
from app.services.image_generation.providers.chat_completion import (
    SIZE_SQUARE,
    SIZE_TALL,
    SIZE_WIDE,
    ChatCompletionImageProvider,
    build_messages,
    select_size,
)


def _provider(**config):
    provider = ChatCompletionImageProvider(
        {"api_key": "sk-test", "base_url": "https://relay.test/v1", "model": "gpt-4o-all", **config}
    )
    provider.client = MagicMock()
    return provider


def _completion(text, finish_reason="stop"):
    return SimpleNamespace(
        id="chatcmpl-1",
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason=finish_reason)]
    )


def _upstream_request():
    return httpx.Request("POST", "https://relay.test/v1/chat/completions")


class TestRequestShape:
    @pytest.mark.parametrize(
        "aspect_ratio,prompt,expected",
        [
            ("16:9", "", SIZE_WIDE),
            ("3:4", "", SIZE_TALL),
            ("1:1", "wide landscape", SIZE_SQUARE),
            (None, "a wide landscape", SIZE_WIDE),
            (None, "竖版海报", SIZE_TALL),
            ("bogus", "", SIZE_SQUARE),
        ],
    )
    def test_select_size(self, aspect_ratio, prompt, expected):
        assert select_size(aspect_ratio, prompt) == expected

    def test_text_only_message(self):
        messages = build_messages(ImageGenerationRequest(prompt="一只猫", style="油画"), SIZE_SQUARE)

        assert messages[0]["role"] == "system"
        content = messages[1]["content"]
        assert "一只猫，风格：油画" in content
        assert SIZE_SQUARE in content

    def test_reference_image_becomes_data_url(self):
        request = ImageGenerationRequest(prompt="", style="吉卜力", image_base64="aGVsbG8=")
        content = build_messages(request, SIZE_SQUARE)[1]["content"]

        assert content[0]["type"] == "text"
        assert "吉卜力风格" in content[0]["text"]
        assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="


class TestGenerate:
    def test_returns_reply_text(self):
        provider = _provider()
        provider.client.chat.completions.create.return_value = _completion("![a](https://files.test/a.png)")

        response = provider.generate(ImageGenerationRequest(prompt="cat", aspect_ratio="16:9"))

        assert response.text == "![a](https://files.test/a.png)"
        assert response.model == "gpt-4o-all"
        assert response.finish_reason == "stop"
        assert response.raw_response_sanitized["size"] == SIZE_WIDE
        assert response.generation_id == "chatcmpl-1"
        kwargs = provider.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-all"

    def test_fallback_model_override(self):
        provider = _provider()
        provider.client.chat.completions.create.return_value = _completion("ok")

        response = provider.generate(ImageGenerationRequest(prompt="cat", model="dall-e-3", is_fallback=True))

        assert response.model == "dall-e-3"

    def test_base64_is_redacted_in_sanitized_messages(self):
        provider = _provider()
        provider.client.chat.completions.create.return_value = _completion("ok")

        response = provider.generate(ImageGenerationRequest(prompt="cat", image_base64="aGVsbG8="))

        user_content = response.raw_response_sanitized["messages"][1]["content"]
        assert user_content[1]["image_url"]["url"] == "data:image/jpeg;base64,[REDACTED]"

    def test_streaming_reply_is_joined(self):
        provider = _provider()
        chunks = [
            SimpleNamespace(
                id="chatcmpl-s1",
                choices=[SimpleNamespace(delta=SimpleNamespace(content="![a]("), finish_reason=None)],
            ),
            SimpleNamespace(id="chatcmpl-s1", choices=[]),
            SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="https://files.test/a.png)"), finish_reason="stop")]),
        ]
        provider.client.chat.completions.create.return_value = iter(chunks)

        response = provider.generate(ImageGenerationRequest(prompt="cat", stream=True))

        assert response.text == "![a](https://files.test/a.png)"
        assert response.finish_reason == "stop"
        assert response.generation_id == "chatcmpl-s1"

    def test_timeout_is_flagged(self):
        provider = _provider()
        provider.client.chat.completions.create.side_effect = openai.APITimeoutError(request=_upstream_request())

        with pytest.raises(ImageGenerationError) as exc_info:
            provider.generate(ImageGenerationRequest(prompt="cat"))

        assert exc_info.value.detail["timeout"] is True

    def test_rate_limit_keeps_status_and_retry_after(self):
        provider = _provider()
        response = httpx.Response(429, headers={"retry-after": "7"}, request=_upstream_request())
        provider.client.chat.completions.create.side_effect = openai.RateLimitError(
            "Rate limit reached", response=response, body=None
        )

        with pytest.raises(ImageGenerationError) as exc_info:
            provider.generate(ImageGenerationRequest(prompt="cat"))

        assert exc_info.value.detail["http_status"] == 429
        assert exc_info.value.detail["retry_after"] == "7"

    def test_unconfigured_provider(self):
        provider = ChatCompletionImageProvider({"label": "unconfigured"})

        assert provider.is_available() is False
        with pytest.raises(ImageGenerationError) as exc_info:
            provider.generate(ImageGenerationRequest(prompt="cat"))
        assert exc_info.value.detail["failure_type"] == "configuration"


class TestProviderChain:
    def _settings(self, **kwargs):
        values = {
            "openai_api_key": "",
            "openai_base_url": "https://relay.test/v1",
            "openai_model": "gpt-4o-all",
            "official_openai_api_key": "",
            "official_openai_base_url": "https://api.openai.com/v1",
            "official_openai_model": "gpt-4o",
            "prefer_primary_provider": True,
            "generation_request_timeout": 270.0,
            "generation_max_tokens": 4000,
        }
        values.update(kwargs)
        return SimpleNamespace(**values)

    def test_primary_preferred(self):
        config = resolve_provider_config(self._settings(openai_api_key="sk-1", official_openai_api_key="sk-2"))

        assert config["label"] == "primary"
        assert config["model"] == "gpt-4o-all"
        assert config["timeout"] == 270.0

    def test_official_when_primary_missing(self):
        config = resolve_provider_config(self._settings(official_openai_api_key="sk-2"))

        assert config["label"] == "official"

    def test_official_when_primary_not_preferred(self):
        settings = self._settings(openai_api_key="sk-1", official_openai_api_key="sk-2", prefer_primary_provider=False)

        assert resolve_provider_config(settings)["label"] == "official"

    def test_nothing_configured(self):
        settings = self._settings()

        assert resolve_provider_config(settings) is None
        assert ImageProviderFactory.create_from_settings(settings).is_available() is False

    def test_unknown_provider_name(self):
        with pytest.raises(ValueError):
            ImageProviderFactory.create("nope", {})
