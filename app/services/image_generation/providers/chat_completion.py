"""
Chat-completion image provider (OpenAI-compatible endpoints).
The model is asked to draw and answer with a link; the reply text is returned
as-is and the URL is extracted by the caller.
"""
import logging
import re
import time
from typing import Any

import openai
from openai import OpenAI

from app.services.image_generation.base import (
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageGenerationError,
    sanitize_messages_for_log,
)
from app.utils.metrics import upstream_request_duration_seconds, upstream_requests_total

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "你是一个AI图像生成助手。请根据用户的描述生成图片，"
    "并直接返回图像URL，不要有任何解释文字。"
)
OUTPUT_INSTRUCTION = "请直接生成一张与描述相符的图片，不要包含任何文字说明，只返回一个图片链接。"

SIZE_SQUARE = "1024x1024"
SIZE_WIDE = "1152x896"
SIZE_TALL = "896x1152"

_WIDE_HINTS = ("wide", "landscape", "panorama", "横版", "宽屏", "全景")
_TALL_HINTS = ("tall", "portrait", "vertical", "竖版", "竖屏")
_RATIO_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*[:/xX]\s*(\d+(?:\.\d+)?)\s*$")


def select_size(aspect_ratio: str | None, prompt: str = "") -> str:
    """Pick one of the supported sizes from a W:H ratio, or from prompt hints when no ratio is given."""
    if aspect_ratio:
        match = _RATIO_RE.match(aspect_ratio)
        if match:
            width, height = float(match.group(1)), float(match.group(2))
            if height > 0:
                ratio = width / height
                if ratio >= 1.3:
                    return SIZE_WIDE
                if ratio <= 0.8:
                    return SIZE_TALL
                return SIZE_SQUARE
    lowered = (prompt or "").lower()
    if any(hint in lowered for hint in _WIDE_HINTS):
        return SIZE_WIDE
    if any(hint in lowered for hint in _TALL_HINTS):
        return SIZE_TALL
    return SIZE_SQUARE


def build_prompt_text(request: ImageGenerationRequest, size: str) -> str:
    prompt = (request.prompt or "").strip()
    style = (request.style or "").strip()
    if prompt and style:
        text = f"{prompt}，风格：{style}"
    elif prompt:
        text = prompt
    else:
        text = f"请将这张图片转换为{style}风格"
    return f"{text}\n图片尺寸：{size}\n{OUTPUT_INSTRUCTION}"


def _image_reference(request: ImageGenerationRequest) -> str | None:
    if request.image_url:
        return request.image_url
    if request.image_base64:
        data = request.image_base64.strip()
        if data.startswith("data:"):
            return data
        return f"data:image/jpeg;base64,{data}"
    return None


def build_messages(request: ImageGenerationRequest, size: str) -> list[dict[str, Any]]:
    text = build_prompt_text(request, size)
    image_ref = _image_reference(request)
    if image_ref:
        user_content: Any = [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": image_ref}},
        ]
    else:
        user_content = text
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_content},
    ]


def _error_detail(exc: Exception) -> dict[str, Any]:
    detail: dict[str, Any] = {"error_type": type(exc).__name__}
    if isinstance(exc, openai.APITimeoutError):
        detail["timeout"] = True
        return detail
    code = getattr(exc, "code", None)
    if code:
        detail["error_code"] = str(code)
    if isinstance(exc, openai.APIStatusError):
        detail["http_status"] = exc.status_code
        retry_after = exc.response.headers.get("retry-after") if exc.response is not None else None
        if retry_after:
            detail["retry_after"] = retry_after
    return detail


class ChatCompletionImageProvider(ImageGenerationProvider):
    """Image generation through an OpenAI-compatible chat completions endpoint."""

    name = "chat_completion"

    def __init__(self, config: dict):
        super().__init__(config)
        self.api_key = config.get("api_key")
        self.base_url = config.get("base_url")
        self.model_name = config.get("model")
        self.timeout = config.get("timeout", 270.0)
        self.max_tokens = config.get("max_tokens", 4000)
        self.label = config.get("label", self.name)

        if self.api_key:
            # Retries are owned by the runner
            self.client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url or None,
                timeout=self.timeout,
                max_retries=0,
            )
        else:
            self.client = None

    def is_available(self) -> bool:
        return bool(self.api_key and self.client)

    def generate(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        if not self.is_available():
            raise ImageGenerationError(
                "Image provider not configured",
                detail={"failure_type": "configuration"},
            )

        model = request.model or self.model_name
        size = request.size or select_size(request.aspect_ratio, request.prompt)
        messages = build_messages(request, size)
        logger.debug(
            "chat_generation_request",
            extra={"model": model, "attempt": 2 if request.is_fallback else 1},
        )

        started = time.monotonic()
        try:
            if request.stream:
                text, finish_reason, generation_id = self._complete_streaming(model, messages, request)
            else:
                text, finish_reason, generation_id = self._complete(model, messages, request)
        except openai.OpenAIError as e:
            elapsed = time.monotonic() - started
            upstream_requests_total.labels(status="error").inc()
            upstream_request_duration_seconds.labels(model=model).observe(elapsed)
            detail = _error_detail(e)
            detail["elapsed"] = round(elapsed, 2)
            raise ImageGenerationError(str(e) or type(e).__name__, detail=detail) from e

        elapsed = time.monotonic() - started
        upstream_requests_total.labels(status="ok").inc()
        upstream_request_duration_seconds.labels(model=model).observe(elapsed)

        return ImageGenerationResponse(
            text=text,
            model=model,
            provider=self.label,
            elapsed=elapsed,
            finish_reason=finish_reason,
            generation_id=generation_id,
            raw_response_sanitized={
                "messages": sanitize_messages_for_log(messages),
                "size": size,
                "text_length": len(text),
            },
        )

    def _complete(
        self, model: str, messages: list[dict], request: ImageGenerationRequest
    ) -> tuple[str, str | None, str | None]:
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=request.max_tokens or self.max_tokens,
        )
        generation_id = getattr(response, "id", None)
        if not response.choices:
            return "", None, generation_id
        choice = response.choices[0]
        return choice.message.content or "", choice.finish_reason, generation_id

    def _complete_streaming(
        self, model: str, messages: list[dict], request: ImageGenerationRequest
    ) -> tuple[str, str | None, str | None]:
        parts: list[str] = []
        finish_reason = None
        generation_id = None
        stream = self.client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=request.max_tokens or self.max_tokens,
            stream=True,
        )
        for chunk in stream:
            generation_id = generation_id or getattr(chunk, "id", None)
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            if choice.delta and choice.delta.content:
                parts.append(choice.delta.content)
            if choice.finish_reason:
                finish_reason = choice.finish_reason
        return "".join(parts), finish_reason, generation_id
