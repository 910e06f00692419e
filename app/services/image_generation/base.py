"""
Base classes and types for image generation providers.
The upstream is a chat-completion API: the image arrives as a link inside the
assistant's reply, so a response carries text, not image bytes.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ImageGenerationRequest:
    """Request for image generation."""
    prompt: str
    model: str | None = None
    style: str | None = None
    aspect_ratio: str | None = None
    size: str | None = None
    image_base64: str | None = None
    image_url: str | None = None
    max_tokens: int | None = None
    stream: bool = False
    is_fallback: bool = False


@dataclass
class ImageGenerationResponse:
    """Raw reply from the upstream; the image URL still has to be extracted."""
    text: str
    model: str
    provider: str
    elapsed: float = 0.0
    finish_reason: str | None = None
    generation_id: str | None = None  # upstream completion id
    raw_response_sanitized: dict[str, Any] = field(default_factory=dict)


class ImageGenerationError(Exception):
    """Raised when generation fails; detail holds http_status, retry_after, failure_type etc."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


class GenerationAborted(Exception):
    """Raised from inside a generation call to stop it on purpose (not an upstream failure)."""


def _sanitize_value(value: Any) -> Any:
    """Recursively replace inline base64 payloads with a placeholder."""
    if value is None:
        return None
    if isinstance(value, dict):
        return {k: _sanitize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    if isinstance(value, str) and value.startswith("data:") and ";base64," in value:
        return value.split(",", 1)[0] + ",[REDACTED]"
    return value


def sanitize_messages_for_log(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Copy of chat messages safe for logging (no base64 image data)."""
    out = _sanitize_value(messages)
    return out if isinstance(out, list) else []


class ImageGenerationProvider(ABC):
    """Base class for image generation providers."""

    name = "base"

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Check if provider is configured and available."""
        pass

    @abstractmethod
    def generate(self, request: ImageGenerationRequest) -> ImageGenerationResponse:
        """Send the request upstream. Raises ImageGenerationError on failure."""
        pass
