"""
Image generation through an OpenAI-compatible chat completions upstream.
"""
from .base import (
    GenerationAborted,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageGenerationError,
)
from .extractor import ExtractionResult, extract_any_url, extract_image_url
from .factory import ImageProviderFactory, resolve_provider_config
from .failure_types import FailureType, classify_failure
from .refusal import detect_soft_refusal
from .runner import build_fallback_request, generate_with_retry

__all__ = [
    "GenerationAborted",
    "ImageGenerationProvider",
    "ImageGenerationRequest",
    "ImageGenerationResponse",
    "ImageGenerationError",
    "ExtractionResult",
    "extract_any_url",
    "extract_image_url",
    "ImageProviderFactory",
    "resolve_provider_config",
    "FailureType",
    "classify_failure",
    "detect_soft_refusal",
    "build_fallback_request",
    "generate_with_retry",
]
