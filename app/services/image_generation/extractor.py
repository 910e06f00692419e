"""
Image URL extraction from free-form chat replies.

The upstream returns the generated image as a link somewhere in natural
language or JSON text. Patterns are tried in a fixed order and the first match
wins: structured forms (fenced JSON, inline JSON objects) before Markdown,
then bare links with an image extension, then keyword heuristics.
`extract_any_url` is the loosest fallback and is only used by callers once
retries are exhausted.

Callers should depend on `extract_image_url(text) -> ExtractionResult | None`
only, so a provider with structured output can replace this module.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Iterator
from urllib.parse import urlparse

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "bmp")

JSON_URL_FIELDS = ("url", "image", "image_url", "imageUrl", "src", "source", "path", "link")

PLACEHOLDER_MARKERS = ("placeholder", "placehold.co", "example.com")

LIKELY_PATH_MARKERS = ("/image", "/img", "/photo", "/media", "cdn", "storage", "assets")

_TRAILING_CHARS = ")]}>\"'.,;:!?"

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_MARKDOWN_IMAGE_RE = re.compile(r"!\[[^\]]*\]\((https?://[^\s)]+)\)")
_EXTENSION_URL_RE = re.compile(
    r"https?://[^\s\"'<>()\[\]]+\.(?:jpe?g|png|gif|webp|bmp)\b(?:\?[^\s\"'<>()\[\]]*)?",
    re.IGNORECASE,
)
_KEYWORD_PATTERNS = (
    re.compile(r"(?:image|img|picture|图片|图像|链接)\s*(?:url|link)?\s*[:：]\s*(https?://[^\s\"'<>]+)", re.IGNORECASE),
    re.compile(r"(?:src|href)\s*=\s*[\"'](https?://[^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"(https?://[^\s\"'<>()]+/(?:image|images|img|media|files|uploads)/[^\s\"'<>()]+)", re.IGNORECASE),
)
_ANY_URL_RE = re.compile(r"https?://[^\s\"'<>()\[\]]+")


@dataclass(frozen=True)
class ExtractionResult:
    url: str
    pattern: str


def clean_url(url: str) -> str:
    """Strip whitespace and trailing punctuation picked up from surrounding prose."""
    return url.strip().rstrip(_TRAILING_CHARS)


def is_valid_image_url(url: str | None) -> bool:
    """Reject non-http values and known placeholder hosts. No network check."""
    if not url or not isinstance(url, str):
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    lowered = url.lower()
    return not any(marker in lowered for marker in PLACEHOLDER_MARKERS)


def is_likely_image_url(url: str | None) -> bool:
    """Extension or path keyword suggests the link points at an image."""
    if not url:
        return False
    path = urlparse(url).path.lower()
    if path.rsplit(".", 1)[-1] in IMAGE_EXTENSIONS:
        return True
    lowered = url.lower()
    return any(marker in lowered for marker in LIKELY_PATH_MARKERS)


def _url_from_fields(obj: dict[str, Any]) -> str | None:
    for field in JSON_URL_FIELDS:
        value = obj.get(field)
        if isinstance(value, str):
            candidate = clean_url(value)
            if is_valid_image_url(candidate):
                return candidate
    return None


def _deep_search(value: Any) -> str | None:
    """Depth-first search of nested JSON for a string that looks like an image link."""
    if isinstance(value, dict):
        found = _url_from_fields(value)
        if found and is_likely_image_url(found):
            return found
        for child in value.values():
            found = _deep_search(child)
            if found:
                return found
    elif isinstance(value, list):
        for child in value:
            found = _deep_search(child)
            if found:
                return found
    elif isinstance(value, str):
        candidate = clean_url(value)
        if candidate.startswith(("http://", "https://")) and is_likely_image_url(candidate) and is_valid_image_url(candidate):
            return candidate
    return None


def _url_from_json(value: Any) -> str | None:
    if isinstance(value, dict):
        return _url_from_fields(value) or _deep_search(value)
    return _deep_search(value)


def _iter_json_objects(text: str) -> Iterator[Any]:
    """Yield every JSON object embedded in text, outermost first."""
    decoder = json.JSONDecoder()
    pos = text.find("{")
    while pos != -1:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except ValueError:
            pos = text.find("{", pos + 1)
            continue
        yield obj
        pos = text.find("{", end)


def _from_fenced_json(text: str) -> str | None:
    for match in _FENCED_JSON_RE.finditer(text):
        try:
            data = json.loads(match.group(1))
        except ValueError:
            continue
        found = _url_from_json(data)
        if found:
            return found
    return None


def _from_inline_json(text: str) -> str | None:
    for obj in _iter_json_objects(text):
        found = _url_from_json(obj)
        if found:
            return found
    return None


def _from_markdown(text: str) -> str | None:
    for match in _MARKDOWN_IMAGE_RE.finditer(text):
        candidate = clean_url(match.group(1))
        if is_valid_image_url(candidate):
            return candidate
    return None


def _from_extension(text: str) -> str | None:
    for match in _EXTENSION_URL_RE.finditer(text):
        candidate = clean_url(match.group(0))
        if is_valid_image_url(candidate):
            return candidate
    return None


def _from_keywords(text: str) -> str | None:
    for pattern in _KEYWORD_PATTERNS:
        for match in pattern.finditer(text):
            candidate = clean_url(match.group(1))
            if is_valid_image_url(candidate):
                return candidate
    return None


# Order matters: first hit wins
EXTRACTION_CHAIN = (
    ("fenced_json", _from_fenced_json),
    ("inline_json", _from_inline_json),
    ("markdown", _from_markdown),
    ("extension", _from_extension),
    ("keyword", _from_keywords),
)


def extract_image_url(text: str | None) -> ExtractionResult | None:
    if not text:
        return None
    for name, extractor in EXTRACTION_CHAIN:
        url = extractor(text)
        if url:
            return ExtractionResult(url=url, pattern=name)
    return None


def extract_any_url(text: str | None) -> ExtractionResult | None:
    """Loosest fallback: the first valid http(s) link of any kind."""
    if not text:
        return None
    for match in _ANY_URL_RE.finditer(text):
        candidate = clean_url(match.group(0))
        if is_valid_image_url(candidate):
            return ExtractionResult(url=candidate, pattern="any_url")
    return None
