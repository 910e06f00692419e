"""
Soft refusal detection: the upstream answered HTTP 200 but the text says it
declined or failed to produce an image.
"""
import re

REFUSAL_PATTERNS = (
    re.compile(r"\bI(?:'m| am) sorry\b", re.IGNORECASE),
    re.compile(r"\bI (?:can't|can’t|cannot|can not|am unable to|couldn't|could not)\b", re.IGNORECASE),
    re.compile(r"\bI'm (?:unable|not able) to\b", re.IGNORECASE),
    re.compile(r"\bunable to (?:generate|create|produce|fulfill)\b", re.IGNORECASE),
    re.compile(r"\bfailed to (?:generate|create)\b", re.IGNORECASE),
    re.compile(r"\bencountered an (?:issue|error)\b", re.IGNORECASE),
    re.compile(r"\bcouldn't complete\b", re.IGNORECASE),
    re.compile(r"\b(?:content|usage) polic(?:y|ies)\b", re.IGNORECASE),
    re.compile(r"\bviolat(?:e|es|ing) (?:our|the|openai'?s)\b", re.IGNORECASE),
    re.compile(r"抱歉|对不起"),
    re.compile(r"无法(?:生成|创建|完成|提供|满足)"),
    re.compile(r"不能(?:生成|创建|提供)"),
    re.compile(r"(?:违反|不符合).{0,6}(?:政策|规定|准则)"),
    re.compile(r"生成失败"),
)


def detect_soft_refusal(text: str | None) -> str | None:
    """Return the matched refusal phrase, or None when the text reads as a normal reply."""
    if not text:
        return None
    for pattern in REFUSAL_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None
