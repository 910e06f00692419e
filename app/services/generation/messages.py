"""
User-facing error messages and retry suggestions for failed generations.
Static heuristics keyed on the failure type, the selected style and words in the prompt.
"""
from app.services.image_generation.failure_types import FailureType

ERROR_MESSAGES: dict[FailureType, str] = {
    FailureType.TIMEOUT: "生成超时，请稍后重试",
    FailureType.RATE_LIMITED: "请求过于频繁，请稍后重试",
    FailureType.TRANSPORT_TRANSIENT: "网络连接异常，请稍后重试",
    FailureType.UNAUTHORIZED: "图像服务认证失败，请联系管理员",
    FailureType.QUOTA_EXCEEDED: "图像服务额度已用尽，请稍后再试",
    FailureType.CIRCUIT_OPEN: "图像服务暂时不可用，请稍后再试",
    FailureType.SOFT_REFUSAL: "模型拒绝了本次生成请求",
    FailureType.NO_IMAGE_URL: "未能从响应中获取图片链接",
    FailureType.INSUFFICIENT_CREDITS: "点数不足，无法生成图片",
    FailureType.CONFIGURATION: "图像服务未配置",
    FailureType.INTERNAL: "服务器内部错误",
}

DEFAULT_SUGGESTION = "请稍后重试或使用不同的提示词"

# (keywords, suggestion); first group with a hit in the prompt wins
PROMPT_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("真人", "明星", "名人", "celebrity", "real person", "politician", "总统"),
     "请避免描述真实人物或名人，可以改用虚构角色"),
    (("血", "暴力", "武器", "枪", "blood", "gore", "weapon", "gun", "violence", "kill"),
     "请移除暴力或血腥相关的描述"),
    (("裸", "性感", "nude", "naked", "sexy", "nsfw"),
     "请避免涉及成人内容的描述"),
    (("logo", "商标", "品牌", "迪士尼", "disney", "marvel", "漫威", "pokemon", "宝可梦"),
     "请避免使用受版权保护的品牌或角色名称"),
    (("文字", "字幕", "写着", "text", "caption", "lettering"),
     "请避免要求在图片中生成文字"),
)

REALISTIC_STYLES = ("写实", "真实", "照片", "realistic", "photo", "photorealistic")
ILLUSTRATION_STYLES = ("吉卜力", "ghibli", "宫崎骏", "miyazaki", "新海诚", "shinkai", "动物森友会", "animal crossing", "动漫", "anime", "卡通", "cartoon")


def map_user_error(failure_type: FailureType, message: str = "") -> str:
    if failure_type == FailureType.CLIENT_NON_RETRIABLE:
        return f"生成失败：{message}" if message else "生成失败"
    return ERROR_MESSAGES.get(failure_type, ERROR_MESSAGES[FailureType.INTERNAL])


def _contains_any(text: str, words: tuple[str, ...]) -> bool:
    return any(word in text for word in words)


def build_suggestion(style: str | None, prompt: str | None, failure_type: FailureType) -> str | None:
    if failure_type == FailureType.INSUFFICIENT_CREDITS:
        return "请充值点数后再试"
    if failure_type in (FailureType.UNAUTHORIZED, FailureType.CONFIGURATION):
        return None
    if failure_type == FailureType.TIMEOUT:
        return "请简化提示词或稍后重试"
    if failure_type in (FailureType.RATE_LIMITED, FailureType.CIRCUIT_OPEN, FailureType.QUOTA_EXCEEDED):
        return "请稍后重试"
    if failure_type != FailureType.SOFT_REFUSAL:
        return DEFAULT_SUGGESTION

    lowered_prompt = (prompt or "").lower()
    for words, suggestion in PROMPT_HINTS:
        if _contains_any(lowered_prompt, words):
            return suggestion

    lowered_style = (style or "").lower()
    if lowered_style and _contains_any(lowered_style, REALISTIC_STYLES):
        return "写实风格更容易触发内容限制，可以尝试动漫或插画风格"
    if lowered_style and _contains_any(lowered_style, ILLUSTRATION_STYLES):
        return f"请简化场景描述，突出{style}风格的主要元素"
    return DEFAULT_SUGGESTION
