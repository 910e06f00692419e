"""Tests for failure classification and soft refusal detection."""
import pytest

from app.services.image_generation.failure_types import FailureType, classify_failure
from app.services.image_generation.refusal import detect_soft_refusal


@pytest.mark.parametrize(
    "http_status,detail,message,expected,retry",
    [
        (None, {"timeout": True}, "", FailureType.TIMEOUT, True),
        (None, {}, "Request timed out.", FailureType.TIMEOUT, True),
        (429, {}, "", FailureType.RATE_LIMITED, True),
        (502, {}, "", FailureType.TRANSPORT_TRANSIENT, True),
        (504, {}, "", FailureType.TIMEOUT, True),
        (401, {}, "", FailureType.UNAUTHORIZED, False),
        (400, {}, "bad request", FailureType.CLIENT_NON_RETRIABLE, False),
        (429, {"error_code": "insufficient_quota"}, "", FailureType.QUOTA_EXCEEDED, False),
        (None, {}, "Connection error.", FailureType.TRANSPORT_TRANSIENT, True),
        (None, {"failure_type": "configuration"}, "", FailureType.CONFIGURATION, False),
    ],
)
def test_classify_failure(http_status, detail, message, expected, retry):
    assert classify_failure(http_status, detail, message) == (expected, retry)


def test_error_after_threshold_counts_as_timeout():
    failure_type, retry = classify_failure(400, {}, "bad gateway text", elapsed=250, timeout_threshold=240)

    assert failure_type == FailureType.TIMEOUT
    assert retry is True


class TestSoftRefusal:
    def test_english_refusal(self):
        assert detect_soft_refusal("I'm sorry, but I can't help with that request.") is not None

    def test_chinese_refusal(self):
        assert detect_soft_refusal("抱歉，我无法生成这张图片。") is not None

    def test_policy_wording(self):
        assert detect_soft_refusal("This request may violate our content policy.") is not None

    def test_normal_reply(self):
        assert detect_soft_refusal("图片已生成：![img](https://files.test/a.png)") is None
        assert detect_soft_refusal("") is None
