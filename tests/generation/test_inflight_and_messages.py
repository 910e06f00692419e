"""Tests for the in-flight generation guard and user-facing failure messages."""
import time
import unittest
from unittest.mock import MagicMock, patch

from app.services.generation.messages import DEFAULT_SUGGESTION, build_suggestion, map_user_error
from app.services.image_generation.failure_types import FailureType
from app.services.inflight import (
    GenerationInFlight,
    LocalInFlightGuard,
    RedisInFlightGuard,
    acquire_generation_slot,
)


class TestLocalGuard(unittest.TestCase):
    def test_second_acquire_is_refused(self):
        guard = LocalInFlightGuard()
        token = guard.acquire()

        self.assertIsNotNone(token)
        self.assertIsNone(guard.acquire())
        guard.release(token)
        self.assertIsNotNone(guard.acquire())

    def test_slot_is_released_on_error(self):
        guard = LocalInFlightGuard()
        with patch("app.services.inflight.get_inflight_guard", return_value=guard):
            with self.assertRaises(ValueError):
                with acquire_generation_slot():
                    raise ValueError("boom")
            with acquire_generation_slot():
                pass

    def test_busy_slot_raises(self):
        guard = LocalInFlightGuard()
        with patch("app.services.inflight.get_inflight_guard", return_value=guard):
            with acquire_generation_slot():
                with self.assertRaises(GenerationInFlight):
                    with acquire_generation_slot():
                        pass


class TestRedisGuard(unittest.TestCase):
    def _guard(self, set_result, ttl_seconds=30, extend_result=1):
        client = MagicMock()
        client.set.return_value = set_result
        release_script = MagicMock()
        extend_script = MagicMock(return_value=extend_result)
        client.register_script.side_effect = [release_script, extend_script]
        with patch("app.services.inflight.redis.Redis.from_url", return_value=client):
            guard = RedisInFlightGuard(key="generation:test", ttl_seconds=ttl_seconds)
        return guard, client, release_script, extend_script

    def test_acquire_uses_set_nx_with_ttl(self):
        guard, client, _, _ = self._guard(True)

        token = guard.acquire()
        guard.release(token)

        self.assertIsNotNone(token)
        client.set.assert_called_once_with("generation:test", token, nx=True, px=30000)

    def test_taken_key(self):
        guard, _, _, extend_script = self._guard(None)

        self.assertIsNone(guard.acquire())
        extend_script.assert_not_called()

    def test_release_is_compare_and_delete(self):
        guard, _, release_script, _ = self._guard(True)

        guard.release("token-1")

        release_script.assert_called_once_with(keys=["generation:test"], args=["token-1"])

    def test_held_slot_outlives_its_ttl(self):
        guard, _, release_script, extend_script = self._guard(True, ttl_seconds=0.15)

        token = guard.acquire()
        time.sleep(0.4)
        guard.release(token)
        renewals = extend_script.call_count
        time.sleep(0.15)

        self.assertGreaterEqual(renewals, 3)
        extend_script.assert_called_with(keys=["generation:test"], args=[token, 150])
        # No renewals once the slot is released
        self.assertEqual(extend_script.call_count, renewals)
        release_script.assert_called_once_with(keys=["generation:test"], args=[token])

    def test_heartbeat_stops_when_slot_is_lost(self):
        guard, _, _, extend_script = self._guard(True, ttl_seconds=0.15, extend_result=0)

        token = guard.acquire()
        time.sleep(0.3)

        self.assertEqual(extend_script.call_count, 1)
        guard.release(token)


class TestMessages(unittest.TestCase):
    def test_client_error_keeps_upstream_message(self):
        self.assertEqual(map_user_error(FailureType.CLIENT_NON_RETRIABLE, "bad size"), "生成失败：bad size")

    def test_insufficient_credits(self):
        self.assertEqual(map_user_error(FailureType.INSUFFICIENT_CREDITS), "点数不足，无法生成图片")
        self.assertEqual(build_suggestion(None, "cat", FailureType.INSUFFICIENT_CREDITS), "请充值点数后再试")

    def test_refusal_suggestion_for_realistic_style(self):
        suggestion = build_suggestion("写实", "a quiet lake", FailureType.SOFT_REFUSAL)

        self.assertIn("动漫或插画风格", suggestion)

    def test_refusal_suggestion_from_prompt(self):
        suggestion = build_suggestion("油画", "a soldier with a gun", FailureType.SOFT_REFUSAL)

        self.assertEqual(suggestion, "请移除暴力或血腥相关的描述")

    def test_generic_suggestion(self):
        self.assertEqual(build_suggestion("油画", "a lake", FailureType.NO_IMAGE_URL), DEFAULT_SUGGESTION)
        self.assertIsNone(build_suggestion("油画", "a lake", FailureType.UNAUTHORIZED))
