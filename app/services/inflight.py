"""
Single in-flight guard for synchronous generation requests.

`local`: a process-local lock. It only protects one API process; with several
workers or instances each one admits its own request.
`redis`: SET NX PX on a shared key, released with compare-and-delete, so the
guard holds across every instance. While the slot is held a heartbeat thread
extends the key every third of the TTL, so a generation that outlives the TTL
keeps the slot; the TTL only frees the slot when the holding process dies.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Iterator
from uuid import uuid4

import redis

from app.core.config import settings
from app.utils.metrics import inflight_rejected_total

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


class GenerationInFlight(Exception):
    """Another generation request currently holds the slot."""


class LocalInFlightGuard:
    def __init__(self) -> None:
        self._lock = threading.Lock()

    def acquire(self) -> str | None:
        return "local" if self._lock.acquire(blocking=False) else None

    def release(self, token: str) -> None:
        self._lock.release()


class RedisInFlightGuard:
    def __init__(self, key: str | None = None, ttl_seconds: float | None = None) -> None:
        self.client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.key = key or settings.generation_lock_key
        self.ttl = ttl_seconds if ttl_seconds is not None else settings.generation_lock_ttl_seconds
        self._release = self.client.register_script(_RELEASE_SCRIPT)
        self._extend = self.client.register_script(_EXTEND_SCRIPT)
        self._heartbeats: dict[str, tuple[threading.Event, threading.Thread]] = {}

    @property
    def ttl_ms(self) -> int:
        return max(round(self.ttl * 1000), 1)

    def acquire(self) -> str | None:
        """Atomic operation: setnx + expire in one call."""
        token = str(uuid4())
        created = self.client.set(self.key, token, nx=True, px=self.ttl_ms)
        if not created:
            return None
        stop = threading.Event()
        heartbeat = threading.Thread(
            target=self._keep_alive,
            args=(token, stop),
            name="generation-slot-heartbeat",
            daemon=True,
        )
        self._heartbeats[token] = (stop, heartbeat)
        heartbeat.start()
        return token

    def release(self, token: str) -> None:
        entry = self._heartbeats.pop(token, None)
        if entry is not None:
            stop, heartbeat = entry
            stop.set()
            heartbeat.join(timeout=1)
        self._release(keys=[self.key], args=[token])

    def _keep_alive(self, token: str, stop: threading.Event) -> None:
        interval = max(self.ttl / 3, 0.01)
        while not stop.wait(interval):
            try:
                extended = self._extend(keys=[self.key], args=[token, self.ttl_ms])
            except redis.RedisError as e:
                # Retried on the next beat; the key survives until its current TTL runs out
                logger.warning("generation_slot_extend_failed", extra={"error": str(e)})
                continue
            if not extended:
                logger.warning("generation_slot_lost", extra={"error": self.key})
                return


_guard: LocalInFlightGuard | RedisInFlightGuard | None = None


def get_inflight_guard() -> LocalInFlightGuard | RedisInFlightGuard:
    global _guard
    if _guard is None:
        if settings.generation_lock_backend == "local":
            _guard = LocalInFlightGuard()
        else:
            _guard = RedisInFlightGuard()
    return _guard


@contextmanager
def acquire_generation_slot() -> Iterator[None]:
    """Hold the generation slot for the duration of the block; raises GenerationInFlight when taken."""
    guard = get_inflight_guard()
    token = guard.acquire()
    if token is None:
        inflight_rejected_total.inc()
        raise GenerationInFlight()
    try:
        yield
    finally:
        guard.release(token)
