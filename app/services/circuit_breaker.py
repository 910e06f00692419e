"""
Circuit breaker implementation using pybreaker library.
State lives in Redis so every API and worker process shares it;
`cb_storage=memory` keeps it per process (tests, single-node setups).
"""
import logging
import redis
import pybreaker

from app.core.config import settings
from app.services.image_generation.base import GenerationAborted
from app.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")


def _state_name(state) -> str:
    return getattr(state, "name", state)


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Listener for circuit breaker events (logging/metrics)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state, new_state) -> None:
        new_name = _state_name(new_state)
        circuit_breaker_state.labels(name=self.name).set(
            1 if new_name == pybreaker.STATE_OPEN else 0
        )
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": _state_name(old_state),
                "new_state": new_name,
            },
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={
                "breaker_name": self.name,
                "error": type(exc).__name__,
            },
        )


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def _make_storage(name: str) -> pybreaker.CircuitBreakerStorage:
    if settings.cb_storage == "memory":
        return pybreaker.CircuitMemoryStorage(pybreaker.STATE_CLOSED)
    # pybreaker's redis storage expects a client without decode_responses
    client = redis.Redis.from_url(settings.redis_url)
    return pybreaker.CircuitRedisStorage(pybreaker.STATE_CLOSED, client, namespace=f"cb:{name}")


def get_circuit_breaker(name: str) -> pybreaker.CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=_make_storage(name),
            listeners=[CircuitBreakerListener(name)],
            # Cancellation is not an upstream failure
            exclude=[GenerationAborted],
            name=name,
        )
    return _breakers[name]


# Shared by every upstream generation call (primary and fallback model)
image_provider_breaker = get_circuit_breaker("image_provider")
