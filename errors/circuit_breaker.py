"""
Circuit breaker for external services.

Handlers wrap calls to flaky third parties (content APIs, registrars, ad platforms)
in context.call_service(name, fn). After enough failures in a short window the
circuit OPENS and calls fail fast with CircuitOpenError, a TEMPORARY retryable
JobError, so the retry policy backs off instead of hammering a service that is
already down.

    CLOSED ──(5 failures within 60s)──> OPEN ──(60s later)──> HALF_OPEN
    HALF_OPEN ──(2 successes)──> CLOSED
    HALF_OPEN ──(any failure)──> OPEN

Breaker state lives in Redis, so every worker process trips and recovers the same
circuit and the API process can inspect and reset it:

    {prefix}:circuit:services          set: every service name a breaker was made for
    {prefix}:circuit:{service}         hash: state, failures, successes, next_attempt_at, ...
    {prefix}:circuit:{service}:recent  zset: failure timestamps inside the time window

Updates are pipelined but not transactional. Two processes racing on the same
transition both write the same state, which is harmless for a breaker.
Timestamps are wall-clock seconds because they are compared across processes.
"""

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from redis import Redis

from config.settings import settings
from errors.classifier import JobError
from models.enums import ErrorCategory, ErrorSeverity

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(JobError):
    def __init__(self, service: str, retry_at: float):
        super().__init__(
            f"Circuit breaker is OPEN for {service}",
            category=ErrorCategory.EXTERNAL_API,
            severity=ErrorSeverity.TEMPORARY,
            retryable=True,
            context={"service": service, "retry_at": retry_at},
        )


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 60.0   # seconds OPEN before a trial call is allowed
    time_window: float = 60.0        # failures older than this don't count


def services_key(prefix: str) -> str:
    return f"{prefix}:circuit:services"


class CircuitBreaker:

    def __init__(self, service: str, redis_client: Redis,
                 config: Optional[CircuitBreakerConfig] = None,
                 prefix: str = settings.BROKER_PREFIX,
                 clock: Callable[[], float] = time.time):
        self.service = service
        self._redis = redis_client
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._services_key = services_key(prefix)
        self._key = f"{prefix}:circuit:{service}"
        self._recent_key = f"{self._key}:recent"

    @property
    def state(self) -> CircuitState:
        return CircuitState(self._redis.hget(self._key, "state") or CircuitState.CLOSED.value)

    def call(self, fn: Callable[[], T]) -> T:
        """Run fn under circuit protection. Raises CircuitOpenError while OPEN."""
        self._allow_call()
        try:
            result = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def _allow_call(self) -> None:
        state, next_attempt_at = self._redis.hmget(self._key, "state", "next_attempt_at")
        if state != CircuitState.OPEN.value:
            return
        next_attempt_at = float(next_attempt_at or 0)
        if self._clock() < next_attempt_at:
            raise CircuitOpenError(self.service, next_attempt_at)
        self._redis.hset(self._key, mapping={"state": CircuitState.HALF_OPEN.value, "successes": 0})
        logger.info(f"Circuit {self.service} transitioning to HALF_OPEN")

    def record_success(self) -> None:
        pipe = self._redis.pipeline()
        pipe.sadd(self._services_key, self.service)
        pipe.hincrby(self._key, "successes", 1)
        pipe.hset(self._key, "last_success_time", self._clock())
        pipe.hget(self._key, "state")
        _, successes, _, state = pipe.execute()

        if state == CircuitState.HALF_OPEN.value:
            if successes >= self._config.success_threshold:
                self._close()
        elif state != CircuitState.OPEN.value:
            pipe = self._redis.pipeline()
            pipe.hset(self._key, "failures", 0)
            pipe.delete(self._recent_key)
            pipe.execute()

    def record_failure(self) -> None:
        now = self._clock()
        pipe = self._redis.pipeline()
        pipe.sadd(self._services_key, self.service)
        pipe.zremrangebyscore(self._recent_key, "-inf", now - self._config.time_window)
        pipe.zadd(self._recent_key, {f"{now}:{uuid.uuid4().hex}": now})
        pipe.expire(self._recent_key, int(self._config.time_window) + 1)
        pipe.zcard(self._recent_key)
        pipe.hincrby(self._key, "failures", 1)
        pipe.hset(self._key, "last_failure_time", now)
        pipe.hget(self._key, "state")
        results = pipe.execute()
        recent, state = results[4], results[-1] or CircuitState.CLOSED.value

        if state == CircuitState.HALF_OPEN.value:
            self._open(now, recent)
        elif state == CircuitState.CLOSED.value and recent >= self._config.failure_threshold:
            self._open(now, recent)

    def reset(self) -> None:
        self._close()

    def status(self) -> dict:
        window_start = self._clock() - self._config.time_window
        pipe = self._redis.pipeline()
        pipe.hgetall(self._key)
        pipe.zcount(self._recent_key, f"({window_start}", "+inf")
        raw, recent = pipe.execute()
        return {
            "state": raw.get("state", CircuitState.CLOSED.value),
            "failures": int(raw.get("failures") or 0),
            "successes": int(raw.get("successes") or 0),
            "recent_failures": int(recent),
        }

    def _open(self, now: float, recent: int) -> None:
        self._redis.hset(self._key, mapping={
            "state": CircuitState.OPEN.value,
            "next_attempt_at": now + self._config.recovery_timeout,
        })
        logger.warning(
            f"Circuit {self.service} OPEN after {recent} recent failures, "
            f"retrying in {self._config.recovery_timeout:.0f}s"
        )

    def _close(self) -> None:
        pipe = self._redis.pipeline()
        pipe.delete(self._key, self._recent_key)
        pipe.hset(self._key, mapping={"state": CircuitState.CLOSED.value, "failures": 0, "successes": 0})
        pipe.sadd(self._services_key, self.service)
        pipe.execute()
        logger.info(f"Circuit {self.service} CLOSED")


class CircuitBreakerRegistry:
    """
    One breaker per external service name. The breaker objects are per process;
    the state behind them is shared through Redis, so a registry in the API sees
    what the workers' registries recorded.
    """

    def __init__(self, redis_client: Redis, config: Optional[CircuitBreakerConfig] = None,
                 prefix: str = settings.BROKER_PREFIX,
                 clock: Callable[[], float] = time.time):
        self._redis = redis_client
        self._config = config
        self._prefix = prefix
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, service: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(service)
            if breaker is None:
                breaker = CircuitBreaker(service, self._redis, self._config, self._prefix, self._clock)
                self._breakers[service] = breaker
            return breaker

    def services(self) -> list[str]:
        return sorted(self._redis.smembers(services_key(self._prefix)))

    def all_status(self) -> dict[str, dict]:
        return {service: self.get(service).status() for service in self.services()}

    def any_open(self) -> bool:
        return any(s["state"] == CircuitState.OPEN.value for s in self.all_status().values())

    def reset(self, service: str) -> bool:
        """Close one breaker. False when no process ever used a breaker by that name."""
        if not self._redis.sismember(services_key(self._prefix), service):
            return False
        self.get(service).reset()
        return True

    def reset_all(self) -> None:
        for service in self.services():
            self.get(service).reset()
