"""
Per-dependency circuit breakers for the content pipeline's external calls.

Tracks consecutive failures for each named dependency (search provider, AI
provider, publish target) and stops admitting calls to one that keeps
failing until its recovery window has passed.

The registry is advisory: the work function asks `is_admitted()` before a
call and reports the outcome with `record_success()` / `record_failure()`,
or lets `call()` do all three.

Usage:
    breakers = CircuitBreakerRegistry.from_settings(settings)
    results = await breakers.call("search-provider", serper.search, keyword)
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, Mapping, Optional

from app.services.errors import CircuitOpenError
from app.utils.logger import logger
from app.utils.metrics import inc, observe

SEARCH_PROVIDER = "search-provider"
AI_PROVIDER = "ai-provider"
PUBLISH_TARGET = "publish-target"


# ---------------------------------------------------------------------------
# Configuration per dependency
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    recovery_timeout_ms: int = 30_000


# Tolerance drops as a repeated failure gets more expensive downstream
DEFAULT_BREAKERS: Dict[str, BreakerConfig] = {
    SEARCH_PROVIDER: BreakerConfig(failure_threshold=5, recovery_timeout_ms=10_000),
    AI_PROVIDER: BreakerConfig(failure_threshold=3, recovery_timeout_ms=30_000),
    PUBLISH_TARGET: BreakerConfig(failure_threshold=2, recovery_timeout_ms=5_000),
}


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Breaker for one service. Mutations are single synchronous steps, safe on one event loop."""

    def __init__(self, service: str, config: BreakerConfig):
        self.service = service
        self.failure_threshold = config.failure_threshold
        self.recovery_timeout_ms = config.recovery_timeout_ms
        self.status = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        # Epoch time of the same failure, for display only
        self.last_failure_epoch_ms: Optional[int] = None

    def allow_request(self, now_ms: float) -> bool:
        if self.status == CircuitState.CLOSED:
            return True
        if self.status == CircuitState.OPEN:
            elapsed = now_ms - (self.last_failure_at or 0.0)
            if elapsed > self.recovery_timeout_ms:
                self.status = CircuitState.HALF_OPEN
                logger.info(
                    "circuit.half_open",
                    extra={"service": self.service, "duration_ms": round(elapsed)},
                )
                return True
            return False
        # HALF_OPEN: the probe goes through, the caller reports how it went
        return True

    def record_success(self) -> None:
        if self.status != CircuitState.CLOSED:
            logger.info("circuit.closed", extra={"service": self.service})
        self.status = CircuitState.CLOSED
        self.failure_count = 0

    def record_failure(self, now_ms: float, epoch_ms: Optional[int] = None) -> None:
        self.failure_count += 1
        self.last_failure_at = now_ms
        self.last_failure_epoch_ms = epoch_ms if epoch_ms is not None else wall_clock_ms()
        if self.status == CircuitState.HALF_OPEN:
            # Probe failed: dependency still unhealthy, trip without recounting
            self.status = CircuitState.OPEN
            logger.warning(
                "circuit.open",
                extra={"service": self.service, "error": "half-open probe failed"},
            )
        elif self.status == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self.status = CircuitState.OPEN
            logger.warning(
                "circuit.open",
                extra={
                    "service": self.service,
                    "failures": self.failure_count,
                    "threshold": self.failure_threshold,
                },
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status.value,
            "failureCount": self.failure_count,
            "failureThreshold": self.failure_threshold,
            "lastFailureAt": self.last_failure_epoch_ms,
            "recoveryTimeoutMs": self.recovery_timeout_ms,
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class CircuitBreakerRegistry:
    """All breakers for one orchestrator instance, created once at startup."""

    def __init__(
        self,
        configs: Optional[Mapping[str, BreakerConfig]] = None,
        clock: Callable[[], float] = monotonic_ms,
        wall_clock: Callable[[], int] = wall_clock_ms,
    ) -> None:
        self._clock = clock
        self._wall_clock = wall_clock
        self._breakers: Dict[str, CircuitBreaker] = {
            service: CircuitBreaker(service, cfg)
            for service, cfg in (DEFAULT_BREAKERS if configs is None else configs).items()
        }

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = monotonic_ms) -> "CircuitBreakerRegistry":
        return cls(
            {
                SEARCH_PROVIDER: BreakerConfig(settings.search_breaker_threshold, settings.search_breaker_recovery_ms),
                AI_PROVIDER: BreakerConfig(settings.ai_breaker_threshold, settings.ai_breaker_recovery_ms),
                PUBLISH_TARGET: BreakerConfig(settings.publish_breaker_threshold, settings.publish_breaker_recovery_ms),
            },
            clock=clock,
        )

    def get(self, service: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(service)

    def is_admitted(self, service: str) -> bool:
        breaker = self._breakers.get(service)
        if breaker is None:
            # Unconfigured dependency: fail open
            return True
        return breaker.allow_request(self._clock())

    def record_success(self, service: str) -> None:
        breaker = self._breakers.get(service)
        if breaker is not None:
            breaker.record_success()

    def record_failure(self, service: str) -> None:
        breaker = self._breakers.get(service)
        if breaker is not None:
            breaker.record_failure(self._clock(), self._wall_clock())

    async def call(
        self,
        service: str,
        fn: Callable[..., Coroutine],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Run an async dependency call behind the breaker.

        Raises CircuitOpenError without calling `fn` when the breaker refuses
        admission; otherwise records the outcome and re-raises failures.
        """
        if not self.is_admitted(service):
            inc(f"{service}.rejected")
            raise CircuitOpenError(service)

        start = time.monotonic()
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            self.record_failure(service)
            inc(f"{service}.error")
            logger.warning(
                "dependency.failed",
                extra={"service": service, "error": str(exc)[:200], "error_type": type(exc).__name__},
            )
            raise

        self.record_success(service)
        inc(f"{service}.success")
        observe(f"{service}.duration_ms", (time.monotonic() - start) * 1000)
        return result

    def get_states(self) -> Dict[str, str]:
        """Return current circuit breaker states (for health check)."""
        return {svc: cb.status.value for svc, cb in self._breakers.items()}

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {svc: cb.to_dict() for svc, cb in self._breakers.items()}
