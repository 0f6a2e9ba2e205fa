"""
Retry helpers with exponential backoff, jitter, and circuit breaker.

Used around external provider calls (mail fetch, card-transaction sync).
LLM calls use tenacity instead (see subtrack.llm.retry).
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from subtrack.observability.telemetry import counter, log_event

T = TypeVar("T")


class AdapterError(RuntimeError):
    """Transient or HTTP-status error from an external provider."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(AdapterError):
    """Raised instead of calling a provider whose circuit is open."""


@dataclass
class RetryPolicy:
    stage: str
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    jitter: float = 0.1
    sleep_fn: Callable[[float], None] = time.sleep
    # Exceptions that are never retried (configuration/auth problems)
    fatal: tuple[type[BaseException], ...] = ()

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call func, retrying AdapterErrors with retryable status and other
        non-fatal exceptions up to max_attempts."""
        attempt = 0
        last_error: Exception | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except self.fatal:
                raise
            except AdapterError as exc:
                if not self._should_retry(exc):
                    log_event(
                        "stage_error",
                        stage=self.stage,
                        error=str(exc),
                        status=exc.status_code,
                        attempt=attempt,
                    )
                    raise
                last_error = exc
            except Exception as exc:
                last_error = exc
                log_event("stage_error", stage=self.stage, error=str(exc), attempt=attempt)

            if attempt >= self.max_attempts:
                break

            self._backoff(attempt)

        assert last_error is not None
        raise last_error

    def _should_retry(self, exc: AdapterError) -> bool:
        status = exc.status_code
        if status is None:
            return True
        return bool(status == 429 or 500 <= status < 600)

    def _backoff(self, attempt: int) -> None:
        counter("retry_count")
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        delay += random.uniform(0, self.jitter)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        if self.sleep_fn is not None:
            self.sleep_fn(delay)


@dataclass
class CircuitBreaker:
    stage: str
    fail_max: int = 5
    reset_timeout: float = 60.0
    clock: Callable[[], float] = time.time
    _failures: int = field(default=0, init=False)
    _state: str = field(default="closed", init=False)
    _opened_at: float = field(default=0.0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def state(self) -> str:
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == "open":
                if self.clock() - self._opened_at >= self.reset_timeout:
                    self._state = "half_open"
                    self._failures = 0
                    return True
                counter("circuit_open_rate")
                log_event("circuit.open", stage=self.stage)
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._failures >= self.fail_max:
                self._state = "open"
                self._opened_at = self.clock()
                counter("circuit_open_rate")
                log_event("circuit.opened", stage=self.stage, failures=self._failures)

    def call(self, policy: RetryPolicy, func: Callable[..., T], *args, **kwargs) -> T:
        """Run func under policy, short-circuiting while the breaker is open."""
        if not self.allow_request():
            raise CircuitOpenError(f"{self.stage} circuit open", status_code=503)
        try:
            result = policy.execute(func, *args, **kwargs)
        except policy.fatal:
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result
