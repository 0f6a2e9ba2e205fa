from __future__ import annotations

import threading
import time

import pytest

from subtrack.errors import ProviderNotConfiguredError
from subtrack.infrastructure.locks import KeyedLocks
from subtrack.infrastructure.retry import AdapterError, CircuitBreaker, CircuitOpenError, RetryPolicy


def _policy(**kwargs) -> RetryPolicy:
    return RetryPolicy(stage="test", base_delay=0.0, jitter=0.0, sleep_fn=lambda _: None, **kwargs)


def test_retry_policy_retries_transient_errors():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise AdapterError("boom", status_code=503)
        return "ok"

    assert _policy().execute(flaky) == "ok"
    assert len(calls) == 3


def test_retry_policy_does_not_retry_client_errors():
    calls = []

    def bad_request():
        calls.append(1)
        raise AdapterError("bad request", status_code=400)

    with pytest.raises(AdapterError):
        _policy().execute(bad_request)
    assert len(calls) == 1


def test_retry_policy_raises_fatal_immediately():
    calls = []

    def misconfigured():
        calls.append(1)
        raise ProviderNotConfiguredError("plaid")

    with pytest.raises(ProviderNotConfiguredError):
        _policy(fatal=(ProviderNotConfiguredError,)).execute(misconfigured)
    assert len(calls) == 1


def test_retry_policy_gives_up_after_max_attempts():
    calls = []

    def down():
        calls.append(1)
        raise AdapterError("timeout")

    with pytest.raises(AdapterError):
        _policy(max_attempts=2).execute(down)
    assert len(calls) == 2


def test_circuit_breaker_opens_and_recovers():
    now = [0.0]
    breaker = CircuitBreaker(stage="test", fail_max=2, reset_timeout=10.0, clock=lambda: now[0])
    policy = _policy(max_attempts=1)

    def down():
        raise AdapterError("down", status_code=503)

    for _ in range(2):
        with pytest.raises(AdapterError):
            breaker.call(policy, down)
    assert breaker.state == "open"

    with pytest.raises(CircuitOpenError):
        breaker.call(policy, lambda: "ok")

    now[0] = 11.0
    assert breaker.call(policy, lambda: "ok") == "ok"
    assert breaker.state == "closed"


def test_keyed_locks_serialize_same_key():
    locks = KeyedLocks()
    active = []
    overlaps = []

    def critical(key):
        with locks.hold(key):
            active.append(key)
            if active.count(key) > 1:
                overlaps.append(key)
            time.sleep(0.01)
            active.remove(key)

    threads = [threading.Thread(target=critical, args=(("u1", "netflix"),)) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(locks) == 1


def test_keyed_locks_are_per_key():
    locks = KeyedLocks()
    with locks.hold(("u1", "netflix")):
        with locks.hold(("u1", "spotify")):
            pass
    assert len(locks) == 2
