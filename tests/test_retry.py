"""
Tests for retry with exponential backoff.
"""
import asyncio

import pytest

from bookstack.core.exceptions import (
    ProviderConfigurationError, ProviderTimeoutError, ProviderTransportError,
)
from bookstack.core.retry import RetryPolicy, call_with_timeout, with_retry


class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def test_delay_ladder():
    policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_retries_retryable_errors_with_backoff():
    sleep = Recorder()
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ProviderTransportError("503", provider="x", status_code=503)
        return "done"

    result = await with_retry(flaky, RetryPolicy(max_attempts=3), sleep=sleep)

    assert result == "done"
    assert attempts == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_terminal_error_is_not_retried():
    sleep = Recorder()
    attempts = 0

    async def misconfigured():
        nonlocal attempts
        attempts += 1
        raise ProviderConfigurationError("401", provider="x")

    with pytest.raises(ProviderConfigurationError):
        await with_retry(misconfigured, RetryPolicy(max_attempts=3), sleep=sleep)

    assert attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unknown_exceptions_propagate_immediately():
    async def buggy():
        raise KeyError("oops")

    with pytest.raises(KeyError):
        await with_retry(buggy, RetryPolicy(max_attempts=5), sleep=Recorder())


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    sleep = Recorder()

    async def down():
        raise ProviderTransportError("down", provider="x")

    with pytest.raises(ProviderTransportError):
        await with_retry(down, RetryPolicy(max_attempts=3), sleep=sleep)

    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_invalid_policy():
    with pytest.raises(ValueError):
        await with_retry(lambda: asyncio.sleep(0), RetryPolicy(max_attempts=0))


@pytest.mark.asyncio
async def test_call_with_timeout_converts_to_provider_timeout():
    async def hang():
        await asyncio.sleep(10)

    with pytest.raises(ProviderTimeoutError) as exc_info:
        await call_with_timeout(hang, timeout=0.01, label="slowpoke")

    assert exc_info.value.retryable
    assert exc_info.value.provider == "slowpoke"


@pytest.mark.asyncio
async def test_call_with_timeout_passes_arguments():
    async def echo(value):
        return value

    assert await call_with_timeout(echo, 42, timeout=1, label="echo") == 42
    assert await call_with_timeout(echo, 7, timeout=None, label="echo") == 7
