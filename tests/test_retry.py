"""Retry with backoff."""

import datetime

import pytest

from keypass_tx.config import EngineConfig
from keypass_tx.errors import ErrorCode, RetriesExhausted, TransactionRejected, UserError
from keypass_tx.retry import RetryCoordinator


class Sleeper:
    """Record sleeps instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture()
def sleeper() -> Sleeper:
    return Sleeper()


@pytest.fixture()
def retry(sleeper) -> RetryCoordinator:
    config = EngineConfig(
        max_retries=3,
        base_retry_delay=datetime.timedelta(seconds=1),
        backoff_factor=2.0,
        max_retry_delay=datetime.timedelta(seconds=3),
    )
    return RetryCoordinator(config, sleep=sleeper)


def failing(errors: list, result="ok"):
    """Attempt function raising the given errors in order, then succeeding."""
    calls = []

    async def attempt(i: int):
        calls.append(i)
        if errors:
            raise errors.pop(0)
        return result

    return attempt, calls


@pytest.mark.asyncio
async def test_success_first_time(retry, sleeper):
    attempt, calls = failing([])
    assert await retry.run(attempt) == ("ok", 0)
    assert calls == [0]
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_transient_then_success(retry, sleeper):
    """Two connection timeouts, then success on the third attempt."""
    attempt, calls = failing([ConnectionError("connection timeout"), ConnectionError("connection timeout")])
    result, retry_count = await retry.run(attempt)
    assert result == "ok"
    assert retry_count == 2
    assert calls == [0, 1, 2]
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_bound(retry, sleeper):
    """Always failing with a retryable error stops after max_retries + 1 attempts."""
    errors = [ConnectionError("connection refused") for _ in range(10)]
    attempt, calls = failing(errors)
    with pytest.raises(RetriesExhausted) as exc_info:
        await retry.run(attempt)
    assert calls == [0, 1, 2, 3]
    assert exc_info.value.attempts == 4
    assert "4 attempts" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, Exception)
    # Capped by max_retry_delay
    assert sleeper.delays == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_terminal_not_retried(retry, sleeper):
    attempt, calls = failing([ValueError("insufficient funds for gas * price + value")])
    with pytest.raises(UserError) as exc_info:
        await retry.run(attempt)
    assert calls == [0]
    assert sleeper.delays == []
    assert exc_info.value.code == ErrorCode.insufficient_funds
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_repeating_transaction_error_is_terminal(retry):
    """Fresh nonce did not help twice in a row, stop."""
    attempt, calls = failing([ValueError("nonce too low"), ValueError("nonce too low"), ValueError("nonce too low")])
    with pytest.raises(TransactionRejected) as exc_info:
        await retry.run(attempt)
    assert calls == [0, 1]
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_different_transaction_errors_keep_retrying(retry):
    attempt, calls = failing([ValueError("nonce too low"), ValueError("transaction underpriced")])
    result, retry_count = await retry.run(attempt)
    assert result == "ok"
    assert retry_count == 2


@pytest.mark.asyncio
async def test_max_retries_override(retry):
    attempt, calls = failing([ConnectionError("down")])
    with pytest.raises(RetriesExhausted):
        await retry.run(attempt, max_retries=0)
    assert calls == [0]
