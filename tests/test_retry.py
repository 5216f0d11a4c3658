"""Tests for the retry controller."""

import random

import pytest

from capture_upload.exceptions import (
    GrantError,
    TransferError,
    UploadCancelledError,
    UploadValidationError,
)
from capture_upload.pipeline.retry import RetryController, default_retryable


def test_backoff_doubles_until_capped():
    controller = RetryController(base_delay=1.0, max_delay=30.0, max_jitter=0.0)

    assert [controller.backoff(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


def test_backoff_jitter_stays_in_range():
    controller = RetryController(base_delay=1.0, max_jitter=1.0, rng=random.Random(3))

    for attempt in range(1, 5):
        delay = controller.backoff(attempt)
        base = 2 ** (attempt - 1)
        assert base <= delay <= base + 1.0


def test_default_retryable():
    assert default_retryable(TransferError("Upload timeout", retryable=True))
    assert not default_retryable(TransferError("Upload failed with status: 403"))
    assert not default_retryable(UploadValidationError(["case_id is required"]))
    assert not default_retryable(UploadCancelledError())
    assert not default_retryable(ValueError("boom"))


def test_decide():
    controller = RetryController(max_attempts=3, max_jitter=0.0)
    transient = TransferError("Upload failed with status: 503", retryable=True)

    first = controller.decide(transient, 1)
    assert first.retry and first.delay == 1.0
    assert controller.decide(transient, 2).delay == 2.0
    assert not controller.decide(transient, 3).retry
    assert not controller.decide(TransferError("fatal"), 1).retry


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryController(max_attempts=0)


@pytest.mark.asyncio
async def test_run_retries_transient_failures(retry, sleep):
    """Two transient failures then success: three attempts, two sleeps."""
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        if attempt < 3:
            raise TransferError("Upload failed with status: 503", retryable=True)
        return "ok"

    retried = []
    result, attempts = await retry.run(
        operation, on_retry=lambda error, attempt, delay: retried.append((attempt, delay))
    )

    assert result == "ok"
    assert attempts == 3
    assert calls == [1, 2, 3]
    assert sleep.delays == [1.0, 2.0]
    assert retried == [(1, 1.0), (2, 2.0)]


@pytest.mark.asyncio
async def test_run_stops_after_max_attempts(retry, sleep):
    async def operation(attempt):
        raise TransferError("Upload timeout", retryable=True)

    with pytest.raises(TransferError) as exc_info:
        await retry.run(operation)

    assert exc_info.value.attempts == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_run_does_not_retry_fatal_errors(retry, sleep):
    async def operation(attempt):
        raise GrantError("Failed to get upload URL: Forbidden", status_code=403)

    with pytest.raises(GrantError) as exc_info:
        await retry.run(operation)

    assert exc_info.value.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_run_honours_custom_predicate(retry):
    async def operation(attempt):
        if attempt == 1:
            raise ValueError("flaky")
        return attempt

    result, attempts = await retry.run(
        operation, retryable=lambda error: isinstance(error, ValueError)
    )

    assert (result, attempts) == (2, 2)


@pytest.mark.asyncio
async def test_run_stops_when_cancelled(retry, sleep):
    """A cancel flag raised during a failing attempt ends the loop."""
    cancelled = False

    async def operation(attempt):
        nonlocal cancelled
        cancelled = True
        raise TransferError("Upload timeout", retryable=True)

    with pytest.raises(TransferError):
        await retry.run(operation, is_cancelled=lambda: cancelled)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_run_checks_cancel_flag_before_first_attempt(retry):
    async def operation(attempt):
        raise AssertionError("operation must not run")

    with pytest.raises(UploadCancelledError):
        await retry.run(operation, is_cancelled=lambda: True)
