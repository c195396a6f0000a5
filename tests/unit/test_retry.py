import pytest
from unittest.mock import AsyncMock

from knowledge_architect.services.providers import ProviderResponseError
from knowledge_architect.utils.retry import RetryExecutor, is_rate_limit_error


def rate_limited(message="Rate limit exceeded"):
    return ProviderResponseError(message, status_code=429)


def make_stream_factory(script):
    """Each call to the factory replays the next scripted attempt."""
    attempts = []

    def factory():
        outcome = script[len(attempts)]
        attempts.append(outcome)

        async def gen():
            for item in outcome:
                if isinstance(item, BaseException):
                    raise item
                yield item

        return gen()

    return factory, attempts


def test_is_rate_limit_error():
    assert is_rate_limit_error(rate_limited("slow down"))
    assert is_rate_limit_error(Exception("Rate limit reached for requests"))
    assert is_rate_limit_error(Exception("RESOURCE_EXHAUSTED: try later"))
    assert is_rate_limit_error(Exception("HTTP 429"))
    assert not is_rate_limit_error(ValueError("invalid x-api-key"))
    assert not is_rate_limit_error(ProviderResponseError("Server error", status_code=500))


def test_delay_for_doubles():
    executor = RetryExecutor()
    assert executor.delay_for(1) == 2.0
    assert executor.delay_for(2) == 4.0


def test_invalid_max_attempts():
    with pytest.raises(ValueError):
        RetryExecutor(max_attempts=0)


def test_from_settings(test_settings):
    executor = RetryExecutor.from_settings(test_settings)
    assert executor.max_attempts == 3
    assert executor.base_delay == 0


@pytest.mark.asyncio
async def test_execute_success_first_attempt():
    sleep = AsyncMock()
    operation = AsyncMock(return_value="success")

    result = await RetryExecutor(sleep=sleep).execute(operation, label="test")

    assert result == "success"
    assert operation.call_count == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_execute_retries_rate_limit_with_backoff():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=[rate_limited(), rate_limited(), "success"])

    result = await RetryExecutor(sleep=sleep).execute(operation, label="Stage: condenser")

    assert result == "success"
    assert operation.call_count == 3
    assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]


@pytest.mark.asyncio
async def test_execute_exhausted_reraises_last_error():
    sleep = AsyncMock()
    last = rate_limited("429 third time")
    operation = AsyncMock(side_effect=[rate_limited(), rate_limited(), last])

    with pytest.raises(ProviderResponseError) as exc_info:
        await RetryExecutor(sleep=sleep).execute(operation, label="test")

    assert exc_info.value is last
    assert operation.call_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_execute_does_not_retry_other_errors():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=ValueError("invalid x-api-key"))

    with pytest.raises(ValueError, match="invalid x-api-key"):
        await RetryExecutor(sleep=sleep).execute(operation, label="test")

    assert operation.call_count == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_execute_single_attempt_policy():
    sleep = AsyncMock()
    operation = AsyncMock(side_effect=rate_limited())

    with pytest.raises(ProviderResponseError):
        await RetryExecutor(max_attempts=1, sleep=sleep).execute(operation, label="test")

    assert operation.call_count == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_execute_logs_failed_attempts(observability):
    operation = AsyncMock(side_effect=[rate_limited(), "ok"])
    executor = RetryExecutor(sleep=AsyncMock(), observability=observability)

    await executor.execute(operation, label="generateTitle")

    entries = observability.collector.get_logs(category="retry")
    assert len(entries) == 1
    assert entries[0].context == "generateTitle"
    assert entries[0].metadata["will_retry"] is True


@pytest.mark.asyncio
async def test_execute_stream_retries_before_first_chunk():
    sleep = AsyncMock()
    factory, attempts = make_stream_factory([
        [rate_limited()],
        ["Hello", " world"],
    ])

    chunks = [chunk async for chunk in RetryExecutor(sleep=sleep).execute_stream(factory, "test")]

    assert chunks == ["Hello", " world"]
    assert len(attempts) == 2
    sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_execute_stream_does_not_retry_after_delivery():
    sleep = AsyncMock()
    factory, attempts = make_stream_factory([
        ["Hello", rate_limited()],
        ["never"],
    ])

    received = []
    with pytest.raises(ProviderResponseError):
        async for chunk in RetryExecutor(sleep=sleep).execute_stream(factory, "test"):
            received.append(chunk)

    assert received == ["Hello"]
    assert len(attempts) == 1
    sleep.assert_not_called()


@pytest.mark.asyncio
async def test_execute_stream_exhausted():
    sleep = AsyncMock()
    factory, attempts = make_stream_factory([[rate_limited()]] * 3)

    with pytest.raises(ProviderResponseError):
        async for _ in RetryExecutor(sleep=sleep).execute_stream(factory, "test"):
            pass

    assert len(attempts) == 3
    assert [call.args[0] for call in sleep.await_args_list] == [2.0, 4.0]
