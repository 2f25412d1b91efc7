"""Unit tests for side-effect retry policies."""

import asyncio

import httpx
import pytest

from discount_engine.business.errors import ExternalServiceError
from discount_engine.resilience.retry_policies import (
    ExponentialBackoffPolicy,
    RetryConfig,
    create_side_effect_retry_policy,
    is_retryable_error,
    retry_async_operation,
    run_best_effort,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://service.test")
    return httpx.HTTPStatusError(
        "failed", request=request, response=httpx.Response(status, request=request)
    )


@pytest.mark.unit
class TestRetryability:
    """Transient versus permanent failure classification."""

    @pytest.mark.parametrize("error", [
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        asyncio.TimeoutError(),
        ConnectionError("reset"),
        _status_error(500),
        _status_error(503),
        _status_error(429),
        ExternalServiceError("down", service="x", retryable=True),
    ])
    def test_transient_errors(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize("error", [
        _status_error(400),
        _status_error(401),
        _status_error(404),
        ExternalServiceError("bad request", service="x", retryable=False),
        ValueError("validation"),
    ])
    def test_permanent_errors(self, error):
        assert not is_retryable_error(error)

    def test_external_error_from_status(self):
        assert ExternalServiceError.from_status("stripe", 502).retryable
        assert ExternalServiceError.from_status("stripe", 429).retryable
        assert not ExternalServiceError.from_status("stripe", 422).retryable


@pytest.mark.unit
class TestRetryExecution:
    """Bounded retries with per-call timeout."""

    @pytest.fixture
    def policy(self):
        return ExponentialBackoffPolicy(
            RetryConfig(max_attempts=3, base_delay=0, max_delay=0, timeout=0.05),
            service_name="test"
        )

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, policy):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        assert await retry_async_operation(flaky, policy, "flaky") == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_fast(self, policy):
        calls = []

        async def rejected():
            calls.append(1)
            raise ExternalServiceError("bad request", service="x", retryable=False)

        with pytest.raises(ExternalServiceError):
            await retry_async_operation(rejected, policy, "rejected")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, policy):
        calls = []

        async def down():
            calls.append(1)
            raise ExternalServiceError("down", service="x", retryable=True)

        result = await run_best_effort(down, policy, "down")

        assert not result.ok
        assert result.attempts == 3
        assert result.error_type == "ExternalServiceError"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, policy):
        calls = []

        async def slow_then_fast():
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            return "done"

        result = await run_best_effort(slow_then_fast, policy, "slow")

        assert result.ok
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_best_effort_success(self, policy):
        async def fine():
            return None

        result = await run_best_effort(fine, policy, "fine")
        assert result.ok
        assert result.attempts == 1
        assert result.error is None

    @pytest.mark.asyncio
    async def test_best_effort_returns_value(self, policy):
        calls = []

        async def flaky_lookup():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("reset")
            return {"provider": "xero"}

        result = await run_best_effort(flaky_lookup, policy, "lookup")

        assert result.ok
        assert result.attempts == 2
        assert result.value == {"provider": "xero"}

    @pytest.mark.asyncio
    async def test_failed_best_effort_has_no_value(self, policy):
        async def broken():
            raise ValueError("bad input")

        result = await run_best_effort(broken, policy, "broken")

        assert not result.ok
        assert result.value is None
        assert result.error_type == "ValueError"


@pytest.mark.unit
def test_side_effect_policy_reads_settings():
    policy = create_side_effect_retry_policy("provider")

    assert policy.service_name == "provider"
    assert policy.config.max_attempts == 2
    assert policy.config.timeout == 1.0
