"""Retry policies for best-effort side effects of the discount workflow."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.exc import DisconnectionError, TimeoutError as SQLTimeoutError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from discount_engine.business.errors import ExternalServiceError
from discount_engine.observability.logging import get_logger
from discount_engine.observability.metrics import (
    retry_attempts_total,
    retry_failures_total,
)
from discount_engine.observability.tracing import get_tracer


tracer = get_tracer(__name__)
logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    timeout: Optional[float] = None


@dataclass
class StepResult:
    """Outcome of a best-effort step after all retry attempts."""
    ok: bool
    attempts: int
    error: Optional[BaseException] = None
    value: Any = None

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None


# ==== RETRYABILITY CLASSIFICATION ==== #

def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify an exception as transient (worth retrying) or permanent.

    Timeouts, connection failures, HTTP 429 and 5xx responses are transient.
    Any other 4xx response or validation failure is permanent.
    """
    if isinstance(exc, ExternalServiceError):
        return exc.retryable

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500

    return isinstance(
        exc,
        (
            httpx.TimeoutException,
            httpx.TransportError,
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            DisconnectionError,
            SQLTimeoutError,
        ),
    )


# ==== POLICIES ==== #

class RetryPolicy(ABC):
    """Abstract base class for retry policies."""

    def __init__(self, config: RetryConfig, service_name: str = "unknown"):
        self.config = config
        self.service_name = service_name

    @abstractmethod
    def get_tenacity_decorator(self, operation_name: str = "unknown"):
        """Get tenacity decorator for this policy."""
        pass

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if exception should trigger retry."""
        return is_retryable_error(exception)


class ExponentialBackoffPolicy(RetryPolicy):
    """Exponential backoff retry policy with a retryability predicate."""

    def __init__(
        self,
        config: RetryConfig,
        service_name: str = "unknown",
        retryable: Optional[Callable[[BaseException], bool]] = None
    ):
        super().__init__(config, service_name)
        self._retryable = retryable

    def should_retry(self, exception: BaseException) -> bool:
        if self._retryable is not None:
            return self._retryable(exception)
        return super().should_retry(exception)

    def get_tenacity_decorator(self, operation_name: str = "unknown"):
        """Get tenacity decorator with exponential backoff."""
        wait_strategy = wait_exponential(
            multiplier=self.config.base_delay,
            max=self.config.max_delay,
            exp_base=self.config.exponential_base
        )

        return retry(
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_strategy,
            retry=retry_if_exception(self.should_retry),
            before_sleep=self._before_sleep_callback(operation_name),
            reraise=True
        )

    def _before_sleep_callback(self, operation_name: str):
        """Callback before sleep between retries."""
        def callback(retry_state):
            attempt = retry_state.attempt_number
            exception = retry_state.outcome.exception()
            retry_attempts_total.labels(
                service=self.service_name,
                operation=operation_name,
                attempt=str(attempt)
            ).inc()

            logger.warning(
                "Retrying side effect after transient failure",
                service=self.service_name,
                operation=operation_name,
                attempt=attempt,
                error=str(exception),
                error_type=type(exception).__name__
            )

            with tracer.start_as_current_span("retry_attempt") as span:
                span.set_attribute("service", self.service_name)
                span.set_attribute("operation", operation_name)
                span.set_attribute("attempt", attempt)
                span.set_attribute("exception", str(exception))

        return callback


# ==== EXECUTION HELPERS ==== #

async def retry_async_operation(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "unknown"
) -> Any:
    """
    Run an async operation under a retry policy.

    Each attempt is bounded by the policy timeout when one is configured.
    The last exception is re-raised once attempts are exhausted or the
    failure is classified as permanent.
    """
    timeout = policy.config.timeout

    @policy.get_tenacity_decorator(operation_name)
    async def _attempt():
        if timeout:
            return await asyncio.wait_for(operation(), timeout=timeout)
        return await operation()

    return await _attempt()


async def run_best_effort(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "unknown"
) -> StepResult:
    """
    Run a side effect under a retry policy without propagating its failure.

    Returns:
        StepResult: ok flag, attempts made, the operation's return value
            on success and the final error on failure
    """
    attempts = 0

    async def _counted():
        nonlocal attempts
        attempts += 1
        return await operation()

    try:
        value = await retry_async_operation(_counted, policy, operation_name)
    except Exception as e:
        retry_failures_total.labels(
            service=policy.service_name,
            operation=operation_name,
            error_type=type(e).__name__
        ).inc()
        logger.error(
            "Side effect failed",
            service=policy.service_name,
            operation=operation_name,
            attempts=attempts,
            error=str(e),
            error_type=type(e).__name__
        )
        return StepResult(ok=False, attempts=attempts, error=e)

    return StepResult(ok=True, attempts=attempts, value=value)


# ==== POLICY FACTORIES ==== #

def create_side_effect_retry_policy(
    service_name: str = "side_effect",
    settings=None
) -> ExponentialBackoffPolicy:
    """Create the retry policy shared by provider sync, notification and analytics."""
    if settings is None:
        from discount_engine.settings import settings

    config = RetryConfig(
        max_attempts=settings.SIDE_EFFECT_RETRY_MAX_ATTEMPTS,
        base_delay=settings.SIDE_EFFECT_RETRY_BASE_DELAY,
        max_delay=settings.SIDE_EFFECT_RETRY_MAX_DELAY,
        exponential_base=2.0,
        timeout=settings.SIDE_EFFECT_TIMEOUT_SECONDS
    )

    return ExponentialBackoffPolicy(config=config, service_name=service_name)
