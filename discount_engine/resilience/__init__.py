"""
Resilience patterns for the discount workflow's side effects.

Payment provider sync, client notification and analytics recording are
best-effort steps: each runs under a bounded retry policy and reports a
StepResult instead of raising into the apply workflow.
"""

from .retry_policies import (
    RetryConfig,
    RetryPolicy,
    ExponentialBackoffPolicy,
    StepResult,
    create_side_effect_retry_policy,
    is_retryable_error,
    retry_async_operation,
    run_best_effort,
)

__all__ = [
    "RetryConfig",
    "RetryPolicy",
    "ExponentialBackoffPolicy",
    "StepResult",
    "create_side_effect_retry_policy",
    "is_retryable_error",
    "retry_async_operation",
    "run_best_effort",
]
