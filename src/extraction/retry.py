# src/extraction/retry.py — v2
"""Bounded retry with exponential backoff for extraction calls.

Retryable: ``ProviderUnavailable``, ``ExtractionTimeout`` and unknown
exceptions whose message looks like a rate limit, timeout or 5xx.
Everything else is fatal and re-raised on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from dealintake.config.settings import Settings
from dealintake.core.errors import (
    ExtractionTimeout,
    InvalidResponse,
    PipelineError,
    ProviderUnavailable,
    RetryExhausted,
    UnsupportedFormat,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERROR_TYPES: frozenset[str] = frozenset({"rate_limit", "timeout", "server_error"})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for extraction calls."""

    max_retries: int = 2
    base_delay_s: float = 1.0
    backoff_factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay_s=settings.retry_base_delay_s,
            backoff_factor=settings.retry_backoff_factor,
            jitter=settings.retry_jitter,
        )


def classify_error(error: BaseException) -> str:
    """Classify an exception into an error type."""
    if isinstance(error, ExtractionTimeout) or isinstance(error, asyncio.TimeoutError):
        return "timeout"
    if isinstance(error, ProviderUnavailable):
        return "server_error"
    if isinstance(error, InvalidResponse):
        return "invalid_response"
    if isinstance(error, UnsupportedFormat):
        return "unsupported_format"

    msg = str(error).lower()
    name = type(error).__name__.lower()

    if "429" in msg or "rate limit" in msg or "ratelimit" in name:
        return "rate_limit"
    if "timeout" in name or "timed out" in msg or "timeout" in msg:
        return "timeout"
    if any(c in msg for c in ("500", "502", "503", "504", "unavailable")):
        return "server_error"
    if "json" in msg or "parse" in msg or "decode" in msg:
        return "invalid_response"
    return "unknown"


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, PipelineError):
        return error.retryable
    return classify_error(error) in RETRYABLE_ERROR_TYPES


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Compute delay for a given retry (0-based)."""
    delay = policy.base_delay_s * (policy.backoff_factor ** attempt)
    if policy.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    operation: str = "extract",
    policy: RetryPolicy | None = None,
    on_retry: Callable[[int, str, float], None] | None = None,
    **kwargs: Any,
) -> Any:
    """Execute an async function with bounded retry.

    ``on_retry(attempt, error_type, delay)`` is called before each sleep.

    Raises:
        RetryExhausted: If a retryable error persists past ``max_retries``.
        Exception: Fatal errors are re-raised unchanged.
    """
    policy = policy or RetryPolicy()
    attempts = 0

    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                raise
            error_type = classify_error(e)
            attempts += 1
            if attempts > policy.max_retries:
                raise RetryExhausted(operation, error_type, attempts, e) from e

            delay = compute_delay(policy, attempts - 1)
            logger.warning(
                "'%s' %s (attempt %d/%d), retrying in %.1fs",
                operation, error_type, attempts, policy.max_retries, delay,
            )
            if on_retry is not None:
                on_retry(attempts, error_type, delay)
            await asyncio.sleep(delay)
