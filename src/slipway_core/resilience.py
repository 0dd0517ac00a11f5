"""Resilience patterns for remote-affecting deployment operations.

Every call that touches a target (remote commands, artifact transfer, health
probes, metrics queries, state store I/O) is expected to go through this
module so that transient failures are retried with backoff and hung calls
are abandoned after a time budget.

Key Components:
    with_timeout: Race an awaitable against a timer, cancel it on expiry
    RetryPolicy: Exponential backoff for errors a predicate calls transient
    with_retry: Functional form of RetryPolicy.call
    ResilienceSupervisor: Timeout per attempt plus retry, configured once
    is_transient: Default classifier for infrastructure-class errors

Retry Timeline (default RetryConfig):
    - Attempt 1: Immediate
    - Attempt 2: 1s delay
    - Attempt 3: 2s delay

Example:
    >>> supervisor = ResilienceSupervisor(RetryConfig(max_attempts=3))
    >>> result = await supervisor.run(
    ...     lambda: executor.run("mkdir -p /srv/app/releases/20261019"),
    ...     operation="create_release_dir",
    ...     timeout_s=30,
    ... )
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx
import structlog

from slipway_core.errors import OperationTimeoutError, SlipwayError
from slipway_core.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]
RetryPredicate = Callable[[BaseException], bool]

# Substrings of OS/network error messages that indicate a transient fault
TRANSIENT_MARKERS: tuple[str, ...] = (
    "ECONNREFUSED",
    "ECONNRESET",
    "ETIMEDOUT",
    "ENOTFOUND",
    "Network error",
    "Connection refused",
    "Connection reset",
)


def is_transient(exc: BaseException) -> bool:
    """Return True for infrastructure-class errors worth retrying.

    Logical failures (validation, lock contention, missing release) carry
    ``retryable=False`` and are never retried.

    Args:
        exc: The exception raised by the operation.

    Returns:
        True if the error is believed transient.
    """
    if isinstance(exc, SlipwayError):
        return exc.retryable
    if isinstance(exc, (ConnectionError, TimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, OSError):
        return True
    message = str(exc)
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def with_timeout(
    op: Callable[[], Awaitable[T]],
    timeout_s: float | None,
    operation: str,
) -> T:
    """Run ``op`` with a time budget.

    The operation is cancelled when the budget runs out, and the caller sees
    OperationTimeoutError with the elapsed time and the operation name.

    Args:
        op: Zero-argument callable returning the awaitable to run.
        timeout_s: Budget in seconds. None disables the timeout.
        operation: Name used in the error and logs.

    Returns:
        The operation's result.

    Raises:
        OperationTimeoutError: If the budget was exceeded.
    """
    if timeout_s is None:
        return await op()

    start = time.monotonic()
    try:
        return await asyncio.wait_for(op(), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        if isinstance(e, OperationTimeoutError):
            raise
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.warning(
            "operation_timeout",
            operation=operation,
            timeout_s=timeout_s,
            elapsed_ms=elapsed_ms,
        )
        raise OperationTimeoutError(operation, timeout_s, elapsed_ms) from e


class RetryPolicy:
    """Retry policy with exponential backoff and optional jitter.

    Only errors accepted by ``is_retryable`` are retried; anything else
    propagates on first occurrence. After the last attempt the last error is
    re-raised unchanged.

    Example:
        >>> policy = RetryPolicy(RetryConfig(max_attempts=3, initial_delay_ms=1000))
        >>>
        >>> @policy.wrap
        ... async def upload():
        ...     return await transfer.upload(src, dst)
        >>>
        >>> await policy.call(lambda: transfer.upload(src, dst), operation="upload")

    Attributes:
        config: RetryConfig with attempt count, delays and jitter setting.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        is_retryable: RetryPredicate | None = None,
        *,
        sleep: SleepFn | None = None,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            is_retryable: Predicate deciding which errors are transient.
                Defaults to is_transient.
            sleep: Awaitable sleep used between attempts (injectable for tests).
        """
        self._config = config or RetryConfig()
        self._is_retryable = is_retryable or is_transient
        self._sleep = sleep or asyncio.sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before the next attempt.

        Uses ``initial * multiplier ** attempt`` capped at ``max_delay_ms``,
        where ``attempt`` is the 0-indexed number of the attempt that just
        failed. Jitter adds +/-25% when enabled.

        Args:
            attempt: Attempt that just failed (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: BaseException) -> bool:
        """Check whether ``exception`` is classified as transient."""
        return self._is_retryable(exception)

    async def call(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        operation: str = "operation",
    ) -> T:
        """Run ``op`` until it succeeds, fails permanently, or attempts run out.

        Args:
            op: Zero-argument callable returning a fresh awaitable per attempt.
            operation: Name used in logs.

        Returns:
            The first successful result.
        """
        max_attempts = self._config.max_attempts
        for attempt in range(max_attempts):
            try:
                return await op()
            except Exception as e:
                if not self.should_retry(e):
                    raise

                remaining = max_attempts - attempt - 1
                if remaining <= 0:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=max_attempts,
                        error=str(e),
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        raise RuntimeError("Retry loop exited without result")

    def wrap(self, func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        """Decorator adding retry logic to an async function.

        Example:
            >>> @policy.wrap
            ... async def fetch_metrics():
            ...     return await source.fetch("prod", release)
        """

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await self.call(
                lambda: func(*args, **kwargs),
                operation=getattr(func, "__name__", "operation"),
            )

        return wrapper


async def with_retry(
    op: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    is_retryable: RetryPredicate | None = None,
    *,
    operation: str = "operation",
    sleep: SleepFn | None = None,
) -> T:
    """Retry ``op`` with exponential backoff.

    Functional form of ``RetryPolicy(config, is_retryable).call(op)``.
    """
    policy = RetryPolicy(config, is_retryable, sleep=sleep)
    return await policy.call(op, operation=operation)


class ResilienceSupervisor:
    """Timeout-per-attempt plus retry, configured once and shared.

    Components receive a supervisor through their constructor so that retry
    budgets and the sleep function can be substituted in tests.

    Example:
        >>> supervisor = ResilienceSupervisor(RetryConfig(max_attempts=5))
        >>> await supervisor.run(lambda: prober.check(cfg), operation="health", timeout_s=5)
    """

    def __init__(
        self,
        retry: RetryConfig | None = None,
        *,
        is_retryable: RetryPredicate | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._retry = retry or RetryConfig()
        self._is_retryable = is_retryable or is_transient
        self._sleep = sleep

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        operation: str,
        timeout_s: float | None = None,
        retry: bool = True,
        is_retryable: RetryPredicate | None = None,
    ) -> T:
        """Run ``op`` under a per-attempt timeout, retrying transient failures.

        Args:
            op: Zero-argument callable returning a fresh awaitable per attempt.
            operation: Name used in errors and logs.
            timeout_s: Per-attempt budget in seconds. None disables it.
            retry: Set False for non-idempotent operations (single attempt).
            is_retryable: Overrides the supervisor's predicate for this call.

        Returns:
            The operation's result.
        """

        def attempt() -> Awaitable[T]:
            return with_timeout(op, timeout_s, operation)

        if not retry:
            return await attempt()

        policy = RetryPolicy(
            self._retry,
            is_retryable or self._is_retryable,
            sleep=self._sleep,
        )
        return await policy.call(attempt, operation=operation)


__all__ = [
    "TRANSIENT_MARKERS",
    "ResilienceSupervisor",
    "RetryPolicy",
    "is_transient",
    "with_retry",
    "with_timeout",
]
