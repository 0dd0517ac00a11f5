"""HTTP health probing and post-deploy health watching.

Key Components:
    HttpHealthProber: HealthProber backed by httpx
    wait_healthy: Probe until healthy or the retry budget is spent
    HealthWatch: Background monitor that rolls back after repeated failures

Example:
    >>> prober = HttpHealthProber()
    >>> result = await prober.check(HealthCheckConfig(url="http://10.0.0.5:3000/health"))
    >>> result.healthy
    True

    >>> async with HealthWatch(prober, manager, lock, "prod", config) as watch:
    ...     await asyncio.sleep(600)
    >>> watch.triggered
    False
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import httpx
import structlog

from slipway_core.collaborators import (
    CancelFn,
    HealthCallback,
    HealthCheckResult,
    HealthProber,
)
from slipway_core.errors import LockContentionError
from slipway_core.events import EventChannel, EventKind
from slipway_core.schemas.config import HealthCheckConfig
from slipway_core.schemas.release import LockOperation

if TYPE_CHECKING:
    from slipway_core.lock import DeployLock
    from slipway_core.release import AtomicReleaseManager, PromotionOutcome

logger = structlog.get_logger(__name__)


class HttpHealthProber:
    """Probe an HTTP endpoint.

    A response is healthy when its status is in ``expected_status``, or any
    2xx when that list is empty. Transport errors and timeouts produce an
    unhealthy result rather than an exception.

    Args:
        client: Shared client. When None, a short-lived client is opened per
            probe.
    """

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def _get(self, url: str, timeout_s: float) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=timeout_s)
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.get(url)

    async def check(self, config: HealthCheckConfig) -> HealthCheckResult:
        if not config.enabled:
            return HealthCheckResult(healthy=True, message="health check disabled")

        url = config.resolved_url
        start = time.monotonic()
        try:
            response = await self._get(url, config.timeout_s)
        except httpx.TimeoutException:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("health_check_timeout", url=url, timeout_s=config.timeout_s)
            return HealthCheckResult(
                healthy=False,
                message=f"Health check timed out after {config.timeout_s}s",
                duration_ms=duration_ms,
            )
        except httpx.HTTPError as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("health_check_error", url=url, error=str(e))
            return HealthCheckResult(
                healthy=False,
                message=f"Health check request failed: {e}",
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        status = response.status_code
        if config.expected_status:
            healthy = status in config.expected_status
        else:
            healthy = 200 <= status < 300

        message = f"HTTP {status}" if healthy else f"Unhealthy response: HTTP {status}"
        logger.debug("health_checked", url=url, status_code=status, healthy=healthy)
        return HealthCheckResult(
            healthy=healthy,
            message=message,
            duration_ms=duration_ms,
            status_code=status,
        )

    def monitor(
        self,
        config: HealthCheckConfig,
        on_result: HealthCallback,
        interval_s: float | None = None,
    ) -> CancelFn:
        """Probe every ``interval_s`` seconds until the returned function is called.

        Must be called from a running event loop.
        """
        interval = interval_s if interval_s is not None else config.interval_s

        async def loop() -> None:
            while True:
                result = await self.check(config)
                try:
                    on_result(result)
                except Exception:
                    logger.exception("health_monitor_callback_failed", url=config.resolved_url)
                await asyncio.sleep(interval)

        task = asyncio.get_running_loop().create_task(loop())
        logger.debug("health_monitor_started", url=config.resolved_url, interval_s=interval)
        return task.cancel


async def wait_healthy(
    prober: HealthProber,
    config: HealthCheckConfig,
    *,
    attempts: int | None = None,
    interval_s: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> HealthCheckResult:
    """Probe until one check is healthy or ``attempts`` checks have failed.

    Returns:
        The first healthy result, or the last unhealthy one.
    """
    budget = attempts if attempts is not None else config.retries
    result = await prober.check(config)
    for _ in range(budget - 1):
        if result.healthy:
            break
        await sleep(interval_s)
        result = await prober.check(config)
    return result


class HealthWatch:
    """Roll a target back when its health checks keep failing after a deploy.

    The watch counts consecutive unhealthy results from the prober's
    monitor. When the count reaches ``error_threshold`` it stops monitoring
    and calls ``rollback_to_previous`` exactly once, holding the deploy lock
    for the target. If another operation holds the lock the rollback is
    skipped and ``error`` is the LockContentionError.

    Attributes:
        triggered: Whether the rollback has been started.
        outcome: The rollback outcome once it completed.
        error: The error the rollback raised, if it failed or was skipped.
    """

    def __init__(
        self,
        prober: HealthProber,
        release_manager: AtomicReleaseManager,
        lock: DeployLock,
        target: str,
        config: HealthCheckConfig,
        *,
        error_threshold: int | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self._prober = prober
        self._release_manager = release_manager
        self._lock = lock
        self._target = target
        self._config = config
        self._threshold = error_threshold if error_threshold is not None else config.retries
        self._events = events or EventChannel()
        self._cancel: CancelFn | None = None
        self._failures = 0
        self._task: asyncio.Task[None] | None = None
        self.triggered = False
        self.outcome: PromotionOutcome | None = None
        self.error: Exception | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def rollback_task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self) -> None:
        if self._cancel is not None:
            return
        self._cancel = self._prober.monitor(self._config, self._on_result, self._config.interval_s)
        logger.info("health_watch_started", target=self._target, threshold=self._threshold)

    def stop(self) -> None:
        if self._cancel is not None:
            self._cancel()
            self._cancel = None

    def _on_result(self, result: HealthCheckResult) -> None:
        if self.triggered:
            return
        if result.healthy:
            self._failures = 0
            return
        self._failures += 1
        logger.warning(
            "health_watch_failure",
            target=self._target,
            consecutive_failures=self._failures,
            threshold=self._threshold,
            message=result.message,
        )
        if self._failures >= self._threshold:
            self.triggered = True
            self.stop()
            self._task = asyncio.get_running_loop().create_task(self._rollback(result))

    async def _rollback(self, last: HealthCheckResult) -> None:
        try:
            async with self._lock.hold(self._target, LockOperation.ROLLBACK):
                self._events.emit(
                    EventKind.AUTO_ROLLBACK_TRIGGERED,
                    target=self._target,
                    message=last.message,
                    consecutive_failures=self._failures,
                )
                logger.error(
                    "auto_rollback_triggered",
                    target=self._target,
                    consecutive_failures=self._failures,
                )
                self.outcome = await self._release_manager.rollback_to_previous(self._target)
        except LockContentionError as e:
            self.error = e
            logger.warning("auto_rollback_skipped", target=self._target, reason=str(e))
        except Exception as e:
            self.error = e
            logger.error("auto_rollback_failed", target=self._target, error=str(e))

    async def wait(self) -> None:
        """Wait for a triggered rollback to finish."""
        if self._task is not None:
            await self._task

    async def __aenter__(self) -> HealthWatch:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.stop()
        await self.wait()


__all__ = ["HealthWatch", "HttpHealthProber", "wait_healthy"]
