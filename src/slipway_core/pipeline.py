"""Per-target deployment pipeline.

One deploy on one target runs strictly in sequence::

    lock -> prepare -> promote | rollout -> verify -> unlock

Every outcome is returned as a DeploymentResult carrying a tagged
``error_kind`` and the last phase reached. The lock is always released,
including when a phase fails.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from slipway_core.collaborators import HealthProber
from slipway_core.errors import (
    ConfigurationError,
    HealthGateFailureError,
    InvalidPlanError,
    LedgerOutOfSyncError,
    SlipwayError,
)
from slipway_core.events import EventChannel, EventKind
from slipway_core.health import wait_healthy
from slipway_core.lock import DeployLock, LockHandle
from slipway_core.release import AtomicReleaseManager, PromotionOutcome
from slipway_core.rollout import ProgressiveRolloutEngine
from slipway_core.schemas.release import Artifact, LockOperation, ReleaseRecord, ReleaseStatus
from slipway_core.schemas.results import DeploymentResult, OperationKind, RolloutResult
from slipway_core.schemas.rollout import AnalysisThresholds, RolloutPlan
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


class DeployStrategy(str, Enum):
    """How a prepared release reaches traffic."""

    DIRECT = "direct"
    CANARY = "canary"


class DeploymentRequest(BaseModel):
    """What to deploy and how.

    Attributes:
        version: Semantic version of the artifact.
        artifact: Local payload to upload.
        strategy: ``direct`` promotes immediately, ``canary`` runs a rollout.
        plan: Rollout plan; falls back to the target's configured canary plan.
        thresholds: Gate thresholds; fall back to the target's canary config.
        total_capacity: Replica total for the rollout; defaults to the target's.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(..., min_length=1)
    artifact: Artifact
    strategy: DeployStrategy = DeployStrategy.DIRECT
    plan: RolloutPlan | None = None
    thresholds: AnalysisThresholds | None = None
    total_capacity: int | None = Field(default=None, ge=1)


class DeploymentPipeline:
    """Run deploys and rollbacks on single targets under the deploy lock.

    Example:
        >>> pipeline = DeploymentPipeline(lock, manager, prober=HttpHealthProber())
        >>> result = await pipeline.deploy(
        ...     "prod", DeploymentRequest(version="2.1.0", artifact=Artifact(path=Path("dist")))
        ... )
        >>> result.success, result.exit_code
        (True, 0)
    """

    def __init__(
        self,
        lock: DeployLock,
        release_manager: AtomicReleaseManager,
        *,
        rollout_engine: ProgressiveRolloutEngine | None = None,
        prober: HealthProber | None = None,
        events: EventChannel | None = None,
        metrics: DeployMetrics | None = None,
        verify_interval_s: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._lock = lock
        self._release_manager = release_manager
        self._rollout_engine = rollout_engine
        self._prober = prober
        self._events = events or EventChannel()
        self._metrics = metrics or DeployMetrics()
        self._verify_interval_s = verify_interval_s
        self._sleep = sleep

    async def deploy(self, target: str, request: DeploymentRequest) -> DeploymentResult:
        """Deploy ``request`` to ``target``.

        Never raises for deployment failures; inspect ``result.success`` and
        ``result.error_kind``.
        """
        start = time.monotonic()
        log = logger.bind(target=target, version=request.version, strategy=request.strategy.value)
        log.info("deploy_started")
        self._events.emit(
            EventKind.DEPLOY_STARTED,
            target=target,
            version=request.version,
            strategy=request.strategy.value,
        )

        phase = "lock"
        record: ReleaseRecord | None = None
        handle: LockHandle | None = None
        warnings: list[str] = []

        with create_span(
            DeployMetrics.SPAN_DEPLOY,
            attributes={
                "slipway.target": target,
                "slipway.version": request.version,
                "slipway.strategy": request.strategy.value,
            },
        ), self._metrics.operation_timer("deploy", target):
            try:
                handle = await self._lock.acquire(target, LockOperation.DEPLOY)

                phase = "prepare"
                record = await self._release_manager.prepare(
                    target, request.version, request.artifact
                )

                if request.strategy == DeployStrategy.CANARY:
                    phase = "rollout"
                    rollout = await self._rollout(target, record, request, warnings)
                    if rollout is not None and not rollout.success:
                        result = DeploymentResult(
                            success=False,
                            message=rollout.message,
                            target=target,
                            release_id=record.release_id,
                            version=request.version,
                            phase=phase,
                            error_kind=rollout.error_kind,
                            duration_ms=int((time.monotonic() - start) * 1000),
                        )
                        return self._finish_failure(result, log)
                else:
                    phase = "promote"
                    warnings += await self._promote(record)
                    phase = "verify"
                    await self._verify(target, record)
            except Exception as e:
                if not isinstance(e, SlipwayError):
                    log.exception("deploy_unexpected_error", phase=phase)
                result = DeploymentResult.from_error(
                    e,
                    target=target,
                    phase=phase,
                    release_id=record.release_id if record else None,
                    version=request.version,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    warnings=warnings,
                )
                return self._finish_failure(result, log)
            finally:
                if handle is not None:
                    await self._lock.release(handle)

        result = DeploymentResult(
            success=True,
            message=f"Deployed {request.version} to {target}",
            target=target,
            release_id=record.release_id,
            version=request.version,
            phase="complete",
            duration_ms=int((time.monotonic() - start) * 1000),
            warnings=warnings,
        )
        self._metrics.record_deployment(target, OperationKind.DEPLOY.value, success=True)
        log.info("deploy_succeeded", release_id=record.release_id, duration_ms=result.duration_ms)
        self._events.emit(
            EventKind.DEPLOY_SUCCEEDED,
            target=target,
            release_id=record.release_id,
            message=result.message,
            version=request.version,
        )
        return result

    def _finish_failure(
        self,
        result: DeploymentResult,
        log: structlog.stdlib.BoundLogger,
    ) -> DeploymentResult:
        self._metrics.record_deployment(result.target, result.operation.value, success=False)
        log.error(
            f"{result.operation.value}_failed",
            phase=result.phase,
            error_kind=result.error_kind.value if result.error_kind else None,
            message=result.message,
        )
        self._events.emit(
            EventKind.DEPLOY_FAILED,
            target=result.target,
            release_id=result.release_id,
            message=result.message,
            phase=result.phase,
            error_kind=result.error_kind.value if result.error_kind else None,
        )
        return result

    async def _promote(self, record: ReleaseRecord) -> list[str]:
        try:
            outcome = await self._release_manager.promote(record.release_id)
        except LedgerOutOfSyncError:
            # ``current`` already serves this release.
            raise
        except Exception:
            await self._discard_quietly(record)
            raise
        return outcome.warnings

    async def _discard_quietly(self, record: ReleaseRecord) -> None:
        try:
            await self._release_manager.discard(record.release_id, ReleaseStatus.FAILED)
        except Exception as e:
            logger.warning(
                "discard_after_failure_failed",
                target=record.target,
                release_id=record.release_id,
                error=str(e),
            )

    async def _rollout(
        self,
        target: str,
        record: ReleaseRecord,
        request: DeploymentRequest,
        warnings: list[str],
    ) -> RolloutResult | None:
        """Run a canary rollout; with no baseline yet the release is promoted directly."""
        target_config = self._release_manager.binding(target).config
        canary = target_config.canary
        plan = request.plan or (canary.plan if canary else None)
        if plan is None:
            await self._discard_quietly(record)
            raise InvalidPlanError(f"no rollout plan given or configured for {target}")
        if self._rollout_engine is None:
            await self._discard_quietly(record)
            raise ConfigurationError("pipeline", "canary strategy requires a rollout engine")

        if await self._release_manager.ledger.current(target) is None:
            logger.info("rollout_without_baseline", target=target, release_id=record.release_id)
            warnings.extend(await self._promote(record))
            return None

        thresholds = request.thresholds or (canary.thresholds if canary else None)
        return await self._rollout_engine.execute(
            target,
            record.release_id,
            plan,
            total_capacity=request.total_capacity,
            thresholds=thresholds,
        )

    async def _verify(self, target: str, record: ReleaseRecord) -> None:
        health = self._release_manager.binding(target).config.health_check
        if self._prober is None or health is None or not health.enabled:
            return

        check = await wait_healthy(
            self._prober,
            health,
            interval_s=self._verify_interval_s,
            sleep=self._sleep,
        )
        if check.healthy:
            return

        logger.error(
            "post_promote_verification_failed",
            target=target,
            release_id=record.release_id,
            message=check.message,
        )
        reasons = [f"Health check failed: {check.message}"]
        try:
            outcome: PromotionOutcome = await self._release_manager.rollback_to_previous(target)
        except Exception as e:
            reasons.append(f"automatic rollback failed: {e}")
        else:
            reasons.append(f"rolled back to {outcome.record.release_id}")
            self._events.emit(
                EventKind.AUTO_ROLLBACK_TRIGGERED,
                target=target,
                release_id=outcome.record.release_id,
                message=check.message,
            )
        raise HealthGateFailureError(target, 0, reasons)

    async def rollback(self, target: str, release_id: str | None = None) -> DeploymentResult:
        """Roll ``target`` back under the lock.

        Args:
            target: Target to roll back.
            release_id: Specific release to restore. Defaults to the release
                the current one replaced.
        """
        start = time.monotonic()
        log = logger.bind(target=target, requested_release_id=release_id)
        phase = "lock"
        handle: LockHandle | None = None

        with create_span(
            DeployMetrics.SPAN_ROLLBACK,
            attributes={"slipway.target": target, "slipway.release_id": release_id},
        ):
            try:
                handle = await self._lock.acquire(target, LockOperation.ROLLBACK)
                phase = "rollback"
                if release_id is None:
                    outcome = await self._release_manager.rollback_to_previous(target)
                else:
                    outcome = await self._release_manager.rollback_to(target, release_id)
            except Exception as e:
                if not isinstance(e, SlipwayError):
                    log.exception("rollback_unexpected_error", phase=phase)
                result = DeploymentResult.from_error(
                    e,
                    target=target,
                    operation=OperationKind.ROLLBACK,
                    phase=phase,
                    release_id=release_id,
                    duration_ms=int((time.monotonic() - start) * 1000),
                )
                return self._finish_failure(result, log)
            finally:
                if handle is not None:
                    await self._lock.release(handle)

        active = outcome.record
        self._metrics.record_deployment(target, OperationKind.ROLLBACK.value, success=True)
        log.info("rollback_succeeded", release_id=active.release_id, version=active.version)
        return DeploymentResult(
            operation=OperationKind.ROLLBACK,
            success=True,
            message=f"Rolled back {target} to {active.version} ({active.release_id})",
            target=target,
            release_id=active.release_id,
            version=active.version,
            phase="complete",
            duration_ms=int((time.monotonic() - start) * 1000),
            warnings=outcome.warnings,
        )


__all__ = ["DeployStrategy", "DeploymentPipeline", "DeploymentRequest"]
