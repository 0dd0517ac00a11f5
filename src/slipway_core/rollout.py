"""Progressive rollout engine.

Shifts capacity from the active (baseline) release to a prepared candidate
in plan-defined weight steps, running an analysis gate at each step.

State machine::

    running ──> paused ──> running          (pause_for_approval / resume())
    running ──> promoting ──> succeeded     (final step passed)
    running | paused | promoting ──> rolled_back   (gate failed, cancelled, error)
    any non-terminal ──> failed             (a rollback call itself failed)

Per step:
    1. split capacity (candidate scaled first, then baseline)
    2. wait ``gate_duration_s``
    3. run the analysis gate; a failure rolls back
    4. pause for approval if the step asks for it

Rollback scales the candidate to zero, restores the baseline to full
capacity, tears the candidate down and discards it as ``rolled_back``.
Cancellation is observed only between steps. A cancelled task (a job
timeout) rolls back the same way; one interrupted while promoting ends
``failed`` since the repoint may already have landed.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog

from slipway_core.analysis import AnalysisGate
from slipway_core.capacity import compute_split
from slipway_core.collaborators import CapacityController
from slipway_core.errors import (
    ErrorKind,
    HealthGateFailureError,
    InvalidTransitionError,
    LedgerOutOfSyncError,
    ReleaseNotFoundError,
    error_kind_of,
)
from slipway_core.events import EventChannel, EventKind
from slipway_core.release import AtomicReleaseManager
from slipway_core.schemas.release import ReleaseRecord, ReleaseStatus
from slipway_core.schemas.results import RolloutResult
from slipway_core.schemas.rollout import (
    AnalysisThresholds,
    GateResult,
    RolloutPlan,
    RolloutStatus,
)
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

CANCELLED_REASON = "cancelled"

_TRANSITIONS: dict[RolloutStatus, frozenset[RolloutStatus]] = {
    RolloutStatus.RUNNING: frozenset(
        {
            RolloutStatus.PAUSED,
            RolloutStatus.PROMOTING,
            RolloutStatus.ROLLED_BACK,
            RolloutStatus.FAILED,
        }
    ),
    RolloutStatus.PAUSED: frozenset(
        {RolloutStatus.RUNNING, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}
    ),
    RolloutStatus.PROMOTING: frozenset(
        {RolloutStatus.SUCCEEDED, RolloutStatus.ROLLED_BACK, RolloutStatus.FAILED}
    ),
    RolloutStatus.SUCCEEDED: frozenset(),
    RolloutStatus.ROLLED_BACK: frozenset(),
    RolloutStatus.FAILED: frozenset(),
}


class RolloutExecution:
    """Live state of one progressive rollout.

    Owned by the engine while it runs; ``resume()`` and ``cancel()`` are the
    only calls meant for other tasks.
    """

    def __init__(
        self,
        plan: RolloutPlan,
        target: str,
        candidate: ReleaseRecord,
        baseline: ReleaseRecord | None,
        total_capacity: int,
        *,
        thresholds: AnalysisThresholds | None = None,
        execution_id: str | None = None,
    ) -> None:
        self.execution_id = execution_id or uuid.uuid4().hex
        self.plan = plan
        self.target = target
        self.candidate = candidate
        self.baseline = baseline
        self.total_capacity = total_capacity
        self.thresholds = thresholds
        self.status = RolloutStatus.RUNNING
        self.current_step_index = -1
        self.applied_weights: list[int] = []
        self.gate_results: list[GateResult] = []
        self.message = ""
        self.error_kind: ErrorKind | None = None
        self._resume_event = asyncio.Event()
        self._cancel_requested = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def transition(self, new_status: RolloutStatus) -> None:
        """Move to ``new_status``.

        Raises:
            InvalidTransitionError: If the state machine does not allow it.
        """
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.execution_id, self.status.value, new_status.value)
        logger.debug(
            "rollout_transition",
            execution_id=self.execution_id,
            from_status=self.status.value,
            to_status=new_status.value,
        )
        self.status = new_status

    def resume(self) -> None:
        """Release a paused execution.

        Raises:
            InvalidTransitionError: If the execution is not paused.
        """
        if self.status != RolloutStatus.PAUSED:
            raise InvalidTransitionError(
                self.execution_id, self.status.value, RolloutStatus.RUNNING.value
            )
        self._resume_event.set()

    def cancel(self) -> bool:
        """Request cancellation; it takes effect at the next step boundary.

        A request that arrives after the last gate passed, but before
        promotion started, still rolls the candidate back.

        Returns:
            False when the execution already finished (the call is a no-op).
        """
        if self.status.is_terminal:
            return False
        self._cancel_requested = True
        self._resume_event.set()
        return True

    async def wait_for_resume(self) -> None:
        await self._resume_event.wait()
        self._resume_event.clear()


class ProgressiveRolloutEngine:
    """Drive RolloutExecutions for one application.

    Example:
        >>> engine = ProgressiveRolloutEngine(manager, capacity, gate)
        >>> plan = RolloutPlan.from_weights([10, 50, 100], gate_duration_s=60)
        >>> result = await engine.execute("prod", candidate.release_id, plan)
        >>> result.status
        <RolloutStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        release_manager: AtomicReleaseManager,
        capacity: CapacityController,
        gate: AnalysisGate,
        *,
        events: EventChannel | None = None,
        metrics: DeployMetrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._release_manager = release_manager
        self._capacity = capacity
        self._gate = gate
        self._events = events or EventChannel()
        self._metrics = metrics or DeployMetrics()
        self._sleep = sleep

    async def create_execution(
        self,
        target: str,
        candidate_release_id: str,
        plan: RolloutPlan,
        *,
        total_capacity: int | None = None,
        thresholds: AnalysisThresholds | None = None,
    ) -> RolloutExecution:
        """Build an execution for a prepared candidate on ``target``.

        The baseline is whatever release is active on the target now.

        Raises:
            ReleaseNotFoundError: If the candidate is unknown or not prepared.
        """
        binding = self._release_manager.binding(target)
        ledger = self._release_manager.ledger
        candidate = await ledger.get_release(candidate_release_id)
        if candidate is None or candidate.target != target:
            raise ReleaseNotFoundError(target, candidate_release_id, reason="not in ledger")
        if candidate.status != ReleaseStatus.PREPARING:
            raise ReleaseNotFoundError(
                target,
                candidate_release_id,
                reason=f"candidate must be prepared, is {candidate.status.value}",
            )
        baseline = await ledger.current(target)
        return RolloutExecution(
            plan,
            target,
            candidate,
            baseline,
            total_capacity or binding.config.replicas,
            thresholds=thresholds,
        )

    async def execute(
        self,
        target: str,
        candidate_release_id: str,
        plan: RolloutPlan,
        *,
        total_capacity: int | None = None,
        thresholds: AnalysisThresholds | None = None,
    ) -> RolloutResult:
        """Create an execution and run it to a terminal state."""
        execution = await self.create_execution(
            target,
            candidate_release_id,
            plan,
            total_capacity=total_capacity,
            thresholds=thresholds,
        )
        return await self.run(execution)

    async def run(self, execution: RolloutExecution) -> RolloutResult:
        """Run ``execution`` to a terminal state and return its result.

        Gate failures, cancellation and collaborator errors are reported in
        the result rather than raised. If the task running this coroutine is
        cancelled (a job timeout, for instance), the baseline is restored
        before the CancelledError propagates.
        """
        start = time.monotonic()
        log = logger.bind(
            execution_id=execution.execution_id,
            target=execution.target,
            candidate=execution.candidate.release_id,
            baseline=execution.baseline.release_id if execution.baseline else None,
        )
        log.info("rollout_started", weights=execution.plan.weights)
        self._events.emit(
            EventKind.ROLLOUT_STARTED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            execution_id=execution.execution_id,
            weights=execution.plan.weights,
        )

        with create_span(
            DeployMetrics.SPAN_ROLLOUT,
            attributes={
                "slipway.target": execution.target,
                "slipway.release_id": execution.candidate.release_id,
                "slipway.rollout.execution_id": execution.execution_id,
            },
        ), self._metrics.operation_timer("rollout", execution.target):
            try:
                await self._run_steps(execution)
                if execution.status.is_terminal:
                    return self._result(execution, start)
                if execution.cancel_requested:
                    await self._roll_back(execution, None, reason=CANCELLED_REASON)
                    return self._result(execution, start)
                await self._promote(execution)
            except asyncio.CancelledError:
                log.warning("rollout_interrupted", status=execution.status.value)
                await asyncio.shield(self._abort(execution))
                raise
            except LedgerOutOfSyncError as e:
                self._fail(execution, e.kind, str(e))
            except Exception as e:
                log.error("rollout_error", error=str(e), status=execution.status.value)
                await self._roll_back(execution, e, reason=error_kind_of(e).value)

        return self._result(execution, start)

    async def _run_steps(self, execution: RolloutExecution) -> None:
        for index, step in enumerate(execution.plan.steps):
            if execution.cancel_requested:
                await self._roll_back(execution, None, reason=CANCELLED_REASON)
                return

            execution.current_step_index = index
            with create_span(
                DeployMetrics.SPAN_ROLLOUT_STEP,
                attributes={
                    "slipway.target": execution.target,
                    "slipway.rollout.step": index,
                    "slipway.rollout.weight": step.weight,
                },
            ):
                await self._apply_weight(execution, step.weight)
                if step.gate_duration_s > 0:
                    await self._sleep(step.gate_duration_s)

                gate = await self._gate.evaluate(
                    index,
                    step.weight,
                    execution.target,
                    execution.candidate,
                    thresholds=execution.thresholds,
                )
                execution.gate_results.append(gate)

            if not gate.passed:
                self._events.emit(
                    EventKind.ROLLOUT_GATE_FAILED,
                    target=execution.target,
                    release_id=execution.candidate.release_id,
                    message="; ".join(gate.reasons),
                    step_index=index,
                    weight=step.weight,
                )
                error = HealthGateFailureError(execution.target, index, gate.reasons)
                await self._roll_back(execution, error, reason="gate_failed")
                return

            self._events.emit(
                EventKind.ROLLOUT_GATE_PASSED,
                target=execution.target,
                release_id=execution.candidate.release_id,
                step_index=index,
                weight=step.weight,
            )

            if step.pause_for_approval:
                await self._pause(execution, index)
                if execution.status.is_terminal:
                    return

    async def _pause(self, execution: RolloutExecution, index: int) -> None:
        execution.transition(RolloutStatus.PAUSED)
        logger.info(
            "rollout_paused",
            execution_id=execution.execution_id,
            target=execution.target,
            step_index=index,
        )
        self._events.emit(
            EventKind.ROLLOUT_PAUSED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            execution_id=execution.execution_id,
            step_index=index,
        )
        await execution.wait_for_resume()
        if execution.cancel_requested:
            await self._roll_back(execution, None, reason=CANCELLED_REASON)
            return
        execution.transition(RolloutStatus.RUNNING)
        logger.info("rollout_resumed", execution_id=execution.execution_id, step_index=index)
        self._events.emit(
            EventKind.ROLLOUT_RESUMED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            execution_id=execution.execution_id,
            step_index=index,
        )

    async def _apply_weight(self, execution: RolloutExecution, weight: int) -> None:
        candidate_units, baseline_units = compute_split(execution.total_capacity, weight)
        if execution.baseline is None:
            candidate_units = max(candidate_units, 1)
        await self._capacity.scale(execution.target, execution.candidate, candidate_units)
        if execution.baseline is not None:
            await self._capacity.scale(execution.target, execution.baseline, baseline_units)

        execution.applied_weights.append(weight)
        self._metrics.set_rollout_weight(execution.target, weight)
        logger.info(
            "rollout_weight_applied",
            execution_id=execution.execution_id,
            target=execution.target,
            weight=weight,
            candidate_replicas=candidate_units,
            baseline_replicas=baseline_units if execution.baseline else None,
        )
        self._events.emit(
            EventKind.ROLLOUT_WEIGHT_APPLIED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            weight=weight,
            candidate_replicas=candidate_units,
            baseline_replicas=baseline_units,
        )

    async def _promote(self, execution: RolloutExecution) -> None:
        execution.transition(RolloutStatus.PROMOTING)
        outcome = await self._release_manager.promote(execution.candidate.release_id)

        warnings = list(outcome.warnings)
        if execution.baseline is not None:
            try:
                await self._capacity.teardown(execution.target, execution.baseline)
            except Exception as e:
                logger.warning(
                    "baseline_teardown_failed",
                    execution_id=execution.execution_id,
                    target=execution.target,
                    baseline=execution.baseline.release_id,
                    error=str(e),
                )
                warnings.append(f"baseline teardown failed: {e}")

        execution.transition(RolloutStatus.SUCCEEDED)
        execution.message = f"Rolled out {execution.candidate.version} to {execution.target}"
        if warnings:
            execution.message += f" ({len(warnings)} warning(s): {'; '.join(warnings)})"
        logger.info(
            "rollout_succeeded",
            execution_id=execution.execution_id,
            target=execution.target,
            applied_weights=execution.applied_weights,
        )
        self._events.emit(
            EventKind.ROLLOUT_SUCCEEDED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            message=execution.message,
            applied_weights=execution.applied_weights,
        )

    async def _abort(self, execution: RolloutExecution) -> None:
        """Bring an interrupted execution to a terminal state."""
        if execution.status.is_terminal:
            return
        if execution.status == RolloutStatus.PROMOTING:
            # The repoint may or may not have landed.
            self._fail(
                execution,
                ErrorKind.CANCELLED,
                "Rollout cancelled while promoting; run reconcile() to confirm the live release",
            )
            return
        await self._roll_back(execution, None, reason=CANCELLED_REASON)

    def _fail(self, execution: RolloutExecution, kind: ErrorKind, message: str) -> None:
        execution.transition(RolloutStatus.FAILED)
        execution.error_kind = kind
        execution.message = message
        logger.error(
            "rollout_failed",
            execution_id=execution.execution_id,
            target=execution.target,
            error_kind=kind.value,
            message=message,
        )
        self._events.emit(
            EventKind.ROLLOUT_FAILED,
            target=execution.target,
            release_id=execution.candidate.release_id,
            message=message,
        )

    async def _roll_back(
        self,
        execution: RolloutExecution,
        error: BaseException | None,
        *,
        reason: str,
    ) -> None:
        """Restore the baseline and discard the candidate.

        Any error while doing so ends the execution ``failed``.
        """
        target = execution.target
        candidate = execution.candidate
        cause = (str(error) or type(error).__name__) if error is not None else "Rollout cancelled"
        try:
            await self._capacity.scale(target, candidate, 0)
            if execution.baseline is not None:
                await self._capacity.scale(target, execution.baseline, execution.total_capacity)
            await self._capacity.teardown(target, candidate)
            await self._release_manager.discard(candidate.release_id, ReleaseStatus.ROLLED_BACK)
        except Exception as rollback_error:
            logger.error(
                "rollout_rollback_failed",
                execution_id=execution.execution_id,
                target=target,
                cause=cause,
                error=str(rollback_error),
            )
            self._fail(
                execution,
                error_kind_of(rollback_error),
                f"{cause}; rollback failed: {rollback_error}",
            )
            return

        execution.transition(RolloutStatus.ROLLED_BACK)
        execution.error_kind = error_kind_of(error) if error is not None else ErrorKind.CANCELLED
        execution.message = f"{cause}; rolled back to baseline"
        self._metrics.record_rollback(target, reason)
        logger.warning(
            "rollout_rolled_back",
            execution_id=execution.execution_id,
            target=target,
            reason=reason,
            cause=cause,
        )
        self._events.emit(
            EventKind.ROLLOUT_ROLLED_BACK,
            target=target,
            release_id=candidate.release_id,
            message=execution.message,
            reason=reason,
        )

    def _result(self, execution: RolloutExecution, start: float) -> RolloutResult:
        return RolloutResult(
            execution_id=execution.execution_id,
            success=execution.status == RolloutStatus.SUCCEEDED,
            message=execution.message,
            target=execution.target,
            status=execution.status,
            baseline_release_id=execution.baseline.release_id if execution.baseline else None,
            candidate_release_id=execution.candidate.release_id,
            version=execution.candidate.version,
            applied_weights=list(execution.applied_weights),
            gate_results=list(execution.gate_results),
            error_kind=execution.error_kind,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


__all__ = ["CANCELLED_REASON", "ProgressiveRolloutEngine", "RolloutExecution"]
