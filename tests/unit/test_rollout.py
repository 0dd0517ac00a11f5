"""Unit tests for the progressive rollout engine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from slipway_core.analysis import AnalysisGate
from slipway_core.errors import ErrorKind, InvalidTransitionError, ReleaseNotFoundError
from slipway_core.events import EventChannel, EventKind
from slipway_core.ledger import VersionLedger
from slipway_core.release import AtomicReleaseManager
from slipway_core.resilience import ResilienceSupervisor
from slipway_core.rollout import ProgressiveRolloutEngine, RolloutExecution
from slipway_core.schemas.release import Artifact, ReleaseRecord, ReleaseStatus
from slipway_core.schemas.rollout import (
    AnalysisThresholds,
    CanaryMetrics,
    RolloutPlan,
    RolloutStatus,
    RolloutStep,
)

GOOD = CanaryMetrics(success_rate=0.999, error_rate=0.001)
BAD = CanaryMetrics(success_rate=0.92, error_rate=0.08)


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeps() -> _Sleeps:
    return _Sleeps()


@pytest.fixture
def engine(
    manager: AtomicReleaseManager,
    capacity,
    metrics_source,
    supervisor: ResilienceSupervisor,
    events: EventChannel,
    sleeps: _Sleeps,
) -> ProgressiveRolloutEngine:
    gate = AnalysisGate(
        metrics_source, AnalysisThresholds(max_error_rate=0.01), supervisor=supervisor
    )
    return ProgressiveRolloutEngine(manager, capacity, gate, events=events, sleep=sleeps)


@pytest_asyncio.fixture
async def baseline(manager: AtomicReleaseManager, artifact_dir: Path) -> ReleaseRecord:
    record = await manager.prepare("prod", "1.0.0", Artifact(path=artifact_dir))
    outcome = await manager.promote(record.release_id)
    return outcome.record


@pytest_asyncio.fixture
async def candidate(
    manager: AtomicReleaseManager, artifact_dir: Path, baseline: ReleaseRecord
) -> ReleaseRecord:
    return await manager.prepare("prod", "1.1.0", Artifact(path=artifact_dir))


async def wait_for_status(execution: RolloutExecution, status: RolloutStatus) -> None:
    for _ in range(500):
        if execution.status == status:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"execution never reached {status.value}, is {execution.status.value}")


class TestSuccessfulRollout:
    @pytest.mark.asyncio
    async def test_weights_applied_in_order_then_promoted(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        ledger: VersionLedger,
        capacity,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
    ) -> None:
        plan = RolloutPlan.from_weights([10, 50, 100])

        result = await engine.execute("prod", candidate.release_id, plan)

        assert result.success is True
        assert result.status == RolloutStatus.SUCCEEDED
        assert result.applied_weights == [10, 50, 100]
        assert [g.passed for g in result.gate_results] == [True, True, True]
        assert result.baseline_release_id == baseline.release_id
        scales = [(rid, n) for op, rid, n in capacity.calls if op == "scale"]
        assert scales == [
            (candidate.release_id, 1),
            (baseline.release_id, 3),
            (candidate.release_id, 2),
            (baseline.release_id, 2),
            (candidate.release_id, 4),
            (baseline.release_id, 0),
        ]
        assert capacity.torn_down == [baseline.release_id]
        assert await manager.current("prod") == candidate.release_id
        previous = await ledger.get_release(baseline.release_id)
        assert previous is not None
        assert previous.status == ReleaseStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_gate_duration_waits_before_gate(
        self,
        engine: ProgressiveRolloutEngine,
        sleeps: _Sleeps,
        candidate: ReleaseRecord,
    ) -> None:
        plan = RolloutPlan.from_weights([25, 100], gate_duration_s=30)

        await engine.execute("prod", candidate.release_id, plan)

        assert sleeps.delays == [30, 30]

    @pytest.mark.asyncio
    async def test_explicit_total_capacity(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        candidate: ReleaseRecord,
    ) -> None:
        plan = RolloutPlan.from_weights([25, 100])

        await engine.execute("prod", candidate.release_id, plan, total_capacity=8)

        assert capacity.calls[0] == ("scale", candidate.release_id, 2)

    @pytest.mark.asyncio
    async def test_first_release_without_baseline(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        capacity,
        artifact_dir: Path,
    ) -> None:
        first = await manager.prepare("prod", "1.0.0", Artifact(path=artifact_dir))

        result = await engine.execute("prod", first.release_id, RolloutPlan.from_weights([10, 100]))

        assert result.success is True
        assert result.baseline_release_id is None
        assert capacity.calls == [
            ("scale", first.release_id, 1),
            ("scale", first.release_id, 4),
        ]
        assert await manager.current("prod") == first.release_id


class TestAbortedRollout:
    @pytest.mark.asyncio
    async def test_gate_failure_restores_baseline(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        ledger: VersionLedger,
        capacity,
        metrics_source,
        events: EventChannel,
        deploy_root: Path,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
    ) -> None:
        metrics_source.script(GOOD, BAD)
        subscription = events.subscribe(
            kinds={EventKind.ROLLOUT_GATE_FAILED, EventKind.ROLLOUT_ROLLED_BACK}
        )
        plan = RolloutPlan.from_weights([10, 25, 50, 100])

        result = await engine.execute("prod", candidate.release_id, plan)

        assert result.success is False
        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.error_kind == ErrorKind.HEALTH_GATE_FAILURE
        assert result.applied_weights == [10, 25]
        assert result.gate_results[-1].reasons == ["Error rate 0.08 above threshold 0.01"]
        assert "Error rate 0.08 above threshold 0.01" in result.message

        assert ("scale", candidate.release_id, 0) in capacity.calls
        assert capacity.replicas[baseline.release_id] == 4
        assert capacity.torn_down == [candidate.release_id]
        assert await manager.current("prod") == baseline.release_id
        assert not (deploy_root / "releases" / candidate.release_id).exists()
        discarded = await ledger.get_release(candidate.release_id)
        assert discarded is not None
        assert discarded.status == ReleaseStatus.ROLLED_BACK
        kinds = [e.kind for e in subscription.drain()]
        assert kinds == [EventKind.ROLLOUT_GATE_FAILED, EventKind.ROLLOUT_ROLLED_BACK]

    @pytest.mark.asyncio
    async def test_per_execution_thresholds(
        self,
        engine: ProgressiveRolloutEngine,
        metrics_source,
        candidate: ReleaseRecord,
    ) -> None:
        metrics_source.script(BAD)

        result = await engine.execute(
            "prod",
            candidate.release_id,
            RolloutPlan.from_weights([50, 100]),
            thresholds=AnalysisThresholds(max_error_rate=0.1),
        )

        assert result.success is True

    @pytest.mark.asyncio
    async def test_capacity_error_mid_rollout_rolls_back(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
    ) -> None:
        capacity.fail_scale_to = 2

        result = await engine.execute(
            "prod", candidate.release_id, RolloutPlan.from_weights([10, 50, 100])
        )

        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.error_kind == ErrorKind.REMOTE_COMMAND
        assert result.applied_weights == [10]
        assert capacity.replicas[baseline.release_id] == 4

    @pytest.mark.asyncio
    async def test_failed_rollback_ends_failed(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        metrics_source,
        candidate: ReleaseRecord,
    ) -> None:
        metrics_source.script(BAD)
        capacity.fail_scale_to = 0

        result = await engine.execute(
            "prod", candidate.release_id, RolloutPlan.from_weights([10, 100])
        )

        assert result.status == RolloutStatus.FAILED
        assert result.error_kind == ErrorKind.REMOTE_COMMAND
        assert "rollback failed" in result.message

    @pytest.mark.asyncio
    async def test_connection_error_mid_rollout_rolls_back(
        self,
        engine: ProgressiveRolloutEngine,
        ledger: VersionLedger,
        capacity,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scale = capacity.scale

        async def scale_with_reset(target: str, release: ReleaseRecord, replicas: int) -> None:
            if release.release_id == candidate.release_id and replicas == 2:
                raise ConnectionResetError("connection reset by peer")
            await scale(target, release, replicas)

        monkeypatch.setattr(capacity, "scale", scale_with_reset)

        result = await engine.execute(
            "prod", candidate.release_id, RolloutPlan.from_weights([10, 50, 100])
        )

        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.error_kind == ErrorKind.INTERNAL
        assert "connection reset by peer" in result.message
        assert result.applied_weights == [10]
        assert capacity.replicas[baseline.release_id] == 4
        assert candidate.release_id in capacity.torn_down
        discarded = await ledger.get_release(candidate.release_id)
        assert discarded is not None
        assert discarded.status == ReleaseStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_os_error_during_rollback_ends_failed(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        metrics_source,
        candidate: ReleaseRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        metrics_source.script(BAD)

        async def teardown_unreachable(target: str, release: ReleaseRecord) -> None:
            raise OSError("no route to host")

        monkeypatch.setattr(capacity, "teardown", teardown_unreachable)

        result = await engine.execute(
            "prod", candidate.release_id, RolloutPlan.from_weights([10, 100])
        )

        assert result.status == RolloutStatus.FAILED
        assert result.error_kind == ErrorKind.INTERNAL
        assert "rollback failed: no route to host" in result.message

    @pytest.mark.asyncio
    async def test_candidate_must_be_prepared(
        self,
        engine: ProgressiveRolloutEngine,
        baseline: ReleaseRecord,
    ) -> None:
        with pytest.raises(ReleaseNotFoundError, match="must be prepared"):
            await engine.execute(
                "prod", baseline.release_id, RolloutPlan.from_weights([100])
            )

    @pytest.mark.asyncio
    async def test_unknown_candidate(self, engine: ProgressiveRolloutEngine) -> None:
        with pytest.raises(ReleaseNotFoundError):
            await engine.execute("prod", "20260101000000000000", RolloutPlan.from_weights([100]))


class TestPauseResumeCancel:
    @pytest.fixture
    def paused_plan(self) -> RolloutPlan:
        return RolloutPlan(
            steps=(
                RolloutStep(weight=25, pause_for_approval=True),
                RolloutStep(weight=100),
            )
        )

    @pytest.mark.asyncio
    async def test_pause_then_resume(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        candidate: ReleaseRecord,
        paused_plan: RolloutPlan,
    ) -> None:
        execution = await engine.create_execution("prod", candidate.release_id, paused_plan)
        task = asyncio.create_task(engine.run(execution))

        await wait_for_status(execution, RolloutStatus.PAUSED)
        assert execution.applied_weights == [25]
        execution.resume()
        result = await asyncio.wait_for(task, timeout=10)

        assert result.status == RolloutStatus.SUCCEEDED
        assert result.applied_weights == [25, 100]
        assert await manager.current("prod") == candidate.release_id

    @pytest.mark.asyncio
    async def test_cancel_while_paused_rolls_back(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
        paused_plan: RolloutPlan,
    ) -> None:
        execution = await engine.create_execution("prod", candidate.release_id, paused_plan)
        task = asyncio.create_task(engine.run(execution))

        await wait_for_status(execution, RolloutStatus.PAUSED)
        assert execution.cancel() is True
        result = await asyncio.wait_for(task, timeout=10)

        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.error_kind == ErrorKind.CANCELLED
        assert capacity.replicas[baseline.release_id] == 4
        assert execution.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_after_last_gate_skips_promotion(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        capacity,
        metrics_source,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        execution = await engine.create_execution(
            "prod", candidate.release_id, RolloutPlan.from_weights([50, 100])
        )
        fetch = metrics_source.fetch

        async def fetch_then_cancel(target: str, release: ReleaseRecord) -> CanaryMetrics:
            sample = await fetch(target, release)
            if execution.applied_weights[-1] == 100:
                assert execution.cancel() is True
            return sample

        monkeypatch.setattr(metrics_source, "fetch", fetch_then_cancel)

        result = await engine.run(execution)

        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.error_kind == ErrorKind.CANCELLED
        assert result.applied_weights == [50, 100]
        assert all(gate.passed for gate in result.gate_results)
        assert await manager.current("prod") == baseline.release_id
        assert capacity.replicas[baseline.release_id] == 4

    @pytest.mark.asyncio
    async def test_cancelled_task_restores_baseline(
        self,
        engine: ProgressiveRolloutEngine,
        manager: AtomicReleaseManager,
        ledger: VersionLedger,
        capacity,
        baseline: ReleaseRecord,
        candidate: ReleaseRecord,
        paused_plan: RolloutPlan,
    ) -> None:
        execution = await engine.create_execution("prod", candidate.release_id, paused_plan)
        task = asyncio.create_task(engine.run(execution))
        await wait_for_status(execution, RolloutStatus.PAUSED)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert execution.status == RolloutStatus.ROLLED_BACK
        assert execution.error_kind == ErrorKind.CANCELLED
        assert capacity.replicas == {baseline.release_id: 4}
        assert capacity.torn_down == [candidate.release_id]
        assert await manager.current("prod") == baseline.release_id
        discarded = await ledger.get_release(candidate.release_id)
        assert discarded is not None
        assert discarded.status == ReleaseStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_cancel_before_first_step(
        self,
        engine: ProgressiveRolloutEngine,
        capacity,
        candidate: ReleaseRecord,
    ) -> None:
        execution = await engine.create_execution(
            "prod", candidate.release_id, RolloutPlan.from_weights([10, 100])
        )
        execution.cancel()

        result = await engine.run(execution)

        assert result.status == RolloutStatus.ROLLED_BACK
        assert result.applied_weights == []
        assert candidate.release_id in capacity.torn_down

    @pytest.mark.asyncio
    async def test_resume_requires_paused(
        self,
        engine: ProgressiveRolloutEngine,
        candidate: ReleaseRecord,
    ) -> None:
        execution = await engine.create_execution(
            "prod", candidate.release_id, RolloutPlan.from_weights([100])
        )
        with pytest.raises(InvalidTransitionError):
            execution.resume()

    @pytest.mark.asyncio
    async def test_state_machine_rejects_skipping_ahead(
        self,
        engine: ProgressiveRolloutEngine,
        candidate: ReleaseRecord,
    ) -> None:
        execution = await engine.create_execution(
            "prod", candidate.release_id, RolloutPlan.from_weights([100])
        )
        with pytest.raises(InvalidTransitionError) as exc_info:
            execution.transition(RolloutStatus.SUCCEEDED)
        assert exc_info.value.exit_code == 12
