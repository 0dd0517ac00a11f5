"""Multi-target orchestration.

Runs one deployment across many targets in ordered stages::

    stage "staging"     [staging]              batch 0
    stage "production"  [prod-a, prod-b]       batch 0 (concurrent)
                        [prod-c]               batch 1

Stages run strictly in order. Within a stage, targets are chunked into
batches of ``concurrency_per_batch`` that run concurrently, and the whole
batch is awaited before the next one starts. With ``stop_on_failure``, a
failed job marks every job in later batches and stages ``skipped``; jobs
already running in the same batch are left to finish.

Failures are collected in the OrchestrationResult, never raised mid-run.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

import structlog

from slipway_core.errors import InvalidPlanError
from slipway_core.events import EventChannel, EventKind
from slipway_core.pipeline import DeploymentPipeline, DeploymentRequest
from slipway_core.resilience import ResilienceSupervisor
from slipway_core.schemas.config import TimeoutConfig
from slipway_core.schemas.orchestration import (
    JobStatus,
    OrchestrationJob,
    OrchestrationResult,
    Stage,
)
from slipway_core.schemas.results import DeploymentResult
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

RequestFactory = Callable[[str], DeploymentRequest]

SKIP_REASON = "skipped after an earlier failure"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _chunk(targets: Sequence[str], size: int) -> list[list[str]]:
    return [list(targets[i : i + size]) for i in range(0, len(targets), size)]


def plan_jobs(stages: Sequence[Stage], concurrency_per_batch: int) -> list[OrchestrationJob]:
    """Lay out one job per target, in execution order.

    Raises:
        InvalidPlanError: If there are no stages, the batch size is below one,
            or a target appears in more than one stage.
    """
    if concurrency_per_batch < 1:
        raise InvalidPlanError(f"concurrency_per_batch must be >= 1, got {concurrency_per_batch}")
    if not stages:
        raise InvalidPlanError("orchestration needs at least one stage")

    names = [stage.name for stage in stages]
    if len(set(names)) != len(names):
        raise InvalidPlanError(f"stage names must be unique, got {names}")

    seen: set[str] = set()
    jobs: list[OrchestrationJob] = []
    for stage in stages:
        for batch_index, batch in enumerate(_chunk(stage.targets, concurrency_per_batch)):
            for target in batch:
                if target in seen:
                    raise InvalidPlanError(f"target {target} appears in more than one stage")
                seen.add(target)
                jobs.append(
                    OrchestrationJob(target=target, stage=stage.name, batch_index=batch_index)
                )
    return jobs


class MultiTargetOrchestrator:
    """Run a DeploymentPipeline across staged, batched targets.

    Example:
        >>> orchestrator = MultiTargetOrchestrator(pipeline)
        >>> result = await orchestrator.run(
        ...     [Stage(name="staging", targets=("staging",)),
        ...      Stage(name="production", targets=("prod-a", "prod-b"))],
        ...     deployment=request,
        ... )
        >>> result.succeeded
        ['staging', 'prod-a', 'prod-b']
    """

    def __init__(
        self,
        pipeline: DeploymentPipeline,
        *,
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
        events: EventChannel | None = None,
        metrics: DeployMetrics | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._supervisor = supervisor or ResilienceSupervisor()
        self._timeouts = timeouts or TimeoutConfig()
        self._events = events or EventChannel()
        self._metrics = metrics or DeployMetrics()

    async def run(
        self,
        stages: Sequence[Stage],
        concurrency_per_batch: int = 2,
        stop_on_failure: bool = True,
        *,
        deployment: DeploymentRequest | RequestFactory,
    ) -> OrchestrationResult:
        """Deploy to every target in ``stages``.

        Args:
            stages: Stages in execution order.
            concurrency_per_batch: Maximum jobs running at once within a stage.
            stop_on_failure: Skip everything after the first failed batch.
            deployment: The request for every target, or a function returning
                the request for a given target.

        Returns:
            OrchestrationResult with one job per target.

        Raises:
            InvalidPlanError: If the stage layout is invalid (nothing runs).
        """
        start = time.monotonic()
        jobs = plan_jobs(stages, concurrency_per_batch)
        halted = False

        log = logger.bind(stages=[s.name for s in stages], targets=len(jobs))
        log.info(
            "orchestration_started",
            concurrency_per_batch=concurrency_per_batch,
            stop_on_failure=stop_on_failure,
        )

        with create_span(
            DeployMetrics.SPAN_ORCHESTRATE,
            attributes={
                "slipway.orchestration.stages": len(stages),
                "slipway.orchestration.targets": len(jobs),
                "slipway.orchestration.concurrency": concurrency_per_batch,
            },
        ):
            for stage in stages:
                stage_jobs = [job for job in jobs if job.stage == stage.name]
                if not halted:
                    self._events.emit(
                        EventKind.STAGE_STARTED,
                        message=stage.name,
                        stage=stage.name,
                        targets=list(stage.targets),
                    )

                batch_count = max(job.batch_index for job in stage_jobs) + 1
                for batch_index in range(batch_count):
                    batch = [job for job in stage_jobs if job.batch_index == batch_index]
                    if halted:
                        for job in batch:
                            self._skip(job)
                        continue

                    await asyncio.gather(
                        *(
                            self._run_job(job, self._request_for(deployment, job.target))
                            for job in batch
                        )
                    )
                    if stop_on_failure and any(job.status == JobStatus.FAILED for job in batch):
                        halted = True
                        log.warning(
                            "orchestration_halted",
                            stage=stage.name,
                            batch_index=batch_index,
                            failed=[job.target for job in batch if job.status == JobStatus.FAILED],
                        )

                self._events.emit(
                    EventKind.STAGE_COMPLETED,
                    message=stage.name,
                    stage=stage.name,
                    statuses={job.target: job.status.value for job in stage_jobs},
                )

        result = OrchestrationResult(
            success=all(job.status == JobStatus.SUCCEEDED for job in jobs),
            jobs=jobs,
            duration_ms=int((time.monotonic() - start) * 1000),
            stopped_early=halted,
        )
        log.info(
            "orchestration_completed",
            success=result.success,
            succeeded=result.succeeded,
            failed=result.failed,
            skipped=result.skipped,
            duration_ms=result.duration_ms,
        )
        return result

    async def run_sequential(
        self,
        stages: Sequence[Stage],
        *,
        deployment: DeploymentRequest | RequestFactory,
    ) -> OrchestrationResult:
        """One target at a time, stopping at the first failure."""
        return await self.run(stages, 1, True, deployment=deployment)

    @staticmethod
    def _request_for(
        deployment: DeploymentRequest | RequestFactory,
        target: str,
    ) -> DeploymentRequest:
        if isinstance(deployment, DeploymentRequest):
            return deployment
        return deployment(target)

    def _skip(self, job: OrchestrationJob) -> None:
        job.status = JobStatus.SKIPPED
        job.skip_reason = SKIP_REASON
        self._events.emit(EventKind.JOB_SKIPPED, target=job.target, stage=job.stage)

    async def _run_job(self, job: OrchestrationJob, request: DeploymentRequest) -> None:
        job.status = JobStatus.RUNNING
        job.started_at = _utc_now()
        self._events.emit(
            EventKind.JOB_STARTED,
            target=job.target,
            stage=job.stage,
            batch_index=job.batch_index,
        )

        with create_span(
            DeployMetrics.SPAN_JOB,
            attributes={
                "slipway.target": job.target,
                "slipway.stage": job.stage,
                "slipway.batch_index": job.batch_index,
            },
        ), self._metrics.operation_timer("job", job.target):
            start = time.monotonic()
            try:
                result = await self._supervisor.run(
                    lambda: self._pipeline.deploy(job.target, request),
                    operation=f"{job.target}:job",
                    timeout_s=self._timeouts.job_s,
                    retry=False,
                )
            except Exception as e:
                logger.error("job_error", target=job.target, stage=job.stage, error=str(e))
                result = DeploymentResult.from_error(
                    e,
                    target=job.target,
                    phase="job",
                    version=request.version,
                    duration_ms=int((time.monotonic() - start) * 1000),
                )

        job.result = result
        job.finished_at = _utc_now()
        job.status = JobStatus.SUCCEEDED if result.success else JobStatus.FAILED
        self._events.emit(
            EventKind.JOB_SUCCEEDED if result.success else EventKind.JOB_FAILED,
            target=job.target,
            release_id=result.release_id,
            message=result.message,
            stage=job.stage,
            error_kind=result.error_kind.value if result.error_kind else None,
        )


__all__ = ["MultiTargetOrchestrator", "RequestFactory", "plan_jobs"]
