"""Multi-target orchestration schemas.

Key Components:
    JobStatus: Lifecycle of one per-target job
    Stage: Ordered phase of a multi-target run
    OrchestrationJob: Mutable per-target job state
    OrchestrationResult: Aggregated outcome of a run
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from slipway_core.errors import ErrorKind, PartialBatchFailureError
from slipway_core.schemas.results import DeploymentResult


class JobStatus(str, Enum):
    """Lifecycle of one orchestration job.

    ``skipped`` means never attempted, as opposed to ``failed`` which means
    attempted and failed.
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class Stage(BaseModel):
    """Ordered phase of a multi-target run.

    Targets within a stage are chunked into batches at run time; stages
    themselves run strictly in sequence.

    Examples:
        >>> stages = [Stage(name="staging", targets=["staging"]),
        ...           Stage(name="production", targets=["prod-a", "prod-b"])]
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    targets: tuple[str, ...] = Field(..., min_length=1)

    @field_validator("targets")
    @classmethod
    def _unique_targets(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if len(set(v)) != len(v):
            raise ValueError("targets within a stage must be unique")
        return v


class OrchestrationJob(BaseModel):
    """One unit of per-target work inside a run.

    Owned by the orchestrator for the duration of ``run``; mutated in place
    as the job progresses.
    """

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    target: str
    stage: str
    batch_index: int = Field(..., ge=0)
    status: JobStatus = JobStatus.PENDING
    result: DeploymentResult | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    skip_reason: str | None = None


class OrchestrationResult(BaseModel):
    """Aggregated outcome of a multi-target run.

    Failures are collected here rather than thrown mid-run.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success: bool
    jobs: list[OrchestrationJob]
    duration_ms: int = Field(default=0, ge=0)
    stopped_early: bool = False

    def status_of(self, target: str) -> JobStatus:
        """Return the status of the job for ``target``."""
        for job in self.jobs:
            if job.target == target:
                return job.status
        raise KeyError(target)

    def _targets_with(self, status: JobStatus) -> list[str]:
        return [job.target for job in self.jobs if job.status == status]

    @property
    def succeeded(self) -> list[str]:
        return self._targets_with(JobStatus.SUCCEEDED)

    @property
    def failed(self) -> list[str]:
        return self._targets_with(JobStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self._targets_with(JobStatus.SKIPPED)

    @property
    def error_kind(self) -> ErrorKind | None:
        return None if self.success else ErrorKind.PARTIAL_BATCH_FAILURE

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailureError if any job failed."""
        if self.failed:
            raise PartialBatchFailureError(self.failed, self.skipped)


__all__ = ["JobStatus", "OrchestrationJob", "OrchestrationResult", "Stage"]
