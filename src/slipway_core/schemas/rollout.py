"""Progressive rollout schemas.

Key Components:
    RolloutStep: One traffic-weight step
    RolloutPlan: Immutable, validated sequence of steps
    AnalysisThresholds: Pass/fail limits for the analysis gate
    CanaryMetrics: Metrics sample pulled from a MetricsSource
    GateResult: Outcome of one analysis gate run
    RolloutStatus: Status of a RolloutExecution
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from slipway_core.errors import InvalidPlanError


class RolloutStatus(str, Enum):
    """Status of a rollout execution.

    ``running`` and ``paused`` are the only non-terminal states besides the
    brief ``promoting`` window after the final step.
    """

    RUNNING = "running"
    PAUSED = "paused"
    PROMOTING = "promoting"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return True for statuses that end an execution."""
        return self in (
            RolloutStatus.SUCCEEDED,
            RolloutStatus.ROLLED_BACK,
            RolloutStatus.FAILED,
        )


class RolloutStep(BaseModel):
    """One traffic-weight step of a rollout.

    Attributes:
        weight: Percentage of total capacity given to the candidate.
        gate_duration_s: Time to wait before running the analysis gate.
        pause_for_approval: Halt after the gate until resumed externally.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    weight: int = Field(..., ge=0, le=100, description="Candidate traffic share (%)")
    gate_duration_s: float = Field(
        default=0.0,
        ge=0.0,
        description="Seconds to wait before the analysis gate",
    )
    pause_for_approval: bool = Field(
        default=False,
        description="Halt at 'paused' after this step until resumed",
    )


class RolloutPlan(BaseModel):
    """Ordered, immutable list of rollout steps.

    Weights must be non-decreasing and the final step must reach 100.

    Examples:
        >>> plan = RolloutPlan(steps=(
        ...     RolloutStep(weight=10, gate_duration_s=60),
        ...     RolloutStep(weight=100),
        ... ))
        >>> plan.weights
        [10, 100]

        >>> RolloutPlan(steps=(RolloutStep(weight=50),))
        Traceback (most recent call last):
            ...
        InvalidPlanError: Invalid plan: final step must reach weight 100, got 50
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    steps: tuple[RolloutStep, ...] = Field(..., description="Steps in execution order")

    @model_validator(mode="after")
    def _check_steps(self) -> RolloutPlan:
        if not self.steps:
            raise InvalidPlanError("rollout plan has no steps")
        previous = 0
        for index, step in enumerate(self.steps):
            if step.weight < previous:
                raise InvalidPlanError(
                    f"step {index} weight {step.weight} is below previous weight {previous}"
                )
            previous = step.weight
        if self.steps[-1].weight != 100:
            raise InvalidPlanError(
                f"final step must reach weight 100, got {self.steps[-1].weight}"
            )
        return self

    @property
    def weights(self) -> list[int]:
        """Weights in step order."""
        return [step.weight for step in self.steps]

    @classmethod
    def from_weights(
        cls,
        weights: list[int],
        *,
        gate_duration_s: float = 0.0,
    ) -> RolloutPlan:
        """Build a plan with the same gate duration on every step."""
        return cls(
            steps=tuple(
                RolloutStep(weight=w, gate_duration_s=gate_duration_s) for w in weights
            )
        )


class AnalysisThresholds(BaseModel):
    """Pass/fail limits for the rollout analysis gate.

    Any threshold left as None is not checked.

    Attributes:
        min_success_rate: Success-rate floor (0..1).
        max_error_rate: Error-rate ceiling (0..1).
        max_latency_ms: Latency ceiling in milliseconds.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    max_error_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    max_latency_ms: float | None = Field(default=None, gt=0.0)


class CanaryMetrics(BaseModel):
    """One metrics sample for a candidate release.

    Values a source could not determine are None; the gate fails a None
    value whose threshold is configured.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    error_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    latency_ms: float | None = Field(default=None, ge=0.0)
    sampled_at: datetime | None = None


class GateResult(BaseModel):
    """Outcome of one analysis gate run.

    Attributes:
        step_index: Zero-based step the gate ran for.
        weight: Candidate weight at the time of the gate.
        passed: Whether every configured check passed.
        reasons: Human-readable threshold violations (empty when passed).
        metrics: The sample that was evaluated, if any.
        duration_ms: Time spent evaluating the gate.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    step_index: int = Field(..., ge=0)
    weight: int = Field(..., ge=0, le=100)
    passed: bool
    reasons: list[str] = Field(default_factory=list)
    metrics: CanaryMetrics | None = None
    duration_ms: int = Field(default=0, ge=0)
    details: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "AnalysisThresholds",
    "CanaryMetrics",
    "GateResult",
    "RolloutPlan",
    "RolloutStatus",
    "RolloutStep",
]
