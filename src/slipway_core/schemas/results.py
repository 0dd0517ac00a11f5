"""Terminal result objects for deploy, rollback and rollout operations.

Every result carries a success flag, a human-readable message and enough
structured detail (target, release, phase, tagged error kind) to drive exit
codes and audit logging without re-deriving state.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from slipway_core.errors import ErrorKind, error_kind_of, exit_code_for
from slipway_core.schemas.rollout import GateResult, RolloutStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    """Kind of operation a result describes."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"
    ROLLOUT = "rollout"


class DeploymentResult(BaseModel):
    """Terminal result of a deploy or rollback.

    Attributes:
        operation: deploy or rollback.
        success: Whether the operation reached its goal.
        message: Human-readable summary.
        target: Target the operation ran against.
        release_id: Release prepared, promoted or restored.
        version: Version of that release.
        phase: Last phase reached (lock, prepare, promote, rollout, verify, ...).
        error_kind: Tagged error kind when success is False.
        duration_ms: Wall-clock duration.
        timestamp: When the result was produced (UTC).
        warnings: Non-fatal problems (failed after-promote hook, prune errors).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    operation: OperationKind = OperationKind.DEPLOY
    success: bool
    message: str
    target: str
    release_id: str | None = None
    version: str | None = None
    phase: str | None = None
    error_kind: ErrorKind | None = None
    duration_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utc_now)
    warnings: list[str] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        """Exit code a CLI front-end would use for this result."""
        if self.success:
            return 0
        return exit_code_for(self.error_kind)

    @classmethod
    def from_error(
        cls,
        exc: BaseException,
        *,
        target: str,
        operation: OperationKind = OperationKind.DEPLOY,
        phase: str | None = None,
        release_id: str | None = None,
        version: str | None = None,
        duration_ms: int = 0,
        warnings: list[str] | None = None,
    ) -> DeploymentResult:
        """Build a failed result from an exception."""
        return cls(
            operation=operation,
            success=False,
            message=str(exc) or type(exc).__name__,
            target=target,
            release_id=release_id or getattr(exc, "release_id", None),
            version=version,
            phase=phase or getattr(exc, "phase", None),
            error_kind=error_kind_of(exc),
            duration_ms=duration_ms,
            warnings=warnings or [],
        )


class RolloutResult(BaseModel):
    """Terminal result of a progressive rollout."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    execution_id: str
    success: bool
    message: str
    target: str
    status: RolloutStatus
    baseline_release_id: str | None = None
    candidate_release_id: str
    version: str
    applied_weights: list[int] = Field(default_factory=list)
    gate_results: list[GateResult] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    duration_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=_utc_now)

    @property
    def release_id(self) -> str:
        """Alias for the candidate release (the one being rolled out)."""
        return self.candidate_release_id


__all__ = ["DeploymentResult", "OperationKind", "RolloutResult"]
