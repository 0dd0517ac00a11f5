"""Collaborator contracts consumed by the orchestration engine.

The engine never talks to a host, cluster or telemetry backend directly.
It goes through these protocols, and concrete implementations are chosen
by the caller:

    RemoteExecutor      -> slipway_core.local.LocalExecutor
    ArtifactTransfer    -> slipway_core.local.LocalArtifactTransfer
    HealthProber        -> slipway_core.health.HttpHealthProber
    MetricsSource       -> slipway_core.analysis.PrometheusMetricsSource
    CapacityController  -> slipway_core.capacity.KubernetesCapacityController,
                           slipway_core.capacity.ComposeCapacityController

How a remote executor authenticates (SSH keys, kube contexts) is the
implementation's concern.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from slipway_core.schemas.config import HealthCheckConfig
from slipway_core.schemas.release import ReleaseRecord
from slipway_core.schemas.rollout import CanaryMetrics


class CommandResult(BaseModel):
    """Outcome of one remote command. Non-zero exit is not an exception."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = Field(default=0, ge=0)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class TransferResult(BaseModel):
    """Outcome of an artifact upload."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    files_transferred: int = Field(..., ge=0)
    bytes_transferred: int = Field(..., ge=0)
    duration_ms: int = Field(default=0, ge=0)


class HealthCheckResult(BaseModel):
    """Outcome of one health probe."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    healthy: bool
    message: str
    duration_ms: int = Field(default=0, ge=0)
    status_code: int | None = None


@runtime_checkable
class RemoteExecutor(Protocol):
    """Runs shell commands on a target.

    Implementations must return non-zero exits as a CommandResult rather
    than raising, and must kill the command when ``timeout_s`` expires or
    the awaiting task is cancelled.
    """

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult: ...


@runtime_checkable
class ArtifactTransfer(Protocol):
    """Copies a local payload to a path on the target."""

    async def upload(
        self,
        local_path: Path,
        remote_path: str,
        *,
        exclude: tuple[str, ...] = (),
    ) -> TransferResult: ...


CancelFn = Callable[[], None]
HealthCallback = Callable[[HealthCheckResult], None]


@runtime_checkable
class HealthProber(Protocol):
    """Checks whether a deployed service is healthy."""

    async def check(self, config: HealthCheckConfig) -> HealthCheckResult: ...

    def monitor(
        self,
        config: HealthCheckConfig,
        on_result: HealthCallback,
        interval_s: float | None = None,
    ) -> CancelFn:
        """Probe repeatedly in the background; return a function that stops it."""
        ...


@runtime_checkable
class MetricsSource(Protocol):
    """Pulls live metrics for a release from an external telemetry system."""

    async def fetch(self, target: str, release: ReleaseRecord) -> CanaryMetrics: ...


@runtime_checkable
class CapacityController(Protocol):
    """Scales the serving capacity of one release on a target.

    Traffic weight is realised as a replica split: capacity given to a
    release is the share of traffic it receives.
    """

    async def scale(self, target: str, release: ReleaseRecord, replicas: int) -> None: ...

    async def teardown(self, target: str, release: ReleaseRecord) -> None: ...


__all__ = [
    "ArtifactTransfer",
    "CancelFn",
    "CapacityController",
    "CommandResult",
    "HealthCallback",
    "HealthCheckResult",
    "HealthProber",
    "MetricsSource",
    "RemoteExecutor",
    "TransferResult",
]
