"""Schema definitions for slipway-core.

Persisted records:
    ReleaseRecord, LockRecord (camelCase wire aliases)

Rollout models:
    RolloutPlan, RolloutStep, AnalysisThresholds, CanaryMetrics, GateResult

Orchestration models:
    Stage, OrchestrationJob, OrchestrationResult

Results:
    DeploymentResult, RolloutResult

Configuration:
    SlipwayManifest and its sections, load_manifest()
"""

from __future__ import annotations

from slipway_core.schemas.config import (
    CanaryConfig,
    HealthCheckConfig,
    LedgerConfig,
    LockConfig,
    MetricsSourceConfig,
    OrchestrationConfig,
    ReleaseConfig,
    RetryConfig,
    SlipwayManifest,
    TargetConfig,
    TimeoutConfig,
    load_manifest,
)
from slipway_core.schemas.orchestration import (
    JobStatus,
    OrchestrationJob,
    OrchestrationResult,
    Stage,
)
from slipway_core.schemas.release import (
    Artifact,
    LockOperation,
    LockRecord,
    Platform,
    ReleaseRecord,
    ReleaseStatus,
)
from slipway_core.schemas.results import DeploymentResult, OperationKind, RolloutResult
from slipway_core.schemas.rollout import (
    AnalysisThresholds,
    CanaryMetrics,
    GateResult,
    RolloutPlan,
    RolloutStatus,
    RolloutStep,
)

__all__ = [
    "AnalysisThresholds",
    "Artifact",
    "CanaryConfig",
    "CanaryMetrics",
    "DeploymentResult",
    "GateResult",
    "HealthCheckConfig",
    "JobStatus",
    "LedgerConfig",
    "LockConfig",
    "LockOperation",
    "LockRecord",
    "MetricsSourceConfig",
    "OperationKind",
    "OrchestrationConfig",
    "OrchestrationJob",
    "OrchestrationResult",
    "Platform",
    "ReleaseConfig",
    "ReleaseRecord",
    "ReleaseStatus",
    "RetryConfig",
    "RolloutPlan",
    "RolloutResult",
    "RolloutStatus",
    "RolloutStep",
    "SlipwayManifest",
    "Stage",
    "TargetConfig",
    "TimeoutConfig",
    "load_manifest",
]
