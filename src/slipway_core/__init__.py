"""slipway-core: deployment orchestration engine.

This package provides:
- DeployLock: Durable, TTL-based per-target mutual exclusion
- AtomicReleaseManager: Release directories, atomic symlink promotion, rollback
- VersionLedger: Capped release history per application
- ProgressiveRolloutEngine: Weighted canary rollouts with analysis gates
- MultiTargetOrchestrator: Staged, batched deploys across many targets
- DeploymentPipeline: lock -> prepare -> promote | rollout -> verify -> unlock
- ResilienceSupervisor: Timeout plus retry around remote-affecting calls
- EventChannel: Typed progress events, consumed by JsonlAuditSink
- Errors: SlipwayError hierarchy with tagged kinds (slipway_core.errors)
- Schemas: Pydantic models for records, results and config (slipway_core.schemas)
- Telemetry: OpenTelemetry tracing and metrics (slipway_core.telemetry)

Example:
    >>> from slipway_core import (
    ...     AtomicReleaseManager, DeployLock, DeploymentPipeline, DeploymentRequest,
    ...     FileStateStore, LocalArtifactTransfer, LocalExecutor, TargetBinding, VersionLedger,
    ... )
    >>> manifest = load_manifest(Path("slipway.yaml"))
    >>> store = FileStateStore(manifest.state_dir)
    >>> bindings = [
    ...     TargetBinding(t, LocalExecutor(), LocalArtifactTransfer()) for t in manifest.targets
    ... ]
    >>> ledger = VersionLedger(store, manifest.application, manifest.ledger)
    >>> manager = AtomicReleaseManager(ledger, bindings, manifest.release)
    >>> pipeline = DeploymentPipeline(DeployLock(store, manifest.lock), manager)
    >>> result = await pipeline.deploy(
    ...     "staging", DeploymentRequest(version="2.1.0", artifact=Artifact(path=Path("dist")))
    ... )

See Also:
    - slipway_core.collaborators: Executor, transfer, prober, metrics and capacity contracts
    - slipway_core.schemas.config: Manifest loading and environment overrides
"""

from __future__ import annotations

__version__ = "0.1.0"

from slipway_core.analysis import AnalysisGate, PrometheusMetricsSource, check_thresholds
from slipway_core.audit import JsonlAuditSink
from slipway_core.capacity import (
    ComposeCapacityController,
    KubernetesCapacityController,
    compute_split,
)
from slipway_core.collaborators import (
    ArtifactTransfer,
    CapacityController,
    CommandResult,
    HealthCheckResult,
    HealthProber,
    MetricsSource,
    RemoteExecutor,
    TransferResult,
)
from slipway_core.errors import (
    ConfigurationError,
    ErrorKind,
    HealthGateFailureError,
    InvalidPlanError,
    InvalidTransitionError,
    LedgerOutOfSyncError,
    LockContentionError,
    OperationTimeoutError,
    PartialBatchFailureError,
    ReleaseFailureError,
    ReleaseNotFoundError,
    RemoteCommandError,
    SlipwayError,
    StateStoreError,
)
from slipway_core.events import DeploymentEvent, EventChannel, EventKind, Subscription
from slipway_core.health import HealthWatch, HttpHealthProber, wait_healthy
from slipway_core.ledger import VersionLedger
from slipway_core.local import LocalArtifactTransfer, LocalExecutor
from slipway_core.lock import DeployLock, LockHandle
from slipway_core.orchestrator import MultiTargetOrchestrator
from slipway_core.pipeline import DeploymentPipeline, DeploymentRequest, DeployStrategy
from slipway_core.release import (
    AtomicReleaseManager,
    PromotionOutcome,
    ReleaseIdGenerator,
    TargetBinding,
)
from slipway_core.resilience import (
    ResilienceSupervisor,
    RetryPolicy,
    is_transient,
    with_retry,
    with_timeout,
)
from slipway_core.rollout import ProgressiveRolloutEngine, RolloutExecution
from slipway_core.schemas import (
    AnalysisThresholds,
    Artifact,
    CanaryMetrics,
    DeploymentResult,
    GateResult,
    JobStatus,
    LockOperation,
    LockRecord,
    OrchestrationJob,
    OrchestrationResult,
    Platform,
    ReleaseRecord,
    ReleaseStatus,
    RolloutPlan,
    RolloutResult,
    RolloutStatus,
    RolloutStep,
    SlipwayManifest,
    Stage,
    load_manifest,
)
from slipway_core.store import FileStateStore, InMemoryStateStore, StateStore

__all__ = [
    "AnalysisGate",
    "AnalysisThresholds",
    "Artifact",
    "ArtifactTransfer",
    "AtomicReleaseManager",
    "CanaryMetrics",
    "CapacityController",
    "CommandResult",
    "ComposeCapacityController",
    "ConfigurationError",
    "DeployLock",
    "DeployStrategy",
    "DeploymentEvent",
    "DeploymentPipeline",
    "DeploymentRequest",
    "DeploymentResult",
    "ErrorKind",
    "EventChannel",
    "EventKind",
    "FileStateStore",
    "GateResult",
    "HealthCheckResult",
    "HealthGateFailureError",
    "HealthProber",
    "HealthWatch",
    "HttpHealthProber",
    "InMemoryStateStore",
    "InvalidPlanError",
    "InvalidTransitionError",
    "JobStatus",
    "JsonlAuditSink",
    "KubernetesCapacityController",
    "LedgerOutOfSyncError",
    "LocalArtifactTransfer",
    "LocalExecutor",
    "LockContentionError",
    "LockHandle",
    "LockOperation",
    "LockRecord",
    "MetricsSource",
    "MultiTargetOrchestrator",
    "OperationTimeoutError",
    "OrchestrationJob",
    "OrchestrationResult",
    "PartialBatchFailureError",
    "Platform",
    "ProgressiveRolloutEngine",
    "PrometheusMetricsSource",
    "PromotionOutcome",
    "ReleaseFailureError",
    "ReleaseIdGenerator",
    "ReleaseNotFoundError",
    "ReleaseRecord",
    "ReleaseStatus",
    "RemoteCommandError",
    "RemoteExecutor",
    "ResilienceSupervisor",
    "RetryPolicy",
    "RolloutExecution",
    "RolloutPlan",
    "RolloutResult",
    "RolloutStatus",
    "RolloutStep",
    "SlipwayError",
    "SlipwayManifest",
    "Stage",
    "StateStore",
    "StateStoreError",
    "Subscription",
    "TargetBinding",
    "TransferResult",
    "VersionLedger",
    "__version__",
    "check_thresholds",
    "compute_split",
    "is_transient",
    "load_manifest",
    "wait_healthy",
]
