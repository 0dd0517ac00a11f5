"""Configuration schemas and manifest loader for slipway-core.

The engine treats configuration as read-only input: targets, platforms,
replica counts, thresholds, retry and timeout budgets. A manifest is a YAML
document validated into SlipwayManifest.

Example manifest:

    application: storefront
    state_dir: /var/lib/slipway
    release:
      keep_releases: 5
      shared_dirs: [storage, logs]
      shared_files: [.env]
      after_promote: ["systemctl reload storefront"]
    targets:
      - name: staging
        platform: ssh-host
        deploy_path: /srv/storefront
      - name: prod
        platform: kubernetes
        deploy_path: /srv/manifests/storefront
        namespace: shop
        replicas: 6
    orchestration:
      concurrency: 2
      stop_on_failure: true
      stages:
        - {name: staging, targets: [staging]}
        - {name: production, targets: [prod]}

Environment Overrides:
    SLIPWAY_STATE_DIR: replaces ``state_dir``
    SLIPWAY_LOCK_TTL_MS: replaces ``lock.ttl_ms``

Example:
    >>> from slipway_core.schemas.config import load_manifest
    >>> manifest = load_manifest(Path("slipway.yaml"))
    >>> manifest.target("prod").platform
    <Platform.KUBERNETES: 'kubernetes'>
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from slipway_core.errors import ConfigurationError, InvalidPlanError
from slipway_core.schemas.orchestration import Stage
from slipway_core.schemas.release import DEFAULT_TRANSFER_EXCLUDES, Platform
from slipway_core.schemas.rollout import AnalysisThresholds, RolloutPlan

logger = structlog.get_logger(__name__)

STATE_DIR_ENV = "SLIPWAY_STATE_DIR"
LOCK_TTL_ENV = "SLIPWAY_LOCK_TTL_MS"

DEFAULT_LOCK_TTL_MS = 3_600_000


class RetryConfig(BaseModel):
    """Retry policy configuration for transient failures.

    Delay before retry ``n`` (1-based) is
    ``min(initial_delay_ms * backoff_multiplier ** (n - 1), max_delay_ms)``.

    Examples:
        >>> config = RetryConfig(max_attempts=5, initial_delay_ms=500)
        >>> config.initial_delay_ms
        500
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum number of attempts, including the first",
    )
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Delay before the first retry in milliseconds",
    )
    backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        le=5.0,
        description="Multiplier for exponential backoff",
    )
    max_delay_ms: int = Field(
        default=30000,
        ge=0,
        description="Maximum delay cap in milliseconds",
    )
    jitter: bool = Field(
        default=False,
        description="Add +/-25% random jitter to delays",
    )


class TimeoutConfig(BaseModel):
    """Time budgets, in seconds, for remote-affecting calls."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command_s: float = Field(default=300.0, gt=0, description="Single remote command")
    transfer_s: float = Field(default=1800.0, gt=0, description="Artifact upload")
    health_check_s: float = Field(default=10.0, gt=0, description="Single health probe")
    metrics_s: float = Field(default=30.0, gt=0, description="Single metrics query")
    job_s: float = Field(default=3600.0, gt=0, description="Whole per-target job")


class LockConfig(BaseModel):
    """Deploy lock settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ttl_ms: int = Field(
        default=DEFAULT_LOCK_TTL_MS,
        gt=0,
        description="Lock validity window; keep generous relative to deploy duration",
    )


class ReleaseConfig(BaseModel):
    """Release layout, shared resources, hooks and retention.

    Attributes:
        keep_releases: Number of release directories retained after pruning.
        shared_dirs: Directories under ``shared/`` linked into every release.
        shared_files: Files under ``shared/`` linked into every release.
        before_promote: Commands run in the release directory before promotion.
        after_promote: Commands run in the release directory after promotion.
        transfer_exclude: Glob patterns skipped during upload.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    keep_releases: int = Field(default=5, ge=1)
    shared_dirs: tuple[str, ...] = ()
    shared_files: tuple[str, ...] = ()
    before_promote: tuple[str, ...] = ()
    after_promote: tuple[str, ...] = ()
    transfer_exclude: tuple[str, ...] = DEFAULT_TRANSFER_EXCLUDES

    @model_validator(mode="after")
    def _relative_shared_paths(self) -> ReleaseConfig:
        for name in (*self.shared_dirs, *self.shared_files):
            if name.startswith("/") or ".." in Path(name).parts:
                raise ValueError(f"shared path must be relative and inside the release: {name}")
        return self


class LedgerConfig(BaseModel):
    """Version ledger settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_entries: int = Field(default=50, ge=1, description="History cap per application")


class HealthCheckConfig(BaseModel):
    """HTTP health check settings.

    Either ``url`` is given, or one is built from host, port and path.
    A disabled check always reports healthy.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    url: str | None = None
    host: str = "localhost"
    port: int = Field(default=3000, gt=0, le=65535)
    path: str = "/health"
    scheme: str = "http"
    timeout_s: float = Field(default=5.0, gt=0)
    interval_s: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1, description="Consecutive failures before unhealthy")
    expected_status: tuple[int, ...] = ()

    @property
    def resolved_url(self) -> str:
        """The URL to probe."""
        if self.url:
            return self.url
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


class CanaryConfig(BaseModel):
    """Defaults for progressive rollouts on a target."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    plan: RolloutPlan | None = None
    thresholds: AnalysisThresholds = Field(default_factory=AnalysisThresholds)


class TargetConfig(BaseModel):
    """One deploy target (host or namespace).

    Attributes:
        name: Unique target identifier.
        platform: Platform the target runs on.
        deploy_path: Release root (``releases/``, ``shared/``, ``current``).
        replicas: Total capacity units used by progressive rollouts.
        namespace: Kubernetes namespace (kubernetes platform only).
        app_name: Deployment or compose service name; defaults to the application.
        health_check: Optional post-promote health check.
        canary: Optional rollout defaults.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1)
    platform: Platform = Platform.SSH_HOST
    deploy_path: str = Field(..., min_length=1)
    replicas: int = Field(default=3, ge=1)
    namespace: str = "default"
    app_name: str | None = None
    health_check: HealthCheckConfig | None = None
    canary: CanaryConfig | None = None


class OrchestrationConfig(BaseModel):
    """Multi-target run settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    concurrency: int = Field(default=2, ge=1)
    stop_on_failure: bool = True
    stages: tuple[Stage, ...] = ()


class MetricsSourceConfig(BaseModel):
    """Prometheus metrics source for the rollout analysis gate.

    Query templates are formatted with ``target``, ``release_id``,
    ``version`` and ``window``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    prometheus_url: str
    window: str = "5m"
    success_rate_query: str | None = (
        'sum(rate(http_requests_total{{release="{release_id}",status!~"5.."}}[{window}]))'
        ' / sum(rate(http_requests_total{{release="{release_id}"}}[{window}]))'
    )
    error_rate_query: str | None = (
        'sum(rate(http_requests_total{{release="{release_id}",status=~"5.."}}[{window}]))'
        ' / sum(rate(http_requests_total{{release="{release_id}"}}[{window}]))'
    )
    latency_ms_query: str | None = (
        "1000 * histogram_quantile(0.95, sum by (le) "
        '(rate(http_request_duration_seconds_bucket{{release="{release_id}"}}[{window}])))'
    )


class SlipwayManifest(BaseModel):
    """Top-level configuration document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    application: str = Field(..., min_length=1)
    state_dir: Path = Path(".slipway")
    lock: LockConfig = Field(default_factory=LockConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    targets: tuple[TargetConfig, ...] = ()
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    metrics: MetricsSourceConfig | None = None

    @model_validator(mode="after")
    def _check_targets(self) -> SlipwayManifest:
        names = [t.name for t in self.targets]
        if len(set(names)) != len(names):
            raise ValueError("target names must be unique")
        known = set(names)
        for stage in self.orchestration.stages:
            unknown = [t for t in stage.targets if t not in known]
            if unknown:
                raise ValueError(f"stage {stage.name} references unknown targets: {unknown}")
        return self

    def target(self, name: str) -> TargetConfig:
        """Return the target named ``name``."""
        for target in self.targets:
            if target.name == name:
                return target
        raise ConfigurationError("manifest", f"unknown target {name!r}")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    state_dir = os.environ.get(STATE_DIR_ENV)
    if state_dir:
        data["state_dir"] = state_dir
    ttl = os.environ.get(LOCK_TTL_ENV)
    if ttl:
        try:
            ttl_ms = int(ttl)
        except ValueError as e:
            raise ConfigurationError(LOCK_TTL_ENV, f"not an integer: {ttl!r}") from e
        data["lock"] = {**data.get("lock", {}), "ttl_ms": ttl_ms}
    return data


def load_manifest(path: Path) -> SlipwayManifest:
    """Load and validate a YAML manifest.

    Args:
        path: Manifest file.

    Returns:
        Validated SlipwayManifest with environment overrides applied.

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated.
    """
    try:
        raw = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ConfigurationError(str(path), f"cannot read file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(str(path), f"invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError(str(path), "top level must be a mapping")

    data = _apply_env_overrides(raw)
    try:
        manifest = SlipwayManifest.model_validate(data)
    except (ValidationError, InvalidPlanError) as e:
        raise ConfigurationError(str(path), str(e)) from e

    logger.debug(
        "manifest_loaded",
        path=str(path),
        application=manifest.application,
        targets=len(manifest.targets),
    )
    return manifest


__all__ = [
    "DEFAULT_LOCK_TTL_MS",
    "CanaryConfig",
    "HealthCheckConfig",
    "LedgerConfig",
    "LockConfig",
    "MetricsSourceConfig",
    "OrchestrationConfig",
    "ReleaseConfig",
    "RetryConfig",
    "SlipwayManifest",
    "TargetConfig",
    "TimeoutConfig",
    "load_manifest",
]
