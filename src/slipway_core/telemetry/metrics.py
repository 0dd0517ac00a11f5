"""OpenTelemetry metrics for deployment operations.

Metrics Emitted:
    Counters:
        - slipway_deployments_total: Deploys by target, operation and status
        - slipway_rollbacks_total: Rollbacks by target and reason
        - slipway_lock_contention_total: Failed acquires by target
        - slipway_stale_locks_total: Reclaimed stale locks by target
        - slipway_gate_evaluations_total: Analysis gates by target and outcome

    Histograms:
        - slipway_operation_duration_seconds: Duration by operation and target

    Gauges:
        - slipway_rollout_weight: Candidate weight currently applied per target

Trace Spans:
    - slipway.deploy: Whole per-target pipeline
    - slipway.lock.acquire: Lock acquisition
    - slipway.prepare: Release materialisation
    - slipway.transfer: Artifact upload into a release directory
    - slipway.promote: Atomic repoint
    - slipway.rollback: Rollback to a previous release
    - slipway.prune: Old release cleanup
    - slipway.rollout: Whole progressive rollout
    - slipway.rollout.step: One rollout step
    - slipway.orchestrate: Multi-target run
    - slipway.job: One orchestration job

Example:
    >>> metrics = DeployMetrics()
    >>> with metrics.operation_timer("promote", "prod"):
    ...     await manager.promote(release_id)
    >>> metrics.record_deployment("prod", "deploy", success=True)
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import metrics

if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.metrics import Counter, Histogram
    from opentelemetry.metrics._internal.instrument import Gauge


logger = structlog.get_logger(__name__)


class DeployMetrics:
    """OpenTelemetry metrics collector for deployment operations.

    Instruments are created lazily on first use. All metric names carry the
    ``slipway_`` prefix.

    Label Conventions:
        - target: Target name (e.g., prod, staging)
        - operation: deploy, rollback, prepare, promote, rollout, job
        - status: success, failure
    """

    DEPLOYMENTS_TOTAL = "slipway_deployments_total"
    ROLLBACKS_TOTAL = "slipway_rollbacks_total"
    LOCK_CONTENTION_TOTAL = "slipway_lock_contention_total"
    STALE_LOCKS_TOTAL = "slipway_stale_locks_total"
    GATE_EVALUATIONS_TOTAL = "slipway_gate_evaluations_total"
    OPERATION_DURATION_SECONDS = "slipway_operation_duration_seconds"
    ROLLOUT_WEIGHT = "slipway_rollout_weight"

    SPAN_DEPLOY = "slipway.deploy"
    SPAN_LOCK_ACQUIRE = "slipway.lock.acquire"
    SPAN_PREPARE = "slipway.prepare"
    SPAN_TRANSFER = "slipway.transfer"
    SPAN_PROMOTE = "slipway.promote"
    SPAN_ROLLBACK = "slipway.rollback"
    SPAN_PRUNE = "slipway.prune"
    SPAN_ROLLOUT = "slipway.rollout"
    SPAN_ROLLOUT_STEP = "slipway.rollout.step"
    SPAN_ORCHESTRATE = "slipway.orchestrate"
    SPAN_JOB = "slipway.job"

    def __init__(
        self,
        meter_name: str = "slipway",
        meter_version: str = "0.1.0",
    ) -> None:
        self._meter = metrics.get_meter(meter_name, meter_version)

        self._deployments_counter: Counter | None = None
        self._rollbacks_counter: Counter | None = None
        self._lock_contention_counter: Counter | None = None
        self._stale_locks_counter: Counter | None = None
        self._gate_counter: Counter | None = None
        self._duration_histogram: Histogram | None = None
        self._weight_gauge: Gauge | None = None

    def _counter(self, attr: str, name: str, description: str) -> Counter:
        counter = getattr(self, attr)
        if counter is None:
            counter = self._meter.create_counter(name, unit="1", description=description)
            setattr(self, attr, counter)
        return counter

    @property
    def deployments_counter(self) -> Counter:
        return self._counter(
            "_deployments_counter",
            self.DEPLOYMENTS_TOTAL,
            "Deployments by target, operation and status",
        )

    @property
    def rollbacks_counter(self) -> Counter:
        return self._counter(
            "_rollbacks_counter",
            self.ROLLBACKS_TOTAL,
            "Rollbacks by target and reason",
        )

    @property
    def lock_contention_counter(self) -> Counter:
        return self._counter(
            "_lock_contention_counter",
            self.LOCK_CONTENTION_TOTAL,
            "Lock acquisitions refused because another holder is active",
        )

    @property
    def stale_locks_counter(self) -> Counter:
        return self._counter(
            "_stale_locks_counter",
            self.STALE_LOCKS_TOTAL,
            "Expired lock records reclaimed",
        )

    @property
    def gate_counter(self) -> Counter:
        return self._counter(
            "_gate_counter",
            self.GATE_EVALUATIONS_TOTAL,
            "Rollout analysis gate evaluations by outcome",
        )

    @property
    def duration_histogram(self) -> Histogram:
        if self._duration_histogram is None:
            self._duration_histogram = self._meter.create_histogram(
                self.OPERATION_DURATION_SECONDS,
                unit="s",
                description="Duration of deployment operations in seconds",
            )
        return self._duration_histogram

    @property
    def weight_gauge(self) -> Gauge:
        if self._weight_gauge is None:
            self._weight_gauge = self._meter.create_gauge(
                self.ROLLOUT_WEIGHT,
                unit="%",
                description="Candidate traffic weight currently applied",
            )
        return self._weight_gauge

    def record_deployment(self, target: str, operation: str, *, success: bool) -> None:
        """Record a finished deploy or rollback."""
        attributes: dict[str, Any] = {
            "target": target,
            "operation": operation,
            "status": "success" if success else "failure",
        }
        self.deployments_counter.add(1, attributes=attributes)
        logger.debug("deployment_recorded", **attributes)

    def record_rollback(self, target: str, reason: str) -> None:
        self.rollbacks_counter.add(1, attributes={"target": target, "reason": reason})

    def record_lock_contention(self, target: str) -> None:
        self.lock_contention_counter.add(1, attributes={"target": target})

    def record_stale_lock(self, target: str) -> None:
        self.stale_locks_counter.add(1, attributes={"target": target})

    def record_gate(self, target: str, *, passed: bool) -> None:
        self.gate_counter.add(
            1,
            attributes={"target": target, "outcome": "passed" if passed else "failed"},
        )

    def set_rollout_weight(self, target: str, weight: int) -> None:
        self.weight_gauge.set(weight, attributes={"target": target})

    def record_duration(self, operation: str, target: str, duration_seconds: float) -> None:
        self.duration_histogram.record(
            duration_seconds,
            attributes={"operation": operation, "target": target},
        )

    @contextmanager
    def operation_timer(self, operation: str, target: str) -> Generator[None, None, None]:
        """Record the duration of the enclosed block, even when it raises."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.record_duration(operation, target, time.monotonic() - start)


__all__ = ["DeployMetrics"]
