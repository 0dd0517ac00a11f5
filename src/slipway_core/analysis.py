"""Rollout analysis gate and the Prometheus metrics source.

The gate pulls a CanaryMetrics sample for the candidate release and checks
it against AnalysisThresholds. Optionally it also runs a health probe. A
gate fails closed: if metrics cannot be fetched the candidate does not pass.

Threshold semantics:
    - success_rate below ``min_success_rate`` fails
    - error_rate above ``max_error_rate`` fails
    - latency_ms above ``max_latency_ms`` fails
    - values equal to a threshold pass
    - a threshold that is None is not checked
    - a configured threshold whose metric is None fails ("No data for ...");
      an empty Prometheus vector means the candidate served nothing yet
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from slipway_core.collaborators import HealthProber, MetricsSource
from slipway_core.resilience import ResilienceSupervisor
from slipway_core.schemas.config import HealthCheckConfig, MetricsSourceConfig, TimeoutConfig
from slipway_core.schemas.release import ReleaseRecord
from slipway_core.schemas.rollout import AnalysisThresholds, CanaryMetrics, GateResult
from slipway_core.telemetry.metrics import DeployMetrics

logger = structlog.get_logger(__name__)


def check_thresholds(metrics: CanaryMetrics, thresholds: AnalysisThresholds) -> list[str]:
    """Return a reason string for each violated threshold.

    Examples:
        >>> limits = AnalysisThresholds(max_error_rate=0.01)
        >>> check_thresholds(CanaryMetrics(error_rate=0.08), limits)
        ['Error rate 0.08 above threshold 0.01']
    """
    reasons: list[str] = []
    if thresholds.min_success_rate is not None:
        if metrics.success_rate is None:
            reasons.append("No data for success_rate")
        elif metrics.success_rate < thresholds.min_success_rate:
            reasons.append(
                f"Success rate {metrics.success_rate:g} below threshold "
                f"{thresholds.min_success_rate:g}"
            )
    if thresholds.max_error_rate is not None:
        if metrics.error_rate is None:
            reasons.append("No data for error_rate")
        elif metrics.error_rate > thresholds.max_error_rate:
            reasons.append(
                f"Error rate {metrics.error_rate:g} above threshold "
                f"{thresholds.max_error_rate:g}"
            )
    if thresholds.max_latency_ms is not None:
        if metrics.latency_ms is None:
            reasons.append("No data for latency_ms")
        elif metrics.latency_ms > thresholds.max_latency_ms:
            reasons.append(
                f"Latency {metrics.latency_ms:g}ms above threshold "
                f"{thresholds.max_latency_ms:g}ms"
            )
    return reasons


class AnalysisGate:
    """Pass/fail decision for one rollout step.

    Args:
        metrics_source: Where candidate metrics come from.
        thresholds: Default thresholds; ``evaluate`` may override per call.
        prober: Optional health prober run alongside the metrics check.
        health_config: Health check used with ``prober``.
        supervisor: Timeout and retry for the metrics fetch.
        timeouts: Time budgets (``metrics_s``, ``health_check_s``).
        metrics: Metrics recorder.
    """

    def __init__(
        self,
        metrics_source: MetricsSource,
        thresholds: AnalysisThresholds | None = None,
        *,
        prober: HealthProber | None = None,
        health_config: HealthCheckConfig | None = None,
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
        metrics: DeployMetrics | None = None,
    ) -> None:
        self._source = metrics_source
        self._thresholds = thresholds or AnalysisThresholds()
        self._prober = prober
        self._health_config = health_config
        self._supervisor = supervisor or ResilienceSupervisor()
        self._timeouts = timeouts or TimeoutConfig()
        self._metrics = metrics or DeployMetrics()

    @property
    def thresholds(self) -> AnalysisThresholds:
        return self._thresholds

    async def evaluate(
        self,
        step_index: int,
        weight: int,
        target: str,
        release: ReleaseRecord,
        *,
        thresholds: AnalysisThresholds | None = None,
    ) -> GateResult:
        """Run the gate for ``release`` at ``weight``.

        Never raises for a failing candidate; the verdict is in the result.
        """
        start = time.monotonic()
        limits = thresholds or self._thresholds
        reasons: list[str] = []
        details: dict[str, Any] = {}
        sample: CanaryMetrics | None = None

        try:
            sample = await self._supervisor.run(
                lambda: self._source.fetch(target, release),
                operation=f"{target}:metrics",
                timeout_s=self._timeouts.metrics_s,
            )
        except Exception as e:
            logger.warning(
                "gate_metrics_unavailable",
                target=target,
                release_id=release.release_id,
                error=str(e),
            )
            reasons.append(f"Metrics unavailable: {e}")

        if sample is not None:
            reasons.extend(check_thresholds(sample, limits))

        if self._prober is not None and self._health_config is not None:
            try:
                health = await self._supervisor.run(
                    lambda: self._prober.check(self._health_config),
                    operation=f"{target}:health",
                    timeout_s=self._timeouts.health_check_s,
                    retry=False,
                )
            except Exception as e:
                reasons.append(f"Health check failed: {e}")
            else:
                details["health"] = health.message
                if not health.healthy:
                    reasons.append(f"Health check failed: {health.message}")

        passed = not reasons
        self._metrics.record_gate(target, passed=passed)
        result = GateResult(
            step_index=step_index,
            weight=weight,
            passed=passed,
            reasons=reasons,
            metrics=sample,
            duration_ms=int((time.monotonic() - start) * 1000),
            details=details,
        )
        logger.info(
            "gate_evaluated",
            target=target,
            release_id=release.release_id,
            step_index=step_index,
            weight=weight,
            passed=passed,
            reasons=reasons,
        )
        return result


class PrometheusMetricsSource:
    """MetricsSource that runs instant queries against Prometheus.

    Each configured query template is formatted with ``target``,
    ``release_id``, ``version`` and ``window`` and sent to
    ``/api/v1/query``. The first sample of the result vector is used; an
    empty vector yields None for that metric.

    Example:
        >>> source = PrometheusMetricsSource(MetricsSourceConfig(prometheus_url="http://prom:9090"))
        >>> sample = await source.fetch("prod", candidate)
        >>> sample.error_rate
        0.002
    """

    def __init__(
        self,
        config: MetricsSourceConfig,
        client: httpx.AsyncClient | None = None,
        *,
        timeout_s: float = 10.0,
    ) -> None:
        self._config = config
        self._client = client
        self._timeout_s = timeout_s
        self._endpoint = config.prometheus_url.rstrip("/") + "/api/v1/query"

    async def _get(self, query: str) -> httpx.Response:
        params = {"query": query}
        if self._client is not None:
            return await self._client.get(self._endpoint, params=params, timeout=self._timeout_s)
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            return await client.get(self._endpoint, params=params)

    async def query(self, query: str) -> float | None:
        """Run one instant query and return its first value.

        Raises:
            httpx.HTTPStatusError: On a non-2xx response.
            ValueError: If Prometheus reports an error or the payload is malformed.
        """
        response = await self._get(query)
        response.raise_for_status()
        body = response.json()
        if body.get("status") != "success":
            raise ValueError(f"Prometheus query failed: {body.get('error', 'unknown error')}")
        result = body.get("data", {}).get("result", [])
        if not result:
            return None
        try:
            value = float(result[0]["value"][1])
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Unexpected Prometheus result shape: {result[0]!r}") from e
        if math.isnan(value) or math.isinf(value):
            return None
        return value

    async def fetch(self, target: str, release: ReleaseRecord) -> CanaryMetrics:
        fields = {
            "target": target,
            "release_id": release.release_id,
            "version": release.version,
            "window": self._config.window,
        }
        values: dict[str, float | None] = {}
        for name, template in (
            ("success_rate", self._config.success_rate_query),
            ("error_rate", self._config.error_rate_query),
            ("latency_ms", self._config.latency_ms_query),
        ):
            values[name] = await self.query(template.format(**fields)) if template else None

        for rate in ("success_rate", "error_rate"):
            value = values[rate]
            if value is not None:
                values[rate] = min(max(value, 0.0), 1.0)
        latency = values["latency_ms"]
        if latency is not None:
            values["latency_ms"] = max(latency, 0.0)

        logger.debug(
            "canary_metrics_fetched", target=target, release_id=release.release_id, **values
        )
        return CanaryMetrics(sampled_at=datetime.now(timezone.utc), **values)


__all__ = ["AnalysisGate", "PrometheusMetricsSource", "check_thresholds"]
