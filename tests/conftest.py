"""Shared pytest fixtures for slipway-core tests.

Release-manager tests run real shell commands against ``tmp_path`` through
ScriptedExecutor, which wraps LocalExecutor and lets a test force specific
commands to fail. Capacity, metrics and health collaborators are in-memory
fakes.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from slipway_core.collaborators import (
    CancelFn,
    CommandResult,
    HealthCallback,
    HealthCheckResult,
)
from slipway_core.errors import RemoteCommandError
from slipway_core.events import EventChannel
from slipway_core.ledger import VersionLedger
from slipway_core.local import LocalArtifactTransfer, LocalExecutor
from slipway_core.release import AtomicReleaseManager, TargetBinding
from slipway_core.resilience import ResilienceSupervisor
from slipway_core.schemas.config import HealthCheckConfig, ReleaseConfig, RetryConfig, TargetConfig
from slipway_core.schemas.release import ReleaseRecord
from slipway_core.schemas.rollout import CanaryMetrics
from slipway_core.store import InMemoryStateStore
from slipway_core.telemetry.tracing import set_tracer

if TYPE_CHECKING:
    from collections.abc import Generator


async def no_sleep(_delay: float) -> None:
    return None


@dataclass
class _Rule:
    fragment: str
    exit_code: int = 1
    stderr: str = "scripted failure"
    error: BaseException | None = None
    remaining: int = -1


class ScriptedExecutor:
    """LocalExecutor with per-command failure injection and a command log."""

    def __init__(self, inner: LocalExecutor | None = None) -> None:
        self.inner = inner or LocalExecutor()
        self.commands: list[str] = []
        self._rules: list[_Rule] = []

    def fail_on(
        self,
        fragment: str,
        *,
        exit_code: int = 1,
        stderr: str = "scripted failure",
        times: int = -1,
    ) -> None:
        """Return a non-zero exit for commands containing ``fragment``."""
        self._rules.append(_Rule(fragment, exit_code=exit_code, stderr=stderr, remaining=times))

    def raise_on(self, fragment: str, error: BaseException, *, times: int = -1) -> None:
        """Raise ``error`` for commands containing ``fragment``."""
        self._rules.append(_Rule(fragment, error=error, remaining=times))

    def ran(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult:
        self.commands.append(command)
        for rule in self._rules:
            if rule.fragment in command and rule.remaining != 0:
                rule.remaining -= 1
                if rule.error is not None:
                    raise rule.error
                return CommandResult(command=command, exit_code=rule.exit_code, stderr=rule.stderr)
        return await self.inner.run(command, cwd=cwd, env=env, timeout_s=timeout_s)


class FakeCapacity:
    """CapacityController that records replica counts per release."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, int | None]] = []
        self.replicas: dict[str, int] = {}
        self.torn_down: list[str] = []
        self.fail_scale_to: int | None = None
        self.fail_teardown = False

    async def scale(self, target: str, release: ReleaseRecord, replicas: int) -> None:
        self.calls.append(("scale", release.release_id, replicas))
        if self.fail_scale_to is not None and replicas == self.fail_scale_to:
            raise RemoteCommandError(f"scale {release.release_id}", 1, "scale refused")
        self.replicas[release.release_id] = replicas

    async def teardown(self, target: str, release: ReleaseRecord) -> None:
        self.calls.append(("teardown", release.release_id, None))
        if self.fail_teardown:
            raise RemoteCommandError(f"teardown {release.release_id}", 1, "teardown refused")
        self.torn_down.append(release.release_id)
        self.replicas.pop(release.release_id, None)


class FakeMetricsSource:
    """MetricsSource returning queued samples; the last one repeats."""

    def __init__(self, *samples: CanaryMetrics) -> None:
        self._samples = deque(samples or (CanaryMetrics(success_rate=1.0, error_rate=0.0),))
        self.fetched: list[str] = []
        self.error: BaseException | None = None

    def script(self, *samples: CanaryMetrics) -> None:
        """Replace the queued samples."""
        self._samples = deque(samples)

    async def fetch(self, target: str, release: ReleaseRecord) -> CanaryMetrics:
        self.fetched.append(release.release_id)
        if self.error is not None:
            raise self.error
        if len(self._samples) > 1:
            return self._samples.popleft()
        return self._samples[0]


class FakeProber:
    """HealthProber with scripted results and a manually driven monitor."""

    def __init__(self, *results: HealthCheckResult) -> None:
        self._results = deque(results)
        self.checks = 0
        self.callback: HealthCallback | None = None
        self.cancelled = False

    def script(self, *results: HealthCheckResult) -> None:
        """Replace the queued results."""
        self._results = deque(results)

    async def check(self, config: HealthCheckConfig) -> HealthCheckResult:
        self.checks += 1
        if len(self._results) > 1:
            return self._results.popleft()
        if self._results:
            return self._results[0]
        return HealthCheckResult(healthy=True, message="HTTP 200", status_code=200)

    def monitor(
        self,
        config: HealthCheckConfig,
        on_result: HealthCallback,
        interval_s: float | None = None,
    ) -> CancelFn:
        self.callback = on_result
        self.cancelled = False

        def cancel() -> None:
            self.cancelled = True

        return cancel

    def emit(self, result: HealthCheckResult) -> None:
        assert self.callback is not None
        self.callback(result)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def supervisor() -> ResilienceSupervisor:
    """Supervisor with three attempts and no real sleeping."""
    return ResilienceSupervisor(RetryConfig(max_attempts=3, initial_delay_ms=0), sleep=no_sleep)


@pytest.fixture
def executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def capacity() -> FakeCapacity:
    return FakeCapacity()


@pytest.fixture
def metrics_source() -> FakeMetricsSource:
    return FakeMetricsSource()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def artifact_dir(tmp_path: Path) -> Path:
    """A build output with a few files plus content that must be excluded."""
    dist = tmp_path / "dist"
    (dist / "static").mkdir(parents=True)
    (dist / "index.html").write_text("<h1>storefront</h1>")
    (dist / "app.py").write_text("print('hello')\n")
    (dist / "static" / "site.css").write_text("body {}")
    (dist / "node_modules" / "left-pad").mkdir(parents=True)
    (dist / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1")
    (dist / ".git").mkdir()
    (dist / ".git" / "HEAD").write_text("ref: refs/heads/main")
    (dist / "debug.log").write_text("noise")
    return dist


@pytest.fixture
def deploy_root(tmp_path: Path) -> Path:
    return tmp_path / "srv" / "storefront"


@pytest.fixture
def target_config(deploy_root: Path) -> TargetConfig:
    return TargetConfig(name="prod", deploy_path=str(deploy_root), replicas=4)


@pytest.fixture
def release_config() -> ReleaseConfig:
    return ReleaseConfig(keep_releases=3, shared_dirs=("storage",), shared_files=(".env",))


@pytest.fixture
def ledger(store: InMemoryStateStore) -> VersionLedger:
    return VersionLedger(store, "storefront")


@pytest.fixture
def binding(target_config: TargetConfig, executor: ScriptedExecutor) -> TargetBinding:
    return TargetBinding(target_config, executor, LocalArtifactTransfer())


@pytest.fixture
def manager(
    ledger: VersionLedger,
    binding: TargetBinding,
    release_config: ReleaseConfig,
    supervisor: ResilienceSupervisor,
    events: EventChannel,
) -> AtomicReleaseManager:
    return AtomicReleaseManager(
        ledger,
        [binding],
        release_config,
        supervisor=supervisor,
        events=events,
    )


@pytest.fixture
def span_exporter() -> Generator[InMemorySpanExporter, None, None]:
    """Route slipway-core spans to an in-memory exporter for assertions."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("slipway_core.test"))
    yield exporter
    set_tracer(None)
    exporter.clear()
