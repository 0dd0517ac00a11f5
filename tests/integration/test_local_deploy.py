"""End-to-end deploys against real local directories and shell commands."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from slipway_core import (
    AtomicReleaseManager,
    DeployLock,
    DeploymentPipeline,
    DeploymentRequest,
    EventChannel,
    FileStateStore,
    JsonlAuditSink,
    LocalArtifactTransfer,
    LocalExecutor,
    MultiTargetOrchestrator,
    ResilienceSupervisor,
    TargetBinding,
    VersionLedger,
    load_manifest,
)
from slipway_core.schemas.config import RetryConfig
from slipway_core.schemas.orchestration import JobStatus
from slipway_core.schemas.release import Artifact, ReleaseStatus

pytestmark = pytest.mark.integration


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def manifest_path(tmp_path: Path) -> Path:
    path = tmp_path / "slipway.yaml"
    path.write_text(
        f"""\
application: storefront
state_dir: {tmp_path / "state"}
release:
  keep_releases: 2
  shared_dirs: [storage]
  before_promote: ["test -f index.html"]
  after_promote: ["echo promoted > ../../promoted.txt"]
targets:
  - name: staging
    deploy_path: {tmp_path / "srv" / "staging"}
  - name: prod-a
    deploy_path: {tmp_path / "srv" / "prod-a"}
  - name: prod-b
    deploy_path: {tmp_path / "srv" / "prod-b"}
orchestration:
  concurrency: 2
  stages:
    - {{name: staging, targets: [staging]}}
    - {{name: production, targets: [prod-a, prod-b]}}
"""
    )
    return path


def _build(tmp_path: Path, version: str) -> Path:
    dist = tmp_path / f"dist-{version}"
    dist.mkdir()
    (dist / "index.html").write_text(f"<h1>{version}</h1>")
    (dist / ".git").mkdir()
    return dist


def _served(root: Path) -> str:
    return (root / "current" / "index.html").read_text()


@pytest.mark.asyncio
async def test_staged_deploys_with_rollback(tmp_path: Path, manifest_path: Path) -> None:
    manifest = load_manifest(manifest_path)
    store = FileStateStore(manifest.state_dir)
    events = EventChannel()
    supervisor = ResilienceSupervisor(RetryConfig(max_attempts=2, initial_delay_ms=0))
    executor = LocalExecutor()
    bindings = [
        TargetBinding(target, executor, LocalArtifactTransfer()) for target in manifest.targets
    ]
    ledger = VersionLedger(store, manifest.application, manifest.ledger)
    manager = AtomicReleaseManager(
        ledger, bindings, manifest.release, supervisor=supervisor, events=events
    )
    pipeline = DeploymentPipeline(
        DeployLock(store, manifest.lock, events=events), manager, events=events, sleep=_no_sleep
    )
    orchestrator = MultiTargetOrchestrator(pipeline, events=events)
    audit_path = manifest.state_dir / "audit.jsonl"

    async with JsonlAuditSink(audit_path, events, operator="ci@runner-7"):
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            request = DeploymentRequest(
                version=version, artifact=Artifact(path=_build(tmp_path, version))
            )
            result = await orchestrator.run(
                manifest.orchestration.stages,
                manifest.orchestration.concurrency,
                deployment=request,
            )
            assert result.success is True, [j.result for j in result.jobs]

        rollback = await pipeline.rollback("prod-a")

    prod_a = tmp_path / "srv" / "prod-a"
    prod_b = tmp_path / "srv" / "prod-b"
    assert rollback.success is True
    assert rollback.version == "1.1.0"
    assert _served(prod_a) == "<h1>1.1.0</h1>"
    assert _served(prod_b) == "<h1>1.2.0</h1>"

    releases = sorted(os.listdir(prod_b / "releases"))
    assert len(releases) == 2
    assert not (prod_b / "releases" / releases[-1] / ".git").exists()
    assert (prod_b / "current" / "storage").is_symlink()
    assert (prod_b / "promoted.txt").read_text().strip() == "promoted"

    history = await ledger.list("prod-b")
    assert [r.version for r in history[:3]] == ["1.2.0", "1.1.0", "1.0.0"]
    assert history[0].status == ReleaseStatus.ACTIVE

    assert await DeployLock(store).is_locked("prod-a") is False
    assert (manifest.state_dir / "ledger" / "storefront.json").is_file()
    actions = [json.loads(line)["action"] for line in audit_path.read_text().splitlines()]
    assert actions.count("deploy_succeeded") == 9
    assert "rollback_completed" in actions


@pytest.mark.asyncio
async def test_failed_hook_halts_rollout(tmp_path: Path, manifest_path: Path) -> None:
    manifest = load_manifest(manifest_path)
    store = FileStateStore(manifest.state_dir)
    executor = LocalExecutor()
    manager = AtomicReleaseManager(
        VersionLedger(store, manifest.application),
        [TargetBinding(t, executor, LocalArtifactTransfer()) for t in manifest.targets],
        manifest.release,
        supervisor=ResilienceSupervisor(RetryConfig(max_attempts=1)),
    )
    orchestrator = MultiTargetOrchestrator(DeploymentPipeline(DeployLock(store), manager))
    empty = tmp_path / "empty-dist"
    empty.mkdir()

    result = await orchestrator.run(
        manifest.orchestration.stages,
        deployment=DeploymentRequest(version="2.0.0", artifact=Artifact(path=empty)),
    )

    assert result.status_of("staging") == JobStatus.FAILED
    assert result.skipped == ["prod-a", "prod-b"]
    staging = result.jobs[0].result
    assert staging is not None
    assert staging.exit_code == 3
    assert staging.phase == "prepare"
    assert "test -f index.html" in staging.message
    assert os.listdir(tmp_path / "srv" / "staging" / "releases") == []
