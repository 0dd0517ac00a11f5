"""Atomic release manager.

Each release is materialised into its own directory next to the active one
and is linked to shared state. A release becomes visible only through a
single symlink repoint, which is the system's atomicity boundary.

Layout on a target::

    <root>/releases/<releaseId>/      immutable per-release payload
    <root>/shared/<name>              persists across releases; linked, not copied
    <root>/current -> <root>/releases/<releaseId>

The repoint creates a temporary symlink and renames it over ``current``
(``mv -T``), which is atomic on POSIX filesystems:

- A crash before the rename leaves the old release fully active.
- A crash after the rename leaves the new release fully active.

``reconcile()`` realigns the ledger with ``current`` after such a crash.

Failure semantics:

- Directory setup and artifact transfer are retried by the
  ResilienceSupervisor.
- The repoint is attempted exactly once. An automatic retry of a
  half-observed rename could flip ``current`` twice, so callers must
  re-invoke ``promote`` explicitly.
- A ledger write that fails after the repoint is tried once more, then
  surfaces as LedgerOutOfSyncError. The release is live at that point and
  ``discard`` refuses to remove whatever ``current`` points at.
- A prepare cancelled mid-way still removes its directory and marks the
  record ``failed``.
- After-promote hooks and pruning never fail a promotion. Their problems
  are logged and returned as warnings.
"""

from __future__ import annotations

import asyncio
import posixpath
import shlex
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from slipway_core.collaborators import ArtifactTransfer, CommandResult, RemoteExecutor
from slipway_core.errors import (
    ConfigurationError,
    LedgerOutOfSyncError,
    ReleaseFailureError,
    ReleaseNotFoundError,
    RemoteCommandError,
    SlipwayError,
)
from slipway_core.events import EventChannel, EventKind
from slipway_core.ledger import VersionLedger
from slipway_core.resilience import ResilienceSupervisor, is_transient
from slipway_core.schemas.config import ReleaseConfig, TargetConfig, TimeoutConfig
from slipway_core.schemas.release import Artifact, ReleaseRecord, ReleaseStatus
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReleaseIdGenerator:
    """Monotonic, time-derived release identifiers.

    Identifiers are ``YYYYmmddHHMMSS`` plus microseconds (20 digits), so
    lexical order equals creation order. Two calls within the same
    microsecond, or a clock stepping backwards, still yield increasing ids.
    """

    def __init__(self, clock: Callable[[], datetime] = _utc_now) -> None:
        self._clock = clock
        self._last = ""

    def next(self) -> str:
        candidate = self._clock().strftime("%Y%m%d%H%M%S%f")
        if candidate <= self._last:
            candidate = str(int(self._last) + 1)
        self._last = candidate
        return candidate


@dataclass(frozen=True)
class TargetBinding:
    """A target's configuration together with the collaborators that reach it."""

    config: TargetConfig
    executor: RemoteExecutor
    transfer: ArtifactTransfer

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def root(self) -> str:
        return self.config.deploy_path.rstrip("/") or "/"

    @property
    def releases_dir(self) -> str:
        return posixpath.join(self.root, "releases")

    @property
    def shared_dir(self) -> str:
        return posixpath.join(self.root, "shared")

    @property
    def current_link(self) -> str:
        return posixpath.join(self.root, "current")

    def release_path(self, release_id: str) -> str:
        return posixpath.join(self.releases_dir, release_id)


@dataclass(frozen=True)
class PromotionOutcome:
    """What a promotion or rollback changed.

    Attributes:
        record: The release now active.
        replaced_release_id: The release that was active before, if any.
        pruned: Release directories removed afterwards.
        warnings: Non-fatal problems (hook or prune failures).
    """

    record: ReleaseRecord
    replaced_release_id: str | None = None
    pruned: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class AtomicReleaseManager:
    """Prepare, promote, discard and roll back releases on bound targets.

    Example:
        >>> manager = AtomicReleaseManager(ledger, [binding], ReleaseConfig())
        >>> record = await manager.prepare("prod", "2.1.0", Artifact(path=Path("dist")))
        >>> await manager.promote(record.release_id)
        >>> await manager.current("prod") == record.release_id
        True
    """

    def __init__(
        self,
        ledger: VersionLedger,
        targets: Iterable[TargetBinding],
        config: ReleaseConfig | None = None,
        *,
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
        events: EventChannel | None = None,
        metrics: DeployMetrics | None = None,
        id_generator: ReleaseIdGenerator | None = None,
    ) -> None:
        self._ledger = ledger
        self._targets: dict[str, TargetBinding] = {b.name: b for b in targets}
        self._config = config or ReleaseConfig()
        self._supervisor = supervisor or ResilienceSupervisor()
        self._timeouts = timeouts or TimeoutConfig()
        self._events = events or EventChannel()
        self._metrics = metrics or DeployMetrics()
        self._ids = id_generator or ReleaseIdGenerator()

    @property
    def ledger(self) -> VersionLedger:
        return self._ledger

    @property
    def targets(self) -> Mapping[str, TargetBinding]:
        return self._targets

    def binding(self, target: str) -> TargetBinding:
        """Return the binding for ``target``."""
        try:
            return self._targets[target]
        except KeyError as e:
            raise ConfigurationError("targets", f"unknown target {target!r}") from e

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------

    async def _run(
        self,
        binding: TargetBinding,
        command: str,
        *,
        operation: str,
        cwd: str | None = None,
        retry: bool = True,
    ) -> CommandResult:
        """Run a command that must succeed; non-zero exit raises RemoteCommandError."""
        timeout_s = self._timeouts.command_s

        async def attempt() -> CommandResult:
            result = await binding.executor.run(command, cwd=cwd, timeout_s=timeout_s)
            if not result.ok:
                raise RemoteCommandError(command, result.exit_code, result.stderr)
            return result

        return await self._supervisor.run(
            attempt,
            operation=f"{binding.name}:{operation}",
            timeout_s=timeout_s,
            retry=retry,
        )

    async def _inspect(self, binding: TargetBinding, command: str) -> CommandResult:
        """Run a query command whose non-zero exit is an answer, not an error."""
        timeout_s = self._timeouts.command_s
        return await self._supervisor.run(
            lambda: binding.executor.run(command, timeout_s=timeout_s),
            operation=f"{binding.name}:inspect",
            timeout_s=timeout_s,
        )

    async def _release_exists(self, binding: TargetBinding, release_id: str) -> bool:
        result = await self._inspect(
            binding, f"test -d {shlex.quote(binding.release_path(release_id))}"
        )
        return result.ok

    # ------------------------------------------------------------------
    # Prepare
    # ------------------------------------------------------------------

    async def prepare(
        self,
        target: str,
        version: str,
        artifact: Artifact,
    ) -> ReleaseRecord:
        """Materialise ``artifact`` as a new, not-yet-visible release.

        Args:
            target: Target to prepare on.
            version: Semantic version of the artifact.
            artifact: Local payload and transfer exclusions.

        Returns:
            ReleaseRecord with status ``preparing``.

        Raises:
            ReleaseFailureError: If any step failed; the release directory is
                removed and the record marked ``failed``.
        """
        binding = self.binding(target)
        release_id = self._ids.next()
        release_path = binding.release_path(release_id)
        record = ReleaseRecord(
            release_id=release_id,
            version=version,
            target=target,
            platform=binding.config.platform,
            status=ReleaseStatus.PREPARING,
            created_at=_utc_now(),
        )
        log = logger.bind(target=target, release_id=release_id, version=version)
        await self._ledger.record(record)

        phase = "layout"
        try:
            with create_span(
                DeployMetrics.SPAN_PREPARE,
                attributes={
                    "slipway.target": target,
                    "slipway.release_id": release_id,
                    "slipway.version": version,
                },
            ), self._metrics.operation_timer("prepare", target):
                await self._run(
                    binding,
                    "mkdir -p "
                    + " ".join(
                        shlex.quote(p)
                        for p in (binding.releases_dir, binding.shared_dir, release_path)
                    ),
                    operation="layout",
                )

                phase = "transfer"
                exclude = tuple(dict.fromkeys((*artifact.exclude, *self._config.transfer_exclude)))
                transfer = await self._supervisor.run(
                    lambda: binding.transfer.upload(artifact.path, release_path, exclude=exclude),
                    operation=f"{target}:transfer",
                    timeout_s=self._timeouts.transfer_s,
                )
                log.info(
                    "release_transferred",
                    files=transfer.files_transferred,
                    bytes=transfer.bytes_transferred,
                )

                phase = "link"
                await self._link_shared(binding, release_path, log)

                phase = "hooks"
                for hook in self._config.before_promote:
                    await self._run(
                        binding, hook, operation="before_promote", cwd=release_path, retry=False
                    )
        except asyncio.CancelledError as e:
            await asyncio.shield(self._abandon(binding, record, phase, e))
            raise
        except Exception as e:
            await self._abandon(binding, record, phase, e)
            if isinstance(e, ReleaseFailureError):
                raise
            raise ReleaseFailureError(release_id, phase, str(e), retryable=is_transient(e)) from e

        log.info("release_prepared")
        self._events.emit(
            EventKind.RELEASE_PREPARED,
            target=target,
            release_id=release_id,
            version=version,
        )
        return record

    async def _link_shared(
        self,
        binding: TargetBinding,
        release_path: str,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        for name in self._config.shared_dirs:
            shared = shlex.quote(posixpath.join(binding.shared_dir, name))
            linked = shlex.quote(posixpath.join(release_path, name))
            parent = shlex.quote(posixpath.dirname(posixpath.join(release_path, name)))
            await self._run(
                binding,
                f"mkdir -p {shared} {parent} && rm -rf {linked} && ln -sfn {shared} {linked}",
                operation="link_shared_dir",
            )

        for name in self._config.shared_files:
            shared_path = posixpath.join(binding.shared_dir, name)
            exists = await self._inspect(binding, f"test -e {shlex.quote(shared_path)}")
            if not exists.ok:
                log.warning("shared_file_missing", shared_file=name, path=shared_path)
                continue
            linked = shlex.quote(posixpath.join(release_path, name))
            parent = shlex.quote(posixpath.dirname(posixpath.join(release_path, name)))
            await self._run(
                binding,
                f"mkdir -p {parent} && rm -rf {linked} && "
                f"ln -sfn {shlex.quote(shared_path)} {linked}",
                operation="link_shared_file",
            )

    async def _abandon(
        self,
        binding: TargetBinding,
        record: ReleaseRecord,
        phase: str,
        error: BaseException,
    ) -> None:
        """Clean up after a failed prepare. Cleanup problems are only logged."""
        reason = str(error) or type(error).__name__
        logger.error(
            "release_prepare_failed",
            target=record.target,
            release_id=record.release_id,
            phase=phase,
            error=reason,
        )
        try:
            await self._run(
                binding,
                f"rm -rf {shlex.quote(binding.release_path(record.release_id))}",
                operation="cleanup",
                retry=False,
            )
        except Exception as cleanup_error:
            logger.warning(
                "release_cleanup_failed",
                target=record.target,
                release_id=record.release_id,
                error=str(cleanup_error),
            )
        await self._ledger.set_status(record.release_id, ReleaseStatus.FAILED)
        self._events.emit(
            EventKind.RELEASE_FAILED,
            target=record.target,
            release_id=record.release_id,
            message=reason,
            phase=phase,
        )

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    async def _switch(
        self,
        binding: TargetBinding,
        record: ReleaseRecord,
        *,
        replaced_status: ReleaseStatus,
    ) -> ReleaseRecord:
        """Repoint ``current`` at ``record`` and update the ledger."""
        release_id = record.release_id
        if not await self._release_exists(binding, release_id):
            raise ReleaseNotFoundError(
                binding.name,
                release_id,
                reason="release directory is missing (pruned?)",
            )

        temp_link = posixpath.join(binding.root, f".current.{release_id}.tmp")
        command = (
            f"ln -sfn {shlex.quote(binding.release_path(release_id))} {shlex.quote(temp_link)}"
            f" && mv -Tf {shlex.quote(temp_link)} {shlex.quote(binding.current_link)}"
        )
        try:
            await self._run(binding, command, operation="repoint", retry=False)
        except SlipwayError as e:
            await self._remove_quietly(binding, temp_link)
            raise ReleaseFailureError(release_id, "promote", str(e), retryable=False) from e

        # From here on ``current`` points at the release; it must never be discarded.
        try:
            return await self._ledger.activate(
                binding.name,
                release_id,
                replaced_status=replaced_status,
            )
        except Exception as e:
            logger.error(
                "ledger_update_after_repoint_failed",
                target=binding.name,
                release_id=release_id,
                error=str(e),
            )
            first_error = e

        try:
            active = await self._ledger.activate(
                binding.name,
                release_id,
                replaced_status=replaced_status,
            )
        except Exception as e:
            raise LedgerOutOfSyncError(binding.name, release_id, str(e)) from first_error
        logger.warning("ledger_repaired_after_repoint", target=binding.name, release_id=release_id)
        return active

    async def _remove_quietly(self, binding: TargetBinding, path: str) -> None:
        try:
            await binding.executor.run(
                f"rm -f {shlex.quote(path)}", timeout_s=self._timeouts.command_s
            )
        except Exception as e:
            logger.warning("temp_link_cleanup_failed", target=binding.name, path=path, error=str(e))

    async def _after_promote(self, binding: TargetBinding, record: ReleaseRecord) -> list[str]:
        warnings: list[str] = []
        release_path = binding.release_path(record.release_id)
        for hook in self._config.after_promote:
            try:
                await self._run(
                    binding, hook, operation="after_promote", cwd=release_path, retry=False
                )
            except Exception as e:
                logger.warning(
                    "after_promote_hook_failed",
                    target=binding.name,
                    release_id=record.release_id,
                    hook=hook,
                    error=str(e),
                )
                warnings.append(f"after_promote hook failed: {hook}: {e}")
        return warnings

    async def promote(self, release_id: str) -> PromotionOutcome:
        """Atomically make ``release_id`` the active release of its target.

        Promoting the already-active release is a no-op.

        Raises:
            ReleaseNotFoundError: If the release is unknown or its directory is gone.
            ReleaseFailureError: If the release failed preparation or the
                repoint failed (``current`` is unchanged in that case).
            LedgerOutOfSyncError: If ``current`` moved but the ledger could not
                record it, even after a second attempt.
        """
        record = await self._ledger.get_release(release_id)
        if record is None:
            raise ReleaseNotFoundError(
                self._ledger.application, release_id, reason="not in ledger"
            )
        binding = self.binding(record.target)
        if record.status == ReleaseStatus.ACTIVE:
            return PromotionOutcome(record=record)
        if record.status == ReleaseStatus.FAILED:
            raise ReleaseFailureError(
                release_id, "promote", "release failed preparation", retryable=False
            )

        before = await self._ledger.current(record.target)
        with create_span(
            DeployMetrics.SPAN_PROMOTE,
            attributes={
                "slipway.target": record.target,
                "slipway.release_id": release_id,
                "slipway.version": record.version,
            },
        ), self._metrics.operation_timer("promote", record.target):
            active = await self._switch(binding, record, replaced_status=ReleaseStatus.INACTIVE)

        logger.info(
            "release_promoted",
            target=record.target,
            release_id=release_id,
            version=record.version,
            replaced_release_id=before.release_id if before else None,
        )
        self._events.emit(
            EventKind.RELEASE_PROMOTED,
            target=record.target,
            release_id=release_id,
            version=record.version,
            replaced_release_id=before.release_id if before else None,
        )

        warnings = await self._after_promote(binding, active)
        pruned, prune_warnings = await self._prune(binding)
        return PromotionOutcome(
            record=active,
            replaced_release_id=before.release_id if before else None,
            pruned=pruned,
            warnings=warnings + prune_warnings,
        )

    async def discard(
        self,
        release_id: str,
        status: ReleaseStatus = ReleaseStatus.FAILED,
    ) -> ReleaseRecord:
        """Remove a non-active release's directory and mark it ``status``.

        Raises:
            ReleaseNotFoundError: If the release is unknown.
            ReleaseFailureError: If the release is the active one, or ``current``
                points at it even though the ledger does not say so.
        """
        record = await self._ledger.get_release(release_id)
        if record is None:
            raise ReleaseNotFoundError(
                self._ledger.application, release_id, reason="not in ledger"
            )
        if record.status == ReleaseStatus.ACTIVE:
            raise ReleaseFailureError(
                release_id, "discard", "cannot discard the active release", retryable=False
            )
        binding = self.binding(record.target)
        if await self.current(record.target) == release_id:
            raise ReleaseFailureError(
                release_id,
                "discard",
                "current points at this release; reconcile before discarding",
                retryable=False,
            )
        await self._run(
            binding,
            f"rm -rf {shlex.quote(binding.release_path(release_id))}",
            operation="discard",
        )
        updated = await self._ledger.set_status(release_id, status)
        logger.info(
            "release_discarded",
            target=record.target,
            release_id=release_id,
            status=status.value,
        )
        self._events.emit(
            EventKind.RELEASE_DISCARDED,
            target=record.target,
            release_id=release_id,
            status=status.value,
        )
        return updated

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_to_previous(self, target: str) -> PromotionOutcome:
        """Reactivate the release the current one replaced.

        The release rolled back from is marked ``rolled_back``, so calling
        this twice in a row fails the second time with ReleaseNotFoundError
        instead of walking further back in history.

        Raises:
            ReleaseNotFoundError: No eligible previous release, or it was pruned.
            ReleaseFailureError: The repoint failed.
        """
        self.binding(target)
        previous = await self._ledger.previous(target)
        if previous is None:
            raise ReleaseNotFoundError(target, reason="no previous release to roll back to")
        return await self._rollback(target, previous, reason="previous")

    async def rollback_to(self, target: str, release_id: str) -> PromotionOutcome:
        """Reactivate a specific, still-materialised release on ``target``.

        Raises:
            ReleaseNotFoundError: Unknown release, another target's release, or pruned.
        """
        self.binding(target)
        record = await self._ledger.get_release(release_id)
        if record is None or record.target != target:
            raise ReleaseNotFoundError(target, release_id, reason="not in ledger for target")
        if record.status == ReleaseStatus.ACTIVE:
            return PromotionOutcome(record=record)
        if record.status in (ReleaseStatus.PREPARING, ReleaseStatus.FAILED):
            raise ReleaseNotFoundError(
                target, release_id, reason=f"release was never active ({record.status.value})"
            )
        return await self._rollback(target, record, reason="explicit")

    async def _rollback(
        self,
        target: str,
        record: ReleaseRecord,
        *,
        reason: str,
    ) -> PromotionOutcome:
        binding = self.binding(target)
        before = await self._ledger.current(target)
        with create_span(
            DeployMetrics.SPAN_ROLLBACK,
            attributes={
                "slipway.target": target,
                "slipway.release_id": record.release_id,
                "slipway.rollback.reason": reason,
            },
        ), self._metrics.operation_timer("rollback", target):
            active = await self._switch(binding, record, replaced_status=ReleaseStatus.ROLLED_BACK)

        self._metrics.record_rollback(target, reason)
        logger.warning(
            "rollback_completed",
            target=target,
            release_id=record.release_id,
            version=record.version,
            rolled_back_from=before.release_id if before else None,
        )
        self._events.emit(
            EventKind.ROLLBACK_COMPLETED,
            target=target,
            release_id=record.release_id,
            version=record.version,
            rolled_back_from=before.release_id if before else None,
        )
        warnings = await self._after_promote(binding, active)
        return PromotionOutcome(
            record=active,
            replaced_release_id=before.release_id if before else None,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def current(self, target: str) -> str | None:
        """Return the release id ``current`` points at on the target."""
        binding = self.binding(target)
        result = await self._inspect(binding, f"readlink {shlex.quote(binding.current_link)}")
        if not result.ok or not result.stdout.strip():
            return None
        return posixpath.basename(result.stdout.strip().rstrip("/"))

    async def prune(self, target: str) -> list[str]:
        """Delete release directories beyond the retention count, oldest first."""
        pruned, _ = await self._prune(self.binding(target))
        return pruned

    async def _prune(self, binding: TargetBinding) -> tuple[list[str], list[str]]:
        keep = self._config.keep_releases
        warnings: list[str] = []
        with create_span(DeployMetrics.SPAN_PRUNE, attributes={"slipway.target": binding.name}):
            try:
                listing = await self._run(
                    binding, f"ls -1 {shlex.quote(binding.releases_dir)}", operation="list"
                )
                active = await self.current(binding.name)
            except Exception as e:
                logger.warning("prune_listing_failed", target=binding.name, error=str(e))
                return [], [f"prune skipped: {e}"]

            releases = sorted(line.strip() for line in listing.stdout.splitlines() if line.strip())
            candidates = [r for r in releases if r != active]
            excess = len(releases) - keep
            to_remove = candidates[: max(excess, 0)]

            removed: list[str] = []
            for release_id in to_remove:
                try:
                    await self._run(
                        binding,
                        f"rm -rf {shlex.quote(binding.release_path(release_id))}",
                        operation="prune",
                    )
                    removed.append(release_id)
                except Exception as e:
                    logger.warning(
                        "prune_failed",
                        target=binding.name,
                        release_id=release_id,
                        error=str(e),
                    )
                    warnings.append(f"failed to prune {release_id}: {e}")

        if removed:
            logger.info("releases_pruned", target=binding.name, removed=removed, kept=keep)
            self._events.emit(EventKind.RELEASES_PRUNED, target=binding.name, removed=removed)
        return removed, warnings

    async def reconcile(self, target: str) -> ReleaseRecord | None:
        """Make the ledger agree with what ``current`` points at.

        Used after a crash between the repoint and the ledger update.

        Returns:
            The active record after reconciliation, or None if ``current``
            is unset or points at a release the ledger does not know.
        """
        release_id = await self.current(target)
        if release_id is None:
            return None
        record = await self._ledger.get_release(release_id)
        if record is None:
            logger.warning("reconcile_unknown_release", target=target, release_id=release_id)
            return None
        if record.status == ReleaseStatus.ACTIVE:
            return record
        logger.warning(
            "reconcile_activating",
            target=target,
            release_id=release_id,
            ledger_status=record.status.value,
        )
        return await self._ledger.activate(target, release_id)


__all__ = [
    "AtomicReleaseManager",
    "PromotionOutcome",
    "ReleaseIdGenerator",
    "TargetBinding",
]
