"""Local-host implementations of the executor and transfer contracts.

Used for single-host deployments (the deploy root lives on the machine
running slipway) and for integration tests against a temporary directory.
Commands run through ``/bin/sh``, so the release manager's command
sequences are identical whether the target is local or behind an SSH
executor.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from collections.abc import Mapping
from pathlib import Path

import structlog

from slipway_core.collaborators import CommandResult, TransferResult
from slipway_core.errors import OperationTimeoutError, ReleaseFailureError
from slipway_core.telemetry.metrics import DeployMetrics
from slipway_core.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

_OUTPUT_LIMIT = 64 * 1024


class LocalExecutor:
    """Run shell commands on the local host with asyncio subprocesses.

    Example:
        >>> executor = LocalExecutor()
        >>> result = await executor.run("ls releases", cwd="/srv/app", timeout_s=10)
        >>> result.ok
        True
    """

    def __init__(self, *, base_env: Mapping[str, str] | None = None) -> None:
        self._base_env = dict(base_env) if base_env is not None else None

    async def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_s: float | None = None,
    ) -> CommandResult:
        """Run ``command``; never raises on non-zero exit.

        Raises:
            OperationTimeoutError: If the command outlives ``timeout_s``.
                The process is killed first.
        """
        merged_env: dict[str, str] | None = None
        if env or self._base_env is not None:
            merged_env = {**os.environ, **(self._base_env or {}), **(env or {})}

        start = time.monotonic()
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            await self._kill(process)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("command_timeout", command=command, timeout_s=timeout_s)
            raise OperationTimeoutError(command, timeout_s or 0.0, elapsed_ms) from e
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        result = CommandResult(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace")[:_OUTPUT_LIMIT],
            stderr=stderr.decode(errors="replace")[:_OUTPUT_LIMIT],
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        logger.debug(
            "command_finished",
            command=command,
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
        )
        return result

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


def _copy_tree(source: Path, destination: Path, exclude: tuple[str, ...]) -> TransferResult:
    start = time.monotonic()
    shutil.copytree(
        source,
        destination,
        symlinks=True,
        ignore=shutil.ignore_patterns(*exclude) if exclude else None,
        dirs_exist_ok=True,
    )
    files = 0
    size = 0
    for root, _dirs, names in os.walk(destination):
        for name in names:
            path = Path(root) / name
            if path.is_symlink():
                continue
            files += 1
            size += path.stat().st_size
    return TransferResult(
        files_transferred=files,
        bytes_transferred=size,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


class LocalArtifactTransfer:
    """Copy a local payload directory into a local release directory."""

    @traced(
        name=DeployMetrics.SPAN_TRANSFER,
        attributes_fn=lambda self, local_path, remote_path, **_: {
            "slipway.transfer.destination": remote_path
        },
    )
    async def upload(
        self,
        local_path: Path,
        remote_path: str,
        *,
        exclude: tuple[str, ...] = (),
    ) -> TransferResult:
        """Copy ``local_path`` into ``remote_path``.

        Raises:
            ReleaseFailureError: If the source is not a directory (not retryable).
            OSError: On copy failures (treated as transient by the supervisor).
        """
        if not local_path.is_dir():
            raise ReleaseFailureError(
                Path(remote_path).name,
                "transfer",
                f"artifact path {local_path} is not a directory",
            )
        result = await asyncio.to_thread(_copy_tree, local_path, Path(remote_path), exclude)
        logger.info(
            "artifact_uploaded",
            source=str(local_path),
            destination=remote_path,
            files=result.files_transferred,
            bytes=result.bytes_transferred,
        )
        return result


__all__ = ["LocalArtifactTransfer", "LocalExecutor"]
