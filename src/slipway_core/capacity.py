"""Capacity controllers: traffic weight realised as a replica split.

A progressive rollout gives the candidate release ``weight`` percent of the
target's total capacity and the baseline the rest. Controllers translate a
replica count for one release into platform commands run through the
target's RemoteExecutor.

Naming:
    kubernetes: one Deployment per release, ``<app>-<releaseId>``, created
        from ``releases/<releaseId>/<manifest>`` on first scale
    compose: one project per release, ``<app>-<releaseId>``, started from
        ``releases/<releaseId>/<compose file>``
"""

from __future__ import annotations

import shlex
from collections.abc import Iterable

import structlog

from slipway_core.collaborators import CommandResult
from slipway_core.errors import ConfigurationError, RemoteCommandError
from slipway_core.release import TargetBinding
from slipway_core.resilience import ResilienceSupervisor
from slipway_core.schemas.config import TimeoutConfig
from slipway_core.schemas.release import ReleaseRecord

logger = structlog.get_logger(__name__)


def compute_split(total: int, weight: int) -> tuple[int, int]:
    """Split ``total`` capacity units between candidate and baseline.

    The candidate gets ``round(total * weight / 100)`` (halves round up) and
    the baseline the remainder. A side still in use (candidate at weight > 0,
    baseline at weight < 100) never drops below one unit, so with a total of
    one unit both sides may briefly run one replica each.

    Examples:
        >>> compute_split(10, 25)
        (3, 7)
        >>> compute_split(3, 10)
        (1, 2)
        >>> compute_split(4, 100)
        (4, 0)
    """
    if total < 1:
        raise ValueError(f"total capacity must be positive, got {total}")
    if not 0 <= weight <= 100:
        raise ValueError(f"weight must be within 0..100, got {weight}")
    if weight == 0:
        return 0, total
    if weight == 100:
        return total, 0
    if total == 1:
        return 1, 1

    candidate = (total * weight + 50) // 100
    candidate = min(max(candidate, 1), total - 1)
    return candidate, total - candidate


class _CommandCapacityController:
    """Shared plumbing for controllers that drive a CLI on the target."""

    def __init__(
        self,
        targets: Iterable[TargetBinding],
        application: str,
        *,
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        self._targets = {binding.name: binding for binding in targets}
        self._application = application
        self._supervisor = supervisor or ResilienceSupervisor()
        self._timeouts = timeouts or TimeoutConfig()

    def _binding(self, target: str) -> TargetBinding:
        try:
            return self._targets[target]
        except KeyError as e:
            raise ConfigurationError("targets", f"unknown target {target!r}") from e

    def _app_name(self, binding: TargetBinding) -> str:
        return binding.config.app_name or self._application

    def _release_name(self, binding: TargetBinding, release: ReleaseRecord) -> str:
        return f"{self._app_name(binding)}-{release.release_id}"

    async def _run(
        self,
        binding: TargetBinding,
        command: str,
        *,
        operation: str,
        check: bool = True,
    ) -> CommandResult:
        timeout_s = self._timeouts.command_s

        async def attempt() -> CommandResult:
            result = await binding.executor.run(command, timeout_s=timeout_s)
            if check and not result.ok:
                raise RemoteCommandError(command, result.exit_code, result.stderr)
            return result

        return await self._supervisor.run(
            attempt,
            operation=f"{binding.name}:{operation}",
            timeout_s=timeout_s,
        )


class KubernetesCapacityController(_CommandCapacityController):
    """Scale per-release Deployments with kubectl.

    Example:
        >>> controller = KubernetesCapacityController([binding], "storefront")
        >>> await controller.scale("prod", candidate, 2)
    """

    def __init__(
        self,
        targets: Iterable[TargetBinding],
        application: str,
        *,
        manifest: str = "deployment.yaml",
        kubectl: str = "kubectl",
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        super().__init__(targets, application, supervisor=supervisor, timeouts=timeouts)
        self._manifest = manifest
        self._kubectl = kubectl

    def _kubectl_cmd(self, binding: TargetBinding, *args: str) -> str:
        parts = [self._kubectl, "-n", binding.config.namespace, *args]
        return " ".join(shlex.quote(part) for part in parts)

    async def scale(self, target: str, release: ReleaseRecord, replicas: int) -> None:
        binding = self._binding(target)
        name = self._release_name(binding, release)

        exists = await self._run(
            binding,
            self._kubectl_cmd(binding, "get", "deployment", name),
            operation="kubectl_get",
            check=False,
        )
        if not exists.ok:
            manifest_path = f"{binding.release_path(release.release_id)}/{self._manifest}"
            await self._run(
                binding,
                self._kubectl_cmd(binding, "apply", "-f", manifest_path),
                operation="kubectl_apply",
            )

        await self._run(
            binding,
            self._kubectl_cmd(binding, "scale", f"deployment/{name}", f"--replicas={replicas}"),
            operation="kubectl_scale",
        )
        logger.info(
            "capacity_scaled",
            target=target,
            platform="kubernetes",
            deployment=name,
            replicas=replicas,
        )

    async def teardown(self, target: str, release: ReleaseRecord) -> None:
        binding = self._binding(target)
        name = self._release_name(binding, release)
        await self._run(
            binding,
            self._kubectl_cmd(binding, "delete", "deployment", name, "--ignore-not-found"),
            operation="kubectl_delete",
        )
        logger.info("capacity_torn_down", target=target, platform="kubernetes", deployment=name)


class ComposeCapacityController(_CommandCapacityController):
    """Scale per-release Docker Compose projects."""

    def __init__(
        self,
        targets: Iterable[TargetBinding],
        application: str,
        *,
        compose_file: str = "docker-compose.yml",
        service: str | None = None,
        docker: str = "docker",
        supervisor: ResilienceSupervisor | None = None,
        timeouts: TimeoutConfig | None = None,
    ) -> None:
        super().__init__(targets, application, supervisor=supervisor, timeouts=timeouts)
        self._compose_file = compose_file
        self._service = service
        self._docker = docker

    def _compose_cmd(self, binding: TargetBinding, release: ReleaseRecord, *args: str) -> str:
        compose_path = f"{binding.release_path(release.release_id)}/{self._compose_file}"
        parts = [
            self._docker,
            "compose",
            "-p",
            self._release_name(binding, release),
            "-f",
            compose_path,
            *args,
        ]
        return " ".join(shlex.quote(part) for part in parts)

    async def scale(self, target: str, release: ReleaseRecord, replicas: int) -> None:
        binding = self._binding(target)
        service = self._service or self._app_name(binding)
        await self._run(
            binding,
            self._compose_cmd(binding, release, "up", "-d", "--scale", f"{service}={replicas}"),
            operation="compose_up",
        )
        logger.info(
            "capacity_scaled",
            target=target,
            platform="compose",
            project=self._release_name(binding, release),
            service=service,
            replicas=replicas,
        )

    async def teardown(self, target: str, release: ReleaseRecord) -> None:
        binding = self._binding(target)
        await self._run(
            binding,
            self._compose_cmd(binding, release, "down", "--remove-orphans"),
            operation="compose_down",
        )
        logger.info(
            "capacity_torn_down",
            target=target,
            platform="compose",
            project=self._release_name(binding, release),
        )


__all__ = ["ComposeCapacityController", "KubernetesCapacityController", "compute_split"]
