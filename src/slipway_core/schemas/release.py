"""Release and lock record schemas.

These are the two persisted record types. Both serialise with camelCase
aliases (``model_dump(by_alias=True, mode="json")``) so the on-disk format
stays stable regardless of Python field naming.

Key Components:
    Platform: Deployment platform of a target
    ReleaseStatus: Lifecycle status of a release record
    ReleaseRecord: One deployed artifact instance on one target
    LockOperation: Operation a deploy lock guards
    LockRecord: Persisted mutual-exclusion record for one target
    Artifact: Local payload to materialise as a release
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class Platform(str, Enum):
    """Deployment platform of a target."""

    DOCKER = "docker"
    COMPOSE = "compose"
    KUBERNETES = "kubernetes"
    SSH_HOST = "ssh-host"


class ReleaseStatus(str, Enum):
    """Lifecycle status of a release record.

    Attributes:
        PREPARING: Materialised (or being materialised), not yet visible.
        ACTIVE: The release ``current`` points at. One per target.
        INACTIVE: Previously active, replaced by a normal promotion.
        FAILED: Preparation or promotion failed.
        ROLLED_BACK: Replaced by a rollback or aborted canary.
    """

    PREPARING = "preparing"
    ACTIVE = "active"
    INACTIVE = "inactive"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ReleaseRecord(BaseModel):
    """One deployed artifact instance on one target.

    Attributes:
        release_id: Monotonic, time-derived identifier (also the directory name).
        version: Semantic version of the artifact.
        target: Environment or host identifier.
        platform: Platform the target runs on.
        status: Current lifecycle status.
        created_at: When the release was prepared (UTC).
        activated_at: When the release last became active (UTC).
        previous_release_id: Release this one replaced when it became active.

    Examples:
        >>> record = ReleaseRecord(
        ...     release_id="20261019120000000001",
        ...     version="2.1.0",
        ...     target="prod",
        ...     platform=Platform.SSH_HOST,
        ...     status=ReleaseStatus.PREPARING,
        ...     created_at=datetime.now(timezone.utc),
        ... )
        >>> record.model_dump(by_alias=True, mode="json")["releaseId"]
        '20261019120000000001'
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    release_id: str = Field(..., alias="releaseId", min_length=1)
    version: str = Field(..., min_length=1, description="Semantic version string")
    target: str = Field(..., min_length=1)
    platform: Platform
    status: ReleaseStatus
    created_at: datetime = Field(..., alias="createdAtIso")
    activated_at: datetime | None = Field(default=None, alias="activatedAtIso")
    previous_release_id: str | None = Field(default=None, alias="previousReleaseId")

    def to_store(self) -> dict[str, object]:
        """Serialise with wire-format aliases, omitting unset optionals."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class LockOperation(str, Enum):
    """Operation a deploy lock guards."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class LockRecord(BaseModel):
    """Persisted deploy lock for one target.

    A record is valid only while ``now - acquired_at_epoch_ms < ttl_ms``.
    Expired records are treated as absent and reclaimed on the next acquire.

    Examples:
        >>> record = LockRecord(
        ...     lock_id="b7c1",
        ...     target="prod",
        ...     holder_process_id=4242,
        ...     holder="alice@build-01",
        ...     operation=LockOperation.DEPLOY,
        ...     acquired_at_epoch_ms=1_700_000_000_000,
        ...     ttl_ms=3_600_000,
        ... )
        >>> record.is_expired(1_700_000_000_000 + 3_600_000)
        True
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    lock_id: str = Field(..., alias="lockId", min_length=1)
    target: str = Field(..., min_length=1)
    holder_process_id: int = Field(..., alias="holderProcessId")
    holder: str = Field(default="unknown", description="user@host of the holder")
    operation: LockOperation
    acquired_at_epoch_ms: int = Field(..., alias="acquiredAtEpochMs", ge=0)
    ttl_ms: int = Field(..., alias="ttlMs", gt=0)

    @property
    def expires_at_epoch_ms(self) -> int:
        """Epoch milliseconds at which the lock stops being valid."""
        return self.acquired_at_epoch_ms + self.ttl_ms

    def is_expired(self, now_epoch_ms: int) -> bool:
        """Return True once the TTL has fully elapsed."""
        return now_epoch_ms - self.acquired_at_epoch_ms >= self.ttl_ms

    def to_store(self) -> dict[str, object]:
        """Serialise with wire-format aliases."""
        return self.model_dump(by_alias=True, mode="json")


DEFAULT_TRANSFER_EXCLUDES: tuple[str, ...] = ("node_modules", ".git", "*.log")


class Artifact(BaseModel):
    """Local payload to materialise as a release.

    Attributes:
        path: Local directory holding the built payload.
        exclude: Glob patterns skipped during transfer.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    path: Path
    exclude: tuple[str, ...] = Field(default=DEFAULT_TRANSFER_EXCLUDES)


__all__ = [
    "DEFAULT_TRANSFER_EXCLUDES",
    "Artifact",
    "LockOperation",
    "LockRecord",
    "Platform",
    "ReleaseRecord",
    "ReleaseStatus",
]
