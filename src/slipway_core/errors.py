"""Exception hierarchy for slipway-core.

All exceptions inherit from SlipwayError. Each carries a tagged ``kind``
(ErrorKind) so terminal result objects can report what went wrong without
callers inspecting messages, and a ``retryable`` flag that the default
transient-error classifier in ``slipway_core.resilience`` honours.

Exception Hierarchy:
    SlipwayError (base)
    ├── LockContentionError        # Another valid lock holds the target
    ├── ReleaseFailureError        # Transfer, hook or promotion step failed
    ├── HealthGateFailureError     # Rollout analysis gate rejected the candidate
    ├── OperationTimeoutError      # Wrapped operation exceeded its budget
    ├── ReleaseNotFoundError       # Rollback target missing or pruned
    ├── PartialBatchFailureError   # One or more orchestration jobs failed
    ├── InvalidPlanError           # Rollout plan or stage layout rejected
    ├── RemoteCommandError         # Remote command exited non-zero
    ├── StateStoreError            # Persisted state could not be read/written
    │   └── LedgerOutOfSyncError   # `current` moved but the ledger did not follow
    ├── ConfigurationError         # Manifest could not be loaded or validated
    └── InvalidTransitionError     # Rollout state machine misuse

Exit Codes:
    0 - Success
    1 - General error (SlipwayError)
    2 - Lock contention (LockContentionError)
    3 - Release failure (ReleaseFailureError)
    4 - Health gate failure (HealthGateFailureError)
    5 - Timeout (OperationTimeoutError)
    6 - Release not found (ReleaseNotFoundError)
    7 - Partial batch failure (PartialBatchFailureError)
    8 - Invalid plan (InvalidPlanError)
    9 - Remote command failure (RemoteCommandError)
    10 - State store failure (StateStoreError)
    11 - Configuration error (ConfigurationError)
    12 - Invalid state transition (InvalidTransitionError)

Example:
    >>> from slipway_core.errors import ReleaseNotFoundError
    >>> raise ReleaseNotFoundError("prod", reason="no previous release")
    Traceback (most recent call last):
        ...
    ReleaseNotFoundError: No release found for prod: no previous release
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from slipway_core.schemas.release import LockRecord


class ErrorKind(str, Enum):
    """Tagged error kinds carried by result objects."""

    LOCK_CONTENTION = "lock_contention"
    RELEASE_FAILURE = "release_failure"
    HEALTH_GATE_FAILURE = "health_gate_failure"
    TIMEOUT = "timeout"
    RELEASE_NOT_FOUND = "release_not_found"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    INVALID_PLAN = "invalid_plan"
    REMOTE_COMMAND = "remote_command"
    STATE_STORE = "state_store"
    CONFIGURATION = "configuration"
    INVALID_TRANSITION = "invalid_transition"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class SlipwayError(Exception):
    """Base exception for all slipway-core errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
        kind: Tagged error kind for result objects.
        retryable: Whether the Resilience Supervisor may retry it.

    Example:
        >>> try:
        ...     await pipeline.deploy("prod", request)
        ... except SlipwayError as e:
        ...     sys.exit(e.exit_code)
    """

    exit_code: int = 1
    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False


class LockContentionError(SlipwayError):
    """Raised when another valid lock holds the target.

    Lock contention is never retried automatically; the caller decides
    whether to back off and try again.

    Attributes:
        target: The target that is locked.
        holder: The LockRecord of the current holder, if it could be read.
        exit_code: CLI exit code (2).

    Example:
        >>> raise LockContentionError("prod", holder=record)
        Traceback (most recent call last):
            ...
        LockContentionError: Target prod is locked by alice@build-01 (pid 4242, deploy)

    Remediation:
        Wait for the running operation to finish. If the holder crashed,
        the lock expires after its TTL, or an operator can force-release it.
    """

    exit_code: int = 2
    kind: ErrorKind = ErrorKind.LOCK_CONTENTION

    def __init__(self, target: str, holder: LockRecord | None = None) -> None:
        self.target = target
        self.holder = holder
        if holder is not None:
            message = (
                f"Target {target} is locked by {holder.holder} "
                f"(pid {holder.holder_process_id}, {holder.operation.value})"
            )
        else:
            message = f"Target {target} is locked"
        super().__init__(message)


class ReleaseFailureError(SlipwayError):
    """Raised when preparing or promoting a release fails.

    Attributes:
        release_id: The release being prepared or promoted.
        phase: Step that failed (transfer, link, hooks, promote, ...).
        reason: Description of the failure.
        exit_code: CLI exit code (3).
    """

    exit_code: int = 3
    kind: ErrorKind = ErrorKind.RELEASE_FAILURE

    def __init__(
        self,
        release_id: str,
        phase: str,
        reason: str,
        *,
        retryable: bool = False,
    ) -> None:
        self.release_id = release_id
        self.phase = phase
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Release {release_id} failed during {phase}: {reason}")


class HealthGateFailureError(SlipwayError):
    """Raised when a rollout step's analysis gate fails.

    Attributes:
        target: Target under rollout.
        step_index: Zero-based index of the failing step.
        reasons: Threshold violations reported by the gate.
        exit_code: CLI exit code (4).
    """

    exit_code: int = 4
    kind: ErrorKind = ErrorKind.HEALTH_GATE_FAILURE

    def __init__(self, target: str, step_index: int, reasons: list[str]) -> None:
        self.target = target
        self.step_index = step_index
        self.reasons = reasons
        detail = "; ".join(reasons) if reasons else "gate failed"
        super().__init__(f"Analysis gate failed for {target} at step {step_index}: {detail}")


class OperationTimeoutError(SlipwayError, TimeoutError):
    """Raised when a wrapped operation exceeds its time budget.

    Subclasses the builtin TimeoutError so generic handlers still catch it.

    Attributes:
        operation: Name of the operation that timed out.
        timeout_s: The configured budget in seconds.
        elapsed_ms: Time spent before the operation was abandoned.
        exit_code: CLI exit code (5).
    """

    exit_code: int = 5
    kind: ErrorKind = ErrorKind.TIMEOUT
    retryable: bool = True

    def __init__(self, operation: str, timeout_s: float, elapsed_ms: int) -> None:
        self.operation = operation
        self.timeout_s = timeout_s
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Operation {operation} timed out after {elapsed_ms}ms (budget {timeout_s}s)"
        )


class ReleaseNotFoundError(SlipwayError):
    """Raised when a release to promote or roll back to does not exist.

    Attributes:
        target: Target being operated on.
        release_id: The release that was sought, if one was named.
        reason: Why it could not be used.
        exit_code: CLI exit code (6).
    """

    exit_code: int = 6
    kind: ErrorKind = ErrorKind.RELEASE_NOT_FOUND

    def __init__(
        self,
        target: str,
        release_id: str | None = None,
        *,
        reason: str = "not found",
    ) -> None:
        self.target = target
        self.release_id = release_id
        self.reason = reason
        if release_id is not None:
            message = f"Release {release_id} not found for {target}: {reason}"
        else:
            message = f"No release found for {target}: {reason}"
        super().__init__(message)


class PartialBatchFailureError(SlipwayError):
    """Raised on request when an orchestration run had failed jobs.

    The orchestrator itself never raises this mid-run; see
    ``OrchestrationResult.raise_for_failures``.

    Attributes:
        failed_targets: Targets whose jobs failed.
        skipped_targets: Targets never attempted.
        exit_code: CLI exit code (7).
    """

    exit_code: int = 7
    kind: ErrorKind = ErrorKind.PARTIAL_BATCH_FAILURE

    def __init__(self, failed_targets: list[str], skipped_targets: list[str]) -> None:
        self.failed_targets = failed_targets
        self.skipped_targets = skipped_targets
        super().__init__(
            f"{len(failed_targets)} job(s) failed ({', '.join(failed_targets)}), "
            f"{len(skipped_targets)} skipped"
        )


class InvalidPlanError(SlipwayError):
    """Raised when a rollout plan or orchestration layout is rejected."""

    exit_code: int = 8
    kind: ErrorKind = ErrorKind.INVALID_PLAN

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid plan: {reason}")


class RemoteCommandError(SlipwayError):
    """Raised when a command run through a RemoteExecutor exits non-zero.

    Attributes:
        command: The command line that was run.
        exit_code_remote: The process exit code.
        stderr: Captured standard error (truncated).
        exit_code: CLI exit code (9).
    """

    exit_code: int = 9
    kind: ErrorKind = ErrorKind.REMOTE_COMMAND
    retryable: bool = True

    def __init__(self, command: str, exit_code_remote: int, stderr: str) -> None:
        self.command = command
        self.exit_code_remote = exit_code_remote
        self.stderr = stderr[:500]
        super().__init__(
            f"Command exited with {exit_code_remote}: {command}"
            + (f" ({self.stderr.strip()})" if self.stderr.strip() else "")
        )


class StateStoreError(SlipwayError):
    """Raised when persisted lock or ledger state cannot be accessed."""

    exit_code: int = 10
    kind: ErrorKind = ErrorKind.STATE_STORE

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"State store error for {key}: {reason}")


class LedgerOutOfSyncError(StateStoreError):
    """Raised when a repoint landed but the ledger could not record it.

    ``current`` already points at ``release_id``. The release must not be
    discarded; run ``AtomicReleaseManager.reconcile()`` once the store is
    reachable again.

    Attributes:
        target: Target whose ``current`` moved.
        release_id: The release ``current`` now points at.
        exit_code: CLI exit code (10).
    """

    def __init__(self, target: str, release_id: str, reason: str) -> None:
        self.key = f"ledger/{target}"
        self.reason = reason
        self.target = target
        self.release_id = release_id
        SlipwayError.__init__(
            self,
            f"current on {target} points at {release_id} but the ledger was not updated: "
            f"{reason}; run reconcile()",
        )


class ConfigurationError(SlipwayError):
    """Raised when a manifest cannot be loaded or fails validation."""

    exit_code: int = 11
    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


class InvalidTransitionError(SlipwayError):
    """Raised when a rollout execution is driven through an illegal transition."""

    exit_code: int = 12
    kind: ErrorKind = ErrorKind.INVALID_TRANSITION

    def __init__(self, execution_id: str, current: str, requested: str) -> None:
        self.execution_id = execution_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Rollout {execution_id} cannot {requested} while {current}"
        )


_ERROR_TYPES: tuple[type[SlipwayError], ...] = (
    LockContentionError,
    ReleaseFailureError,
    HealthGateFailureError,
    OperationTimeoutError,
    ReleaseNotFoundError,
    PartialBatchFailureError,
    InvalidPlanError,
    RemoteCommandError,
    StateStoreError,
    ConfigurationError,
    InvalidTransitionError,
)


def exit_code_for(kind: ErrorKind | None) -> int:
    """Return the CLI exit code for a tagged error kind."""
    for error_type in _ERROR_TYPES:
        if error_type.kind == kind:
            return error_type.exit_code
    return SlipwayError.exit_code


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Return the tagged kind for any exception.

    Non-slipway exceptions map to INTERNAL, except builtin timeouts.
    """
    if isinstance(exc, SlipwayError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.INTERNAL


def error_details(exc: BaseException) -> dict[str, Any]:
    """Collect the structured context attributes an error carries."""
    details: dict[str, Any] = {"error_type": type(exc).__name__}
    for attr in ("target", "release_id", "phase", "operation", "step_index"):
        value = getattr(exc, attr, None)
        if value is not None:
            details[attr] = value
    return details


__all__ = [
    "ConfigurationError",
    "ErrorKind",
    "HealthGateFailureError",
    "InvalidPlanError",
    "InvalidTransitionError",
    "LedgerOutOfSyncError",
    "LockContentionError",
    "OperationTimeoutError",
    "PartialBatchFailureError",
    "ReleaseFailureError",
    "ReleaseNotFoundError",
    "RemoteCommandError",
    "SlipwayError",
    "StateStoreError",
    "error_details",
    "error_kind_of",
    "exit_code_for",
]
