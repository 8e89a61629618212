"""Error taxonomy for the sync engine.

Every error raised by the remote adapter, the retry policy and the sync
orchestrator derives from ``SyncError``.  Two class-level flags drive the
propagation policy:

- ``retryable`` -- the ``RetryPolicy`` only loops on errors that set it.
- ``session_fatal`` -- the orchestrator aborts the whole session instead of
  folding the error into the per-entity failures of the summary.

``operation`` and ``attempts`` are filled in by ``RetryPolicy`` so a
surfaced failure always names what was being attempted and how often.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync errors."""

    retryable: bool = False
    session_fatal: bool = False
    error_type: str = "sync_error"

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        attempts: int | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.attempts = attempts
        self.cause = cause

    def with_context(
        self, operation: str, attempts: int
    ) -> "SyncError":
        """Attach operation name and attempt count; returns ``self``."""
        self.operation = self.operation or operation
        self.attempts = attempts
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.attempts:
            parts.append(f"attempts={self.attempts}")
        if self.cause is not None:
            parts.append(f"cause={self.cause!r}")
        if len(parts) == 1:
            return self.message
        return f"{self.message} ({', '.join(parts[1:])})"


class AuthenticationError(SyncError):
    """The remote store rejected our credentials."""

    session_fatal = True
    error_type = "authentication"


class TransientNetworkError(SyncError):
    """A remote call failed in a way that may succeed on retry."""

    retryable = True
    error_type = "transient_network"


class QuotaExceededError(SyncError):
    """The remote store is out of space for this account."""

    session_fatal = True
    error_type = "quota_exceeded"


class MalformedRequestError(SyncError):
    """The request or the payload it returned is invalid."""

    error_type = "malformed_request"


class ChecksumMismatchError(SyncError):
    """Downloaded content does not match the checksum of its changelog entry."""

    error_type = "checksum_mismatch"


class EntityNotFoundError(SyncError):
    """The entity referenced by a changelog entry does not exist."""

    error_type = "not_found"


class ConflictUnresolvedError(SyncError):
    """A conflict still needs a human decision."""

    error_type = "conflict_unresolved"


class SyncInProgressError(SyncError):
    """Another session for the same group is already running."""

    error_type = "sync_in_progress"


class SyncCancelledError(SyncError):
    """The session was cancelled between two steps."""

    error_type = "cancelled"
