"""
Exceptions raised by gimark operations.

Every error carries the operation that was attempted and, when there is one,
the underlying cause, so a caller can tell a transient network problem from a
divergent history or a corrupt repository.
"""

from __future__ import annotations


class GimarkError(Exception):
    """Base class for all gimark errors."""

    def __init__(self, message: str, operation: str | None = None, cause: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        message = super().__str__()
        if self.cause:
            return f'{message}: {self.cause}'
        return message


class StorageError(GimarkError):
    """The local repository is missing, corrupt or unreadable."""


class NotFoundError(GimarkError):
    """A path or reference does not exist."""


class TransportError(GimarkError):
    """Talking to the remote failed (network, HTTP status or authentication)."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        cause: str | None = None,
        status: int | None = None,
        reason: str | None = None,
    ):
        super().__init__(message, operation=operation, cause=cause)
        self.status = status
        self.reason = reason

    def __str__(self) -> str:
        message = super().__str__()
        if self.status is None:
            return message
        status = f'HTTP {self.status} {self.reason}' if self.reason else f'HTTP {self.status}'
        return f'{message} ({status})'


class NonFastForwardError(GimarkError):
    """The remote branch has diverged from the local one; pull first."""


class MergeBaseNotFoundError(GimarkError):
    """The two histories share no common ancestor."""


class ConflictedIndexError(GimarkError):
    """The index still holds unresolved conflicts."""


class EmptyRepositoryError(GimarkError):
    """The operation needs a commit and the repository has none."""


class NothingToCommitError(GimarkError):
    """The index matches the current head, so a commit would change nothing."""


class DirtyIndexError(GimarkError):
    """The index holds staged changes that are not committed yet."""


class ResolutionError(GimarkError):
    """A conflict cannot be resolved the way it was asked to be."""
