from __future__ import annotations


class LeasingError(RuntimeError):
    """Raised when checklist items cannot be claimed or released."""


class LockTimeoutError(LeasingError):
    """Raised when the claim lock is not acquired in time."""


class ClaimConflictError(LeasingError):
    """Raised when a selected item no longer carries the marker it was selected with.

    Claims happen under a single lock, so this indicates a bug or an external writer
    bypassing the lock. It is never swallowed.
    """
