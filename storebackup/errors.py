"""
Error types raised by backup and restore.

- BackupError: base class, carries a code and details for callers
- InvalidSource: backup reference missing, unreadable or out of range
- InvalidDestination: live store path cannot be resolved
- DestinationError / DestinationNotRemoved: destination file problems
- CopyStoreError: the engine failed to migrate or replace a store
- Busy: another backup/restore holds the store
- BackupCancelled: backup cancelled before migration started
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for backup/restore failures.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "BACKUP_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidSource(BackupError):
    code = "INVALID_SOURCE"


class InvalidDestination(BackupError):
    code = "INVALID_DESTINATION"


class DestinationError(BackupError):
    code = "DESTINATION_ERROR"


class DestinationNotRemoved(DestinationError):
    code = "DESTINATION_NOT_REMOVED"


class CopyStoreError(BackupError):
    """The engine failed while copying store content.

    After a failed restore the live store may be partially replaced; the
    application has to be restarted.
    """

    code = "COPY_STORE_ERROR"


class Busy(BackupError):
    code = "BUSY"


class BackupCancelled(BackupError):
    code = "CANCELLED"
