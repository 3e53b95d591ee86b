"""Error hierarchy for backup operations."""
from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures.

    ``operation`` names the engine operation that failed (create, restore,
    preview, export, import, settings) and ``safety_backup_id`` is set when a
    pre-restore safety backup exists that can be used for recovery.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        safety_backup_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.safety_backup_id = safety_backup_id

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class ValidationError(BackupError):
    """Raised when settings input violates a constraint."""


class NotFoundError(BackupError):
    """Raised when a referenced backup does not exist."""


class IntegrityError(BackupError):
    """Raised when a payload or container fails checksum or format checks."""


class RestoreInProgressError(BackupError):
    """Raised when a restore is requested while another one is running."""


class RestoreCancelledError(BackupError):
    """Raised when a caller cancels a restore before the replace phase."""


class ProviderError(BackupError):
    """Raised when the dataset provider fails a read or a replace."""


class StorageError(BackupError):
    """Raised when the backup store cannot persist a new backup."""


__all__ = [
    "BackupError",
    "IntegrityError",
    "NotFoundError",
    "ProviderError",
    "RestoreCancelledError",
    "RestoreInProgressError",
    "StorageError",
    "ValidationError",
]
