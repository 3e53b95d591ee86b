"""Pydantic schemas for the CatalogVault backup API."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health response summarising server readiness and scheduler status."""

    ok: bool = Field(True, description="Indicates the API server is reachable.")
    version: str = Field(..., description="Application version string.")
    time_utc: str = Field(..., description="Current UTC timestamp in ISO8601 format.")
    backups: int = Field(..., ge=0, description="Number of backups currently stored.")
    scheduler_running: bool = Field(..., description="True when the periodic backup timer is active.")
    next_auto_backup_utc: Optional[str] = Field(
        None, description="Estimated UTC time of the next scheduled backup when the timer runs."
    )
    restore_in_progress: bool = Field(False, description="True while a restore holds the restore lock.")


class BackupSummaryResponse(BaseModel):
    """Metadata of one stored backup; the payload is never included."""

    id: int = Field(..., description="Store identifier of the backup.")
    versionNumber: int = Field(..., ge=1, description="Monotonic version number, never reused.")
    createdAt: str = Field(..., description="Creation timestamp (UTC, ISO8601).")
    triggerType: str = Field(..., description="AUTO, MANUAL or SYSTEM.")
    description: Optional[str] = Field(None, description="Free-text reason for the backup.")
    originalSize: int = Field(..., ge=0, description="Uncompressed canonical size in bytes.")
    compressedSize: int = Field(..., ge=0, description="Stored payload size in bytes.")
    compressionRatio: int = Field(..., description="Percentage saved by compression, rounded half up.")
    checksum: str = Field(..., description="SHA-256 (hex) of the uncompressed dataset stream.")
    entityCounts: Dict[str, int] = Field(default_factory=dict, description="Record count per entity kind.")


class CreateBackupRequest(BaseModel):
    description: Optional[str] = Field(None, description="Optional description for the manual backup.")


class AutoTriggerRequest(BaseModel):
    reason: str = Field(..., description="Why the caller requests an immediate backup.")


class EntityCountsResponse(BaseModel):
    """Counts recorded when the backup was taken."""

    products: int = Field(0, ge=0)
    suppliers: int = Field(0, ge=0)
    treeNodes: int = Field(0, ge=0)
    customFieldDefinitions: int = Field(0, ge=0)
    appSettings: int = Field(0, ge=0)


class RestoreResponse(BaseModel):
    success: bool = Field(..., description="True when the dataset was replaced.")
    message: str = Field(..., description="Human readable outcome.")
    versionNumber: Optional[int] = Field(None, description="Version number of the restored backup.")
    safetyBackupId: Optional[int] = Field(
        None, description="Identifier of the pre-restore safety backup when one was taken."
    )


class ImportResponse(BaseModel):
    success: bool = Field(..., description="True when the container was accepted.")
    backupId: Optional[int] = Field(None, description="Identifier assigned to the imported backup.")
    versionNumber: Optional[int] = Field(None, description="Version number assigned locally.")
    message: str = Field(..., description="Human readable outcome.")


class BackupSettingsResponse(BaseModel):
    maxBackups: int = Field(..., ge=1, description="Retention bound on stored backups.")
    autoBackupIntervalHours: int = Field(..., ge=1, description="Hours between scheduled backups.")


class BackupSettingsUpdate(BaseModel):
    """Partial settings update; omitted fields keep their current value."""

    maxBackups: Optional[int] = Field(None, description="New retention bound (>= 1).")
    autoBackupIntervalHours: Optional[int] = Field(None, description="New scheduler interval in hours (>= 1).")


__all__ = [
    "AutoTriggerRequest",
    "BackupSettingsResponse",
    "BackupSettingsUpdate",
    "BackupSummaryResponse",
    "CreateBackupRequest",
    "EntityCountsResponse",
    "HealthResponse",
    "ImportResponse",
    "RestoreResponse",
]
