"""Restore backups atomically after taking a safety snapshot."""
from __future__ import annotations

import threading
from typing import Dict, Optional

from catalog.provider import DatasetProvider

from .codec import Codec
from .errors import (
    BackupError,
    IntegrityError,
    ProviderError,
    RestoreCancelledError,
    RestoreInProgressError,
)
from .logs import BackupLogger
from .snapshot import SnapshotBuilder
from .store import BackupStore
from .types import Backup, RestoreOutcome, RestoreState, TriggerType


class RestoreEngine:
    """Drive one restore at a time through its gates.

    ``Requested -> SafetySnapshotted -> Validated -> Applied -> Committed``;
    any gate may fail, which leaves the live dataset untouched. The target
    record is loaded while still ``Requested`` so retention triggered by the
    safety snapshot cannot evict it.
    """

    def __init__(
        self,
        provider: DatasetProvider,
        store: BackupStore,
        builder: SnapshotBuilder,
        *,
        codec: Optional[Codec] = None,
        logger: BackupLogger,
    ) -> None:
        self._provider = provider
        self._store = store
        self._builder = builder
        self._codec = codec or Codec()
        self._logger = logger
        self._restore_lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._restore_lock.locked()

    # ------------------------------------------------------------------
    def preview(self, backup_id: int) -> Dict[str, int]:
        """Entity counts recorded at snapshot time; never touches live data."""

        return dict(self._store.get_summary(backup_id).entity_counts)

    # ------------------------------------------------------------------
    def restore(self, backup_id: int, *, cancel_event: Optional[threading.Event] = None) -> RestoreOutcome:
        if not self._restore_lock.acquire(blocking=False):
            self._logger.warning("restore_rejected", id=backup_id, reason="in_progress")
            raise RestoreInProgressError("Another restore is already in progress", operation="restore")
        try:
            return self._run(int(backup_id), cancel_event)
        finally:
            self._restore_lock.release()

    def _run(self, backup_id: int, cancel_event: Optional[threading.Event]) -> RestoreOutcome:
        state = RestoreState.REQUESTED
        safety: Optional[Backup] = None
        self._logger.event(event="restore_start", phase="restore", ok=True, id=backup_id, state=state.value)

        def gate(next_state: RestoreState) -> RestoreState:
            if cancel_event is not None and cancel_event.is_set():
                raise RestoreCancelledError(
                    f"Restore of backup {backup_id} cancelled before replacing data",
                    operation="restore",
                )
            self._logger.info("restore_state", id=backup_id, state=next_state.value)
            return next_state

        try:
            target = self._store.get(backup_id)
            gate(state)

            safety = self._builder.build(
                TriggerType.SYSTEM,
                f"Pre-restore safety backup (restoring from v{target.version_number})",
            )
            state = gate(RestoreState.SAFETY_SNAPSHOTTED)

            dataset = self._codec.decode(target.payload, target.checksum, operation="restore")
            if dataset.counts() != target.entity_counts:
                raise IntegrityError(
                    f"Backup {backup_id} entity counts do not match its payload",
                    operation="restore",
                )
            state = gate(RestoreState.VALIDATED)

            # Past this point the replace is not cancellable.
            try:
                self._provider.replace_all(dataset)
            except Exception as exc:
                raise ProviderError(f"Failed to replace dataset: {exc}", operation="restore") from exc
            state = RestoreState.APPLIED
        except BackupError as exc:
            exc.operation = exc.operation or "restore"
            if safety is not None:
                exc.safety_backup_id = safety.id
            self._logger.event(
                event="restore_failed",
                phase="restore",
                ok=False,
                id=backup_id,
                state=state.value,
                error=str(exc),
                error_type=type(exc).__name__,
                safety_backup_id=exc.safety_backup_id,
            )
            raise

        state = RestoreState.COMMITTED
        counts = dict(target.entity_counts)
        self._logger.event(
            event="backup_restored",
            phase="restore",
            ok=True,
            id=backup_id,
            version=target.version_number,
            safety_backup_id=safety.id,
            counts=counts,
        )
        return RestoreOutcome(
            success=True,
            message=(
                f"Restore of version {target.version_number} completed successfully; "
                f"safety backup v{safety.version_number} was created first"
            ),
            backup_id=backup_id,
            version_number=target.version_number,
            safety_backup_id=safety.id,
            entity_counts=counts,
            state=state,
        )


def describe_failure(exc: BackupError) -> str:
    """Human readable failure message that points at the safety backup."""

    message = f"Restore failed: {exc.message}"
    if exc.safety_backup_id is not None:
        message += f". Safety backup {exc.safety_backup_id} remains available for recovery"
    return message


__all__ = ["RestoreEngine", "describe_failure"]
