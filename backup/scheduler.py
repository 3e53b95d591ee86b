"""Background timer taking AUTO backups on the configured interval."""
from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from .errors import BackupError, ValidationError
from .logs import BackupLogger
from .snapshot import SnapshotBuilder
from .store import BackupStore
from .types import Backup, BackupSettings, TriggerType

if TYPE_CHECKING:  # pragma: no cover - typing guard
    from .restore import RestoreEngine

SCHEDULED_DESCRIPTION = "Scheduled periodic backup"


class BackupScheduler:
    """Owned timer thread; one instance per running service.

    The countdown restarts from "now" whenever the interval changes, so time
    already elapsed under the old interval is not credited to the new one.
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        store: BackupStore,
        *,
        logger: BackupLogger,
        restore_engine: Optional["RestoreEngine"] = None,
        hour_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._builder = builder
        self._store = store
        self._logger = logger
        self._restore_engine = restore_engine
        self._hour_seconds = float(hour_seconds)
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._lock = threading.Lock()
        self._interval_hours = store.get_settings().auto_backup_interval_hours
        self._next_fire: Optional[float] = None
        self._store.add_settings_listener(self.on_settings_changed)

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    @property
    def interval_seconds(self) -> float:
        with self._lock:
            return self._interval_hours * self._hour_seconds

    @property
    def next_fire_utc(self) -> Optional[str]:
        with self._lock:
            next_fire = self._next_fire
        if next_fire is None:
            return None
        remaining = max(0.0, next_fire - self._clock())
        return (datetime.now(timezone.utc) + timedelta(seconds=remaining)).isoformat()

    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._next_fire = self._clock() + self._interval_hours * self._hour_seconds
            self._thread = threading.Thread(target=self._run_loop, name="backup-scheduler", daemon=True)
            self._thread.start()
        self._logger.event(
            event="scheduler_started",
            phase="scheduler",
            ok=True,
            interval_hours=self._interval_hours,
        )

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        with self._lock:
            thread = self._thread
        if thread:
            thread.join(timeout=5)
        with self._lock:
            self._thread = None
            self._next_fire = None
        self._logger.event(event="scheduler_stopped", phase="scheduler", ok=True)

    def close(self) -> None:
        self.stop()
        self._store.remove_settings_listener(self.on_settings_changed)

    def on_settings_changed(self, settings: BackupSettings) -> None:
        with self._lock:
            if settings.auto_backup_interval_hours == self._interval_hours:
                return
            self._interval_hours = settings.auto_backup_interval_hours
            if self._next_fire is not None:
                self._next_fire = self._clock() + self._interval_hours * self._hour_seconds
        self._logger.event(
            event="scheduler_rescheduled",
            phase="scheduler",
            ok=True,
            interval_hours=settings.auto_backup_interval_hours,
        )
        self._wake_event.set()

    # ------------------------------------------------------------------
    def tick(self) -> Optional[Backup]:
        """Run one scheduled backup; failures are logged, never raised."""

        if self._restore_engine is not None and self._restore_engine.in_progress:
            self._logger.warning("auto_backup_skipped", reason="restore_in_progress")
            return None
        try:
            return self._builder.build(TriggerType.AUTO, SCHEDULED_DESCRIPTION)
        except BackupError as exc:
            self._logger.error("auto_backup_failed", error=str(exc), error_type=type(exc).__name__)
        except Exception as exc:  # pragma: no cover - keeps the loop alive
            self._logger.error("auto_backup_failed", error=str(exc), error_type=type(exc).__name__)
        return None

    def trigger_now(self, reason: str, trigger_type: TriggerType = TriggerType.AUTO) -> Backup:
        """Snapshot immediately, e.g. before a risky bulk mutation."""

        reason_text = (reason or "").strip()
        if not reason_text:
            raise ValidationError("reason is required", operation="create")
        self._logger.info("auto_backup_triggered", reason=reason_text, trigger=TriggerType(trigger_type).value)
        return self._builder.build(trigger_type, reason_text)

    # ------------------------------------------------------------------
    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            with self._lock:
                next_fire = self._next_fire
            if next_fire is None:
                break
            remaining = next_fire - self._clock()
            if remaining > 0:
                self._wake_event.wait(remaining)
                self._wake_event.clear()
                continue
            with self._lock:
                self._next_fire = self._clock() + self._interval_hours * self._hour_seconds
            self.tick()


__all__ = ["BackupScheduler", "SCHEDULED_DESCRIPTION"]
