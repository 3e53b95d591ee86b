import sqlite3
import threading

import pytest

from backup.errors import (
    IntegrityError,
    NotFoundError,
    ProviderError,
    RestoreCancelledError,
    RestoreInProgressError,
    StorageError,
)
from backup.restore import RestoreEngine, describe_failure
from backup.snapshot import SnapshotBuilder
from backup.types import RestoreState, TriggerType
from catalog.entities import Product, Supplier
from core.paths import get_backups_db_path

from conftest import StubLogger


def _add_product(provider, index: int) -> None:
    provider.insert(Product(id=index, product_id=f"P-{index:04d}", name=f"Item {index}", node_id="N-food"))


class BlockingProvider:
    """Delegates to a real provider but parks inside replace_all until released."""

    def __init__(self, inner) -> None:
        self._inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def read_consistent(self):
        return self._inner.read_consistent()

    def replace_all(self, dataset):
        self.entered.set()
        self.release.wait(timeout=10)
        self._inner.replace_all(dataset)


class BrokenReplaceProvider:
    def __init__(self, inner) -> None:
        self._inner = inner

    def read_consistent(self):
        return self._inner.read_consistent()

    def replace_all(self, dataset):
        raise sqlite3.OperationalError("disk I/O error")


class CancellingProvider:
    """Sets the cancel event while the safety snapshot reads the dataset."""

    def __init__(self, inner, cancel_event: threading.Event) -> None:
        self._inner = inner
        self._cancel_event = cancel_event

    def read_consistent(self):
        self._cancel_event.set()
        return self._inner.read_consistent()

    def replace_all(self, dataset):  # pragma: no cover - must not be reached
        raise AssertionError("replace_all must not run after cancellation")


def _engine_for(provider, store, codec, logger) -> RestoreEngine:
    builder = SnapshotBuilder(provider, store, codec=codec, logger=logger)
    return RestoreEngine(provider, store, builder, codec=codec, logger=logger)


def test_restore_replaces_dataset_after_safety_snapshot(engine, builder, provider, store) -> None:
    original = builder.build(TriggerType.MANUAL, "baseline")
    _add_product(provider, 10)
    _add_product(provider, 11)
    live_before = provider.read_consistent().counts()

    outcome = engine.restore(original.id)

    assert outcome.success is True
    assert outcome.state is RestoreState.COMMITTED
    assert outcome.version_number == original.version_number
    assert provider.read_consistent().counts() == original.entity_counts

    safety = store.get_summary(outcome.safety_backup_id)
    assert safety.trigger_type is TriggerType.SYSTEM
    assert safety.description == f"Pre-restore safety backup (restoring from v{original.version_number})"
    assert safety.entity_counts == live_before
    assert "completed successfully" in outcome.message


def test_restore_brings_back_identical_records(engine, builder, provider) -> None:
    original_dataset = provider.read_consistent()
    backup = builder.build(TriggerType.MANUAL)
    provider.replace_all(type(original_dataset)())

    engine.restore(backup.id)

    assert provider.read_consistent() == original_dataset


def test_preview_reports_counts_without_touching_live_data(engine, builder, provider) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 20)

    preview = engine.preview(backup.id)

    assert preview == {
        "products": 3,
        "suppliers": 1,
        "treeNodes": 2,
        "customFieldDefinitions": 1,
        "appSettings": 2,
    }
    assert list(preview) == ["products", "suppliers", "treeNodes", "customFieldDefinitions", "appSettings"]
    assert provider.read_consistent().counts()["products"] == 4


def test_restore_missing_backup_takes_no_safety_snapshot(engine, store) -> None:
    with pytest.raises(NotFoundError):
        engine.restore(999)

    assert store.count() == 0
    assert not engine.in_progress


def test_corrupted_payload_leaves_live_data_untouched(engine, builder, provider, store, working_dir) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 30)
    live_before = provider.read_consistent()

    conn = sqlite3.connect(get_backups_db_path(working_dir))
    try:
        payload = bytearray(conn.execute("SELECT payload FROM backups WHERE id = ?", (backup.id,)).fetchone()[0])
        payload[len(payload) // 2] ^= 0xFF
        conn.execute("UPDATE backups SET payload = ? WHERE id = ?", (bytes(payload), backup.id))
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(IntegrityError) as excinfo:
        engine.restore(backup.id)

    assert excinfo.value.operation == "restore"
    assert excinfo.value.safety_backup_id is not None
    assert provider.read_consistent() == live_before
    assert store.get_summary(excinfo.value.safety_backup_id).trigger_type is TriggerType.SYSTEM
    assert "remains available" in describe_failure(excinfo.value)


def test_provider_failure_during_replace_keeps_prior_state(builder, provider, store, codec, logger) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 40)
    live_before = provider.read_consistent()
    engine = _engine_for(BrokenReplaceProvider(provider), store, codec, logger)

    with pytest.raises(ProviderError) as excinfo:
        engine.restore(backup.id)

    assert "disk I/O error" in excinfo.value.message
    assert excinfo.value.safety_backup_id is not None
    assert provider.read_consistent() == live_before


def test_failed_replace_inside_transaction_rolls_back(builder, provider, store, codec, logger) -> None:
    backup = builder.build(TriggerType.MANUAL)
    live_before = provider.read_consistent()

    class DuplicateInjectingProvider(BrokenReplaceProvider):
        def replace_all(self, dataset):
            broken = type(dataset)(
                products=dataset.products,
                suppliers=dataset.suppliers + (Supplier(id=99, supplier_id="S-001", name="Duplicate"),),
                tree_nodes=dataset.tree_nodes,
                custom_field_definitions=dataset.custom_field_definitions,
                app_settings=dataset.app_settings,
            )
            self._inner.replace_all(broken)

    engine = _engine_for(DuplicateInjectingProvider(provider), store, codec, logger)

    with pytest.raises(ProviderError):
        engine.restore(backup.id)

    assert provider.read_consistent() == live_before


def test_second_concurrent_restore_is_rejected(builder, provider, store, codec, logger) -> None:
    backup = builder.build(TriggerType.MANUAL)
    blocking = BlockingProvider(provider)
    engine = _engine_for(blocking, store, codec, logger)
    results = {}

    def run_first() -> None:
        results["first"] = engine.restore(backup.id)

    worker = threading.Thread(target=run_first)
    worker.start()
    try:
        assert blocking.entered.wait(timeout=10)
        assert engine.in_progress

        with pytest.raises(RestoreInProgressError):
            engine.restore(backup.id)
    finally:
        blocking.release.set()
        worker.join(timeout=10)

    assert results["first"].success is True
    assert not engine.in_progress
    # Only the first restore took a safety snapshot.
    assert [summary.trigger_type for summary in store.list()] == [TriggerType.MANUAL, TriggerType.SYSTEM]


def test_cancel_before_start_changes_nothing(engine, builder, provider, store) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 50)
    live_before = provider.read_consistent()
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RestoreCancelledError):
        engine.restore(backup.id, cancel_event=cancel)

    assert store.count() == 1
    assert provider.read_consistent() == live_before


def test_cancel_after_safety_snapshot_reports_safety_backup(builder, provider, store, codec, logger) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 60)
    live_before = provider.read_consistent()
    cancel = threading.Event()
    engine = _engine_for(CancellingProvider(provider, cancel), store, codec, logger)

    with pytest.raises(RestoreCancelledError) as excinfo:
        engine.restore(backup.id, cancel_event=cancel)

    assert excinfo.value.safety_backup_id is not None
    assert provider.read_consistent() == live_before


def test_restore_survives_retention_evicting_its_target(engine, builder, provider, store) -> None:
    store.update_settings(max_backups=1)
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 70)

    outcome = engine.restore(backup.id)

    assert outcome.success is True
    assert provider.read_consistent().counts()["products"] == 3
    # The safety snapshot is the only backup left.
    assert [summary.id for summary in store.list()] == [outcome.safety_backup_id]


def test_restore_logs_state_transitions(builder, provider, store, codec) -> None:
    logger = StubLogger()
    engine = _engine_for(provider, store, codec, logger)
    backup = SnapshotBuilder(provider, store, codec=codec, logger=logger).build(TriggerType.MANUAL)

    engine.restore(backup.id)

    states = [entry[2]["state"] for entry in logger.events if entry[:2] == ("info", "restore_state")]
    assert states == ["requested", "safety_snapshotted", "validated"]
    assert "backup_restored" in logger.names()


def test_safety_snapshot_store_failure_is_typed_and_logged(builder, provider, store, codec, monkeypatch) -> None:
    backup = builder.build(TriggerType.MANUAL)
    _add_product(provider, 80)
    live_before = provider.read_consistent()
    logger = StubLogger()
    engine = _engine_for(provider, store, codec, logger)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "create", locked)

    with pytest.raises(StorageError) as excinfo:
        engine.restore(backup.id)

    assert excinfo.value.safety_backup_id is None
    assert "restore_failed" in logger.names()
    assert "Restore failed" in describe_failure(excinfo.value)
    assert not engine.in_progress
    assert provider.read_consistent() == live_before
