from __future__ import annotations

import asyncio
import sqlite3
import threading

import pytest
from fastapi.testclient import TestClient

from api.server import APIServerConfig, _is_loopback_host, cancel_on_disconnect, create_app
from backup import BackupService

from conftest import make_dataset

API_KEY = "test-key-123"
HEADERS = {"X-API-Key": API_KEY}


@pytest.fixture
def service(working_dir):
    settings = {"backup": {"max_import_mb": 0.01, "scheduler_enabled": False}}
    service = BackupService(working_dir=working_dir, settings=settings)
    service.provider.replace_all(make_dataset())
    yield service
    service.close()


@pytest.fixture
def client(service) -> TestClient:
    config = APIServerConfig(service=service, api_key=API_KEY, cors_origins=["http://localhost"], app_version="test")
    return TestClient(create_app(config))


def _create(client: TestClient, description: str | None = None) -> dict:
    body = {"description": description} if description is not None else {}
    response = client.post("/v1/backups/create", json=body, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def test_requests_without_api_key_are_rejected(client: TestClient) -> None:
    response = client.get("/v1/backups")

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid or missing API key."}


def test_health_reports_scheduler_and_counts(client: TestClient) -> None:
    _create(client)

    response = client.get("/v1/health", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"] == "test"
    assert body["backups"] == 1
    assert body["scheduler_running"] is False
    assert body["restore_in_progress"] is False


def test_create_and_list_backups(client: TestClient) -> None:
    first = _create(client, "before reprice")
    second = _create(client)

    assert first["triggerType"] == "MANUAL"
    assert first["description"] == "before reprice"
    assert second["description"] == "MANUAL backup"
    assert second["versionNumber"] == first["versionNumber"] + 1
    assert first["entityCounts"]["products"] == 3
    assert 0 <= first["compressionRatio"] <= 100

    listing = client.get("/v1/backups", headers=HEADERS).json()
    assert [row["versionNumber"] for row in listing] == [1, 2]
    assert "payload" not in listing[0]


def test_preview_returns_counts_per_kind(client: TestClient) -> None:
    created = _create(client)

    response = client.get(f"/v1/backups/{created['id']}/preview", headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {
        "products": 3,
        "suppliers": 1,
        "treeNodes": 2,
        "customFieldDefinitions": 1,
        "appSettings": 2,
    }


def test_preview_missing_backup_is_404(client: TestClient) -> None:
    response = client.get("/v1/backups/404/preview", headers=HEADERS)

    assert response.status_code == 404
    assert "not found" in response.json()["error"]


def test_restore_reports_success_and_safety_backup(client: TestClient, service: BackupService) -> None:
    created = _create(client)
    service.provider.replace_all(type(make_dataset())())

    response = client.post(f"/v1/backups/restore/{created['id']}", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert "completed successfully" in body["message"]
    assert body["safetyBackupId"] is not None
    assert service.provider.read_consistent().counts()["products"] == 3
    triggers = [row["triggerType"] for row in client.get("/v1/backups", headers=HEADERS).json()]
    assert triggers == ["MANUAL", "SYSTEM"]


def test_restore_missing_backup_returns_failure_body(client: TestClient) -> None:
    response = client.post("/v1/backups/restore/77", headers=HEADERS)

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["message"].startswith("Restore failed")


def test_export_and_import_round_trip(client: TestClient) -> None:
    created = _create(client)

    exported = client.get(f"/v1/backups/{created['id']}/export", headers=HEADERS)

    assert exported.status_code == 200
    assert exported.headers["content-type"] == "application/octet-stream"
    assert 'filename="backup_v1_' in exported.headers["content-disposition"]

    response = client.post(
        "/v1/backups/import",
        content=exported.content,
        headers={**HEADERS, "Content-Type": "application/octet-stream"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["versionNumber"] == 2
    preview = client.get(f"/v1/backups/{body['backupId']}/preview", headers=HEADERS).json()
    assert preview["products"] == 3


def test_import_rejects_corrupted_container(client: TestClient) -> None:
    created = _create(client)
    data = bytearray(client.get(f"/v1/backups/{created['id']}/export", headers=HEADERS).content)
    data[-3] ^= 0x01

    response = client.post("/v1/backups/import", content=bytes(data), headers=HEADERS)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["message"].startswith("Import failed")
    assert len(client.get("/v1/backups", headers=HEADERS).json()) == 1


def test_import_rejects_oversized_body(client: TestClient) -> None:
    response = client.post("/v1/backups/import", content=b"\0" * 20000, headers=HEADERS)

    assert response.status_code == 413


def test_delete_backup(client: TestClient) -> None:
    created = _create(client)

    first = client.delete(f"/v1/backups/{created['id']}", headers=HEADERS)
    second = client.delete(f"/v1/backups/{created['id']}", headers=HEADERS)

    assert first.status_code == 204
    assert second.status_code == 404


def test_auto_trigger_requires_reason(client: TestClient) -> None:
    missing = client.post("/v1/backups/auto-trigger", json={"reason": ""}, headers=HEADERS)
    created = client.post("/v1/backups/auto-trigger", json={"reason": "bulk price update"}, headers=HEADERS)

    assert missing.status_code == 400
    assert created.status_code == 201
    assert created.json()["triggerType"] == "AUTO"
    assert created.json()["description"] == "bulk price update"


def test_settings_round_trip_and_validation(client: TestClient) -> None:
    assert client.get("/v1/backups/settings", headers=HEADERS).json() == {
        "maxBackups": 50,
        "autoBackupIntervalHours": 6,
    }

    updated = client.put("/v1/backups/settings", json={"maxBackups": 2}, headers=HEADERS)
    rejected = client.put("/v1/backups/settings", json={"autoBackupIntervalHours": 0}, headers=HEADERS)

    assert updated.status_code == 200
    assert updated.json() == {"maxBackups": 2, "autoBackupIntervalHours": 6}
    assert rejected.status_code == 400
    assert "autoBackupIntervalHours" in rejected.json()["error"]


def test_retention_applies_through_api(client: TestClient) -> None:
    client.put("/v1/backups/settings", json={"maxBackups": 2}, headers=HEADERS)
    for _ in range(3):
        _create(client)

    listing = client.get("/v1/backups", headers=HEADERS).json()

    assert [row["versionNumber"] for row in listing] == [2, 3]


def test_loopback_detection() -> None:
    assert _is_loopback_host("127.0.0.1")
    assert _is_loopback_host("::ffff:127.0.0.1")
    assert _is_loopback_host("[::1]")
    assert _is_loopback_host("testclient")
    assert not _is_loopback_host("192.168.1.20")
    assert not _is_loopback_host("10.0.0.5")


def test_restore_storage_failure_returns_failure_body(client: TestClient, service: BackupService, monkeypatch) -> None:
    created = _create(client)

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(service.store, "create", locked)

    response = client.post(f"/v1/backups/restore/{created['id']}", headers=HEADERS)

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert "database is locked" in body["message"]
    assert body["safetyBackupId"] is None


class _DroppingRequest:
    def __init__(self, drop_after: int) -> None:
        self.polls = 0
        self._drop_after = drop_after

    async def is_disconnected(self) -> bool:
        self.polls += 1
        return self.polls >= self._drop_after


def test_client_disconnect_sets_cancel_event() -> None:
    request = _DroppingRequest(drop_after=3)
    cancel = threading.Event()

    asyncio.run(cancel_on_disconnect(request, cancel, poll_interval=0.001))

    assert cancel.is_set()
    assert request.polls == 3
