"""FastAPI application exposing the backup engine over a local REST interface."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Type

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backup import BackupService
from backup.errors import (
    BackupError,
    IntegrityError,
    NotFoundError,
    ProviderError,
    RestoreCancelledError,
    RestoreInProgressError,
    StorageError,
    ValidationError,
)
from backup.restore import describe_failure

from .auth import APIKeyAuth
from .models import (
    AutoTriggerRequest,
    BackupSettingsResponse,
    BackupSettingsUpdate,
    BackupSummaryResponse,
    CreateBackupRequest,
    EntityCountsResponse,
    HealthResponse,
    ImportResponse,
    RestoreResponse,
)

LOGGER = logging.getLogger("catalogvault.api")


@dataclass(slots=True)
class APIServerConfig:
    """Runtime configuration for the FastAPI application."""

    service: BackupService
    api_key: Optional[str]
    cors_origins: Sequence[str]
    app_version: str = "dev"
    lan_only: bool = True


_LOCAL_CLIENT_SENTINELS = {
    "127.0.0.1",
    "::1",
    "localhost",
    "testclient",
}

_ERROR_STATUS: Dict[Type[BackupError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    RestoreInProgressError: status.HTTP_409_CONFLICT,
    RestoreCancelledError: status.HTTP_409_CONFLICT,
    IntegrityError: 422,
    ProviderError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StorageError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _normalise_remote_host(host: Optional[str]) -> Optional[str]:
    if host is None:
        return None
    value = host.strip().lower()
    if not value:
        return None
    if value.startswith("::ffff:"):
        value = value.rsplit(":", 1)[-1]
    if value.startswith("[") and value.endswith("]"):
        value = value[1:-1]
    if "%" in value:  # strip IPv6 scope id
        value = value.split("%", 1)[0]
    return value


def _is_loopback_host(host: Optional[str]) -> bool:
    value = _normalise_remote_host(host)
    if value is None:
        return True
    if value in _LOCAL_CLIENT_SENTINELS:
        return True
    return value.startswith("127.")


def status_for_error(exc: BackupError) -> int:
    for cls in type(exc).__mro__:
        code = _ERROR_STATUS.get(cls)  # type: ignore[arg-type]
        if code is not None:
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def cancel_on_disconnect(request: Request, cancel_event: threading.Event, *, poll_interval: float = 0.2) -> None:
    """Set *cancel_event* once the client goes away."""

    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(poll_interval)


def _summary_response(summary) -> BackupSummaryResponse:
    return BackupSummaryResponse(**summary.to_dict())


def create_app(config: APIServerConfig) -> FastAPI:
    """Create a FastAPI application bound to the given configuration."""

    app = FastAPI(
        title="CatalogVault Backup API",
        version=config.app_version,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )

    allowed_origins: List[str] = [origin for origin in config.cors_origins if origin]
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["*"],
            expose_headers=["Content-Disposition"],
        )

    auth_dependency = APIKeyAuth(config.api_key)
    service = config.service
    lan_only = bool(config.lan_only)

    @app.on_event("startup")
    async def _startup() -> None:
        service.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        service.stop()

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[override]
        start = time.perf_counter()
        response: Optional[Response] = None
        client_host = request.client.host if request.client else None
        try:
            if lan_only and not _is_loopback_host(client_host):
                LOGGER.warning("Rejected non-local HTTP request from %s", client_host or "<unknown>")
                response = JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "LAN access disabled"})
            else:
                response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response is not None else 500
            LOGGER.info(
                "%s %s -> %s (%.1f ms) ip=%s",
                request.method,
                request.url.path,
                status_code,
                duration_ms,
                client_host or "-",
            )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid parameters", "details": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(BackupError)
    async def backup_exception_handler(request: Request, exc: BackupError):
        code = status_for_error(exc)
        if code >= 500:
            LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc)
        content: Dict[str, object] = {"error": exc.message}
        if exc.operation:
            content["operation"] = exc.operation
        return JSONResponse(status_code=code, content=content)

    # ------------------------------------------------------------------
    @app.get("/v1/health", response_model=HealthResponse)
    def health_check(_: str = Depends(auth_dependency)) -> HealthResponse:
        scheduler = service.scheduler
        return HealthResponse(
            ok=True,
            version=config.app_version,
            time_utc=datetime.now(timezone.utc).isoformat(),
            backups=service.store.count(),
            scheduler_running=scheduler.running,
            next_auto_backup_utc=scheduler.next_fire_utc,
            restore_in_progress=service.restore_in_progress,
        )

    @app.get("/v1/backups", response_model=List[BackupSummaryResponse])
    def list_backups(_: str = Depends(auth_dependency)) -> List[BackupSummaryResponse]:
        return [_summary_response(summary) for summary in service.list_backups()]

    @app.post(
        "/v1/backups/create",
        response_model=BackupSummaryResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def create_backup(
        payload: Optional[CreateBackupRequest] = None,
        _: str = Depends(auth_dependency),
    ) -> BackupSummaryResponse:
        description = payload.description if payload is not None else None
        return _summary_response(service.create_backup(description))

    @app.post(
        "/v1/backups/auto-trigger",
        response_model=BackupSummaryResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def auto_trigger(payload: AutoTriggerRequest, _: str = Depends(auth_dependency)) -> BackupSummaryResponse:
        return _summary_response(service.trigger_auto(payload.reason))

    @app.get("/v1/backups/settings", response_model=BackupSettingsResponse)
    def get_settings(_: str = Depends(auth_dependency)) -> BackupSettingsResponse:
        return BackupSettingsResponse(**service.get_settings().to_dict())

    @app.put("/v1/backups/settings", response_model=BackupSettingsResponse)
    def update_settings(payload: BackupSettingsUpdate, _: str = Depends(auth_dependency)) -> BackupSettingsResponse:
        updated = service.update_settings(
            max_backups=payload.maxBackups,
            auto_backup_interval_hours=payload.autoBackupIntervalHours,
        )
        return BackupSettingsResponse(**updated.to_dict())

    @app.get("/v1/backups/{backup_id}/preview", response_model=EntityCountsResponse)
    def preview_backup(backup_id: int, _: str = Depends(auth_dependency)) -> EntityCountsResponse:
        return EntityCountsResponse(**service.preview(backup_id))

    @app.post("/v1/backups/restore/{backup_id}", response_model=RestoreResponse)
    async def restore_backup(backup_id: int, request: Request, _: str = Depends(auth_dependency)):
        cancel_event = threading.Event()
        watcher = asyncio.create_task(cancel_on_disconnect(request, cancel_event))
        try:
            outcome = await run_in_threadpool(service.restore, backup_id, cancel_event=cancel_event)
        except BackupError as exc:
            return JSONResponse(
                status_code=status_for_error(exc),
                content={
                    "success": False,
                    "message": describe_failure(exc),
                    "versionNumber": None,
                    "safetyBackupId": exc.safety_backup_id,
                },
            )
        finally:
            watcher.cancel()
        return RestoreResponse(
            success=True,
            message=outcome.message,
            versionNumber=outcome.version_number,
            safetyBackupId=outcome.safety_backup_id,
        )

    @app.get("/v1/backups/{backup_id}/export")
    def export_backup(backup_id: int, _: str = Depends(auth_dependency)) -> Response:
        exported = service.export_backup(backup_id)
        return Response(
            content=exported.data,
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
        )

    @app.post(
        "/v1/backups/import",
        response_model=ImportResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def import_backup(request: Request, _: str = Depends(auth_dependency)):
        limit = service.max_import_bytes
        declared = request.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise HTTPException(
                status_code=413,
                detail=f"Backup file exceeds the {limit} byte import limit.",
            )
        body = await request.body()
        if len(body) > limit:
            raise HTTPException(
                status_code=413,
                detail=f"Backup file exceeds the {limit} byte import limit.",
            )
        if not body:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "backupId": None, "message": "Import failed: empty request body"},
            )
        try:
            backup = await run_in_threadpool(service.import_backup, body)
        except IntegrityError as exc:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"success": False, "backupId": None, "message": f"Import failed: {exc.message}"},
            )
        return ImportResponse(
            success=True,
            backupId=backup.id,
            versionNumber=backup.version_number,
            message=f"Backup imported as version {backup.version_number}",
        )

    @app.delete("/v1/backups/{backup_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_backup(backup_id: int, _: str = Depends(auth_dependency)) -> Response:
        service.delete_backup(backup_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


__all__ = [
    "APIServerConfig",
    "create_app",
    "status_for_error",
]
