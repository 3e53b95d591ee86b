"""CLI entry-point to launch the CatalogVault backup HTTP API."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import uvicorn

from api import __version__ as API_VERSION
from api.server import APIServerConfig, create_app
from backup import BackupError, BackupService
from core.logging_utils import configure_json_logging, redact_secret
from core.paths import get_exports_dir, resolve_working_dir
from core.settings import load_settings

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8757
DEFAULT_CORS = ["http://localhost", "http://127.0.0.1"]


def _resolve_bind_host(candidate: Optional[str], *, lan_refuse: bool = True) -> str:
    host = (candidate or DEFAULT_HOST).strip()
    if not host:
        host = DEFAULT_HOST
    norm = host.lower()
    if norm == "localhost":
        return "127.0.0.1"
    if norm.startswith("::ffff:"):
        norm = norm.split("::ffff:")[-1]
    if norm == "::1":
        return "127.0.0.1"
    if norm.startswith("127."):
        return norm
    if not lan_refuse:
        return host
    raise ValueError(
        f"Refusing to bind API server to non-loopback host '{candidate}'. "
        "Set server.lan_refuse to false to allow it."
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the local CatalogVault backup API service.")
    parser.add_argument("--host", default=None, help="Bind host (default from settings.json)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default from settings.json)")
    parser.add_argument("--api-key", dest="api_key", default=None, help="Override the API key for this session")
    parser.add_argument(
        "--cors",
        action="append",
        dest="cors",
        default=None,
        help="Additional allowed CORS origin (repeatable).",
    )
    parser.add_argument(
        "--working-dir",
        dest="working_dir",
        default=None,
        help="Working directory (default: CATALOGVAULT_HOME or ~/.catalogvault).",
    )
    parser.add_argument(
        "--create-backup",
        action="store_true",
        help="Take a MANUAL backup of the catalog and exit instead of starting the server.",
    )
    parser.add_argument(
        "--description",
        default=None,
        help="Description recorded with --create-backup.",
    )
    parser.add_argument(
        "--export-backup",
        dest="export_backup",
        type=int,
        default=None,
        metavar="ID",
        help="Write backup ID as a portable container into the exports folder and exit.",
    )
    parser.add_argument(
        "--import-backup",
        dest="import_backup",
        default=None,
        metavar="PATH",
        help="Register a backup container file as a new version and exit.",
    )
    return parser.parse_args(argv)


def resolve_api_settings(args: argparse.Namespace) -> tuple[str, int, Optional[str], List[str], bool, Path, Dict[str, Any]]:
    working_dir = Path(args.working_dir).expanduser() if args.working_dir else resolve_working_dir()
    settings = load_settings(working_dir)
    api_settings = settings.get("api") if isinstance(settings.get("api"), dict) else {}
    server_settings = settings.get("server") if isinstance(settings.get("server"), dict) else {}

    lan_refuse = bool(server_settings.get("lan_refuse", True))
    host_candidate = args.host or server_settings.get("host") or DEFAULT_HOST
    host = _resolve_bind_host(host_candidate, lan_refuse=lan_refuse)
    port = args.port or server_settings.get("port") or DEFAULT_PORT
    try:
        port = int(port)
    except (TypeError, ValueError):
        port = DEFAULT_PORT

    api_key = args.api_key if args.api_key else api_settings.get("api_key")

    if args.cors:
        cors = list(args.cors)
    else:
        cors = list(api_settings.get("cors_origins") or DEFAULT_CORS)

    return str(host), int(port), api_key, cors, lan_refuse, working_dir, settings


def _run_exchange(service: BackupService, args: argparse.Namespace, working_dir: Path) -> int:
    try:
        if args.export_backup is not None:
            exported = service.export_backup(args.export_backup)
            target = get_exports_dir(working_dir) / exported.filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(exported.data)
            logging.info("Wrote %s", target)
        if args.import_backup:
            source = Path(args.import_backup).expanduser()
            backup = service.import_backup(source.read_bytes())
            logging.info("Imported %s as backup v%s", source.name, backup.version_number)
    except (BackupError, OSError) as exc:
        logging.error("%s", exc)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
    args = parse_args(argv)
    try:
        host, port, api_key, cors, lan_refuse, working_dir, settings = resolve_api_settings(args)
    except ValueError as exc:
        logging.error("%s", exc)
        return 2

    configure_json_logging("catalogvault", working_dir)
    service = BackupService(working_dir=working_dir, settings=settings)

    if args.create_backup:
        try:
            summary = service.create_backup(args.description)
        except BackupError as exc:
            logging.error("Backup failed: %s", exc)
            return 1
        finally:
            service.close()
        logging.info(
            "Created backup v%s (%s bytes, %s%% saved)",
            summary.version_number,
            summary.compressed_size,
            summary.compression_ratio,
        )
        return 0

    if args.export_backup is not None or args.import_backup:
        try:
            return _run_exchange(service, args, working_dir)
        finally:
            service.close()

    if not api_key:
        logging.warning("API key is not configured; all requests will be rejected with 401.")
    else:
        logging.info("API key loaded (%s)", redact_secret(api_key))

    config = APIServerConfig(
        service=service,
        api_key=api_key,
        cors_origins=cors,
        app_version=API_VERSION,
        lan_only=lan_refuse,
    )
    app = create_app(config)

    print(f"API listening on http://{host}:{port}", flush=True)

    uvicorn_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(uvicorn_config)
    try:
        server.run()
    finally:
        service.close()
    return 0 if server.started else 1


if __name__ == "__main__":
    sys.exit(main())
