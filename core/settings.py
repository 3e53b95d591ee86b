from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Dict

from .paths import get_default_settings_paths, get_logs_dir
from .settings_schema import SETTINGS_VALIDATOR

__all__ = [
    "DEFAULT_SETTINGS",
    "SETTINGS_VERSION",
    "backup_section",
    "load_settings",
    "merge_defaults",
]

SETTINGS_VERSION = 1


DEFAULT_SETTINGS: Dict[str, Any] = {
    "version": SETTINGS_VERSION,
    "backup": {
        "max_backups": 50,
        "auto_backup_interval_hours": 6,
        "scheduler_enabled": True,
        "compression_level": 9,
        "max_import_mb": 50,
    },
    "api": {
        "api_key": None,
        "cors_origins": ["http://localhost", "http://127.0.0.1"],
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8757,
        "lan_refuse": True,
    },
}


def merge_defaults(data: Dict[str, Any]) -> Dict[str, Any]:
    def _merge(default: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key, value in default.items():
            if isinstance(value, dict):
                current = payload.get(key)
                if isinstance(current, dict):
                    result[key] = _merge(value, current)
                else:
                    result[key] = _merge(value, {})
            elif isinstance(value, list):
                current = payload.get(key)
                result[key] = list(current) if isinstance(current, list) else list(value)
            else:
                result[key] = payload.get(key, value)
        for key, value in payload.items():
            if key not in result:
                result[key] = value
        return result

    return _merge(DEFAULT_SETTINGS, data or {})


def backup_section(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Return the ``backup`` block of *settings* with defaults filled in."""

    raw = settings.get("backup") if isinstance(settings, dict) else None
    merged = dict(DEFAULT_SETTINGS["backup"])
    if isinstance(raw, dict):
        merged.update(raw)
    return merged


def _apply_migrations(settings: Dict[str, Any]) -> Dict[str, Any]:
    version = settings.get("version")
    try:
        version_int = int(version)
    except (TypeError, ValueError):
        version_int = 0
    if version_int < SETTINGS_VERSION:
        settings["version"] = SETTINGS_VERSION
    return settings


def _log_unknown_keys(settings: Dict[str, Any], working_dir: Path) -> None:
    unknown = list(SETTINGS_VALIDATOR.unknown_keys(settings))
    if not unknown:
        return
    logs_dir = get_logs_dir(working_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    payload = {
        "ts": time.time(),
        "unknown": unknown,
    }
    target = logs_dir / "settings_unknown.json"
    try:
        with open(target, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
    except OSError:
        return


def load_settings(working_dir: Path) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for candidate in get_default_settings_paths(working_dir):
        try:
            with open(candidate, "r", encoding="utf-8") as handle:
                loaded = json.load(handle)
        except (FileNotFoundError, json.JSONDecodeError):
            continue
        except OSError:
            continue
        if isinstance(loaded, dict):
            data = loaded
            break
    merged = merge_defaults(data)
    merged = _apply_migrations(merged)
    merged.setdefault("working_dir", str(working_dir))
    _log_unknown_keys(merged, working_dir)
    return merged
