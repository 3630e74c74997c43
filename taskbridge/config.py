from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("TASKBRIDGE_SETTINGS", "/data/settings.yml")


class AppSettings(BaseModel):
    name: str = "Taskbridge"
    # Single civil timezone used for every canonical date (GMT-5, no DST).
    timezone: str = "America/Bogota"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8888


class SecuritySettings(BaseModel):
    # Shared bearer token for the gateway. Empty disables the check.
    api_token: str = ""


class DatabaseSettings(BaseModel):
    path: str = "/data/taskbridge.db"


class RemoteSettings(BaseModel):
    base_url: str = "http://127.0.0.1:8888"
    request_timeout_seconds: float = 15.0


class SyncSettings(BaseModel):
    poll_interval_ms: int = Field(default=10_000, ge=250)
    cooldown_ms: int = Field(default=15_000, ge=0)
    # "shared": one write timestamp for all collections.
    # "per_collection": a write only suppresses polling of its own collection.
    cooldown_scope: Literal["shared", "per_collection"] = "shared"
    retry_interval_ms: int = Field(default=5_000, ge=100)
    call_timeout_seconds: float = Field(default=20.0, gt=0)
    failure_alert_threshold: int = Field(default=5, ge=1)
    cache_path: str = ""


class SweepSettings(BaseModel):
    enabled: bool = True
    hour_local: int = Field(default=6, ge=0, le=23)
    minute: int = Field(default=0, ge=0, le=59)
    lock_timeout_seconds: float = Field(default=30.0, ge=0)
    # A lock row older than this is considered abandoned.
    lock_ttl_seconds: float = Field(default=600.0, gt=0)
    job_id: str = "process_recurring_tasks"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    dir: str = "/data/logs"
    file_enabled: bool = True


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Flat option names accepted at the root of settings.yml.
_CORE_OPTIONS = {
    "pollIntervalMs": ("sync", "poll_interval_ms"),
    "cooldownMs": ("sync", "cooldown_ms"),
    "sweepHourLocal": ("sweep", "hour_local"),
}


def _apply_core_options(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    for key, (section, field) in _CORE_OPTIONS.items():
        if key in data:
            value = data.pop(key)
            sec = dict(data.get(section) or {})
            sec.setdefault(field, value)
            data[section] = sec
    return data


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


def write_sample_settings(path: str) -> Path:
    """Write the default settings to `path` unless the file already exists."""
    p = Path(path)
    if p.exists():
        return p
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(yaml.safe_dump(Settings().model_dump(), sort_keys=False), encoding="utf-8")
    return p


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("TASKBRIDGE_SETTINGS", DEFAULT_SETTINGS_PATH)
    raw: Dict[str, Any] = {}
    if Path(settings_path).exists():
        raw = _load_yaml(settings_path)
    s = Settings.model_validate(_apply_core_options(raw))

    # Allow env overrides for secrets and deployment endpoints.
    api_token = os.environ.get("TASKBRIDGE_API_TOKEN")
    if api_token:
        s.security.api_token = api_token

    remote_env = os.environ.get("TASKBRIDGE_REMOTE_URL")
    if remote_env:
        s.remote.base_url = str(remote_env).strip()

    # Port override is occasionally useful in container orchestration.
    port_env = os.environ.get("PORT") or os.environ.get("TASKBRIDGE_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s
