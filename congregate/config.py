"""Global configuration for congregate."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"

DEFAULTS: dict[str, Any] = {
    "database_url": "",
    "popularity_threshold": 20,
    "proximity_radius_miles": 30.0,
    "min_radius_miles": 1.0,
    "max_radius_miles": 100.0,
    "default_invite_radius_miles": 30.0,
    "preference_cache_ttl_seconds": 300,
    "cache_backend": "memory",
    "redis_url": "redis://localhost:6379/0",
    "push_backend": "log",
    "push_endpoint": EXPO_PUSH_URL,
    "push_timeout_seconds": 10.0,
    "notification_workers": 8,
    "notification_queue_size": 1000,
    "enqueue_timeout_seconds": 5.0,
    "invitation_sweep_minutes": 60,
    "reminder_sweep_minutes": 60,
    "enable_scheduler": True,
    "app_host": "0.0.0.0",
    "app_port": 8000,
    "seed_users": 40,
    "seed_events": 10,
    "seed_communities": 3,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "database_url": str,
    "popularity_threshold": int,
    "proximity_radius_miles": float,
    "min_radius_miles": float,
    "max_radius_miles": float,
    "default_invite_radius_miles": float,
    "preference_cache_ttl_seconds": int,
    "cache_backend": str,
    "redis_url": str,
    "push_backend": str,
    "push_endpoint": str,
    "push_timeout_seconds": float,
    "notification_workers": int,
    "notification_queue_size": int,
    "enqueue_timeout_seconds": float,
    "invitation_sweep_minutes": int,
    "reminder_sweep_minutes": int,
    "enable_scheduler": bool,
    "app_host": str,
    "app_port": int,
    "seed_users": int,
    "seed_events": int,
    "seed_communities": int,
}

CACHE_BACKENDS = {"memory", "redis"}
PUSH_BACKENDS = {"log", "expo"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    database_url: str
    popularity_threshold: int
    proximity_radius_miles: float
    min_radius_miles: float
    max_radius_miles: float
    default_invite_radius_miles: float
    preference_cache_ttl_seconds: int
    cache_backend: str
    redis_url: str
    push_backend: str
    push_endpoint: str
    push_timeout_seconds: float
    notification_workers: int
    notification_queue_size: int
    enqueue_timeout_seconds: float
    invitation_sweep_minutes: int
    reminder_sweep_minutes: int
    enable_scheduler: bool
    app_host: str
    app_port: int
    seed_users: int
    seed_events: int
    seed_communities: int
    config_path: Path

    @property
    def sqlalchemy_url(self) -> str:
        return self.database_url or f"sqlite:///{self.database_path}"


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"CONGREGATE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = (
        Path(database_path) if database_path else resolved_data / "congregate.db"
    )
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def _validate(values: dict[str, Any]) -> None:
    if values["cache_backend"] not in CACHE_BACKENDS:
        raise ValueError(f"Unknown cache_backend {values['cache_backend']!r}")
    if values["push_backend"] not in PUSH_BACKENDS:
        raise ValueError(f"Unknown push_backend {values['push_backend']!r}")
    if values["min_radius_miles"] <= 0:
        raise ValueError("min_radius_miles must be positive")
    if values["max_radius_miles"] < values["min_radius_miles"]:
        raise ValueError("max_radius_miles must be >= min_radius_miles")
    if values["popularity_threshold"] < 1:
        raise ValueError("popularity_threshold must be >= 1")


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("CONGREGATE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("CONGREGATE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "congregate.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("CONGREGATE_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("CONGREGATE_DB", toml_config.get("database_path")),
    )

    values = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    _validate(values)
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **values,
    )
    if not settings.database_url:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields(settings):
        value = getattr(settings, field.name)
        payload[field.name] = str(value) if isinstance(value, Path) else value
    payload.pop("config_path", None)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# congregate configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Merge ``updates`` into the TOML file and reload the module settings.

    Unknown keys are ignored. Invalid values raise ``ValueError`` and leave
    the file untouched.
    """
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key in DEFAULTS:
            merged[key] = _cast_value(key, value)
    _validate(
        {
            key: _cast_value(key, merged[key]) if key in merged else default
            for key, default in DEFAULTS.items()
        }
    )
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
