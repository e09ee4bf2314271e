"""Layered settings: ``POTLUCK_*`` environment, then ``potluck.toml``, then defaults."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, NamedTuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

STORE_BACKENDS = ("sql", "json")
UPLOAD_BACKENDS = ("database", "disk")


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


def _one_of(*allowed: str) -> Callable[[Any], str]:
    def cast(value: Any) -> str:
        normalized = str(value).strip().lower()
        if normalized not in allowed:
            raise ValueError(f"expected one of: {', '.join(allowed)}")
        return normalized

    return cast


def _positive(caster: Callable[[Any], Any]) -> Callable[[Any], Any]:
    def cast(value: Any) -> Any:
        number = caster(value)
        if number <= 0:
            raise ValueError("must be greater than zero")
        return number

    return cast


def _zone_name(value: Any) -> str:
    name = str(value).strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError("not a known IANA time zone") from exc
    return name


class Option(NamedTuple):
    default: Any
    cast: Callable[[Any], Any]


OPTIONS: dict[str, Option] = {
    "app_host": Option("0.0.0.0", str),
    "app_port": Option(8000, int),
    "calendar_feed_url": Option("", lambda value: str(value).strip()),
    "feed_timeout_seconds": Option(10.0, _positive(float)),
    "display_timezone": Option("America/New_York", _zone_name),
    "calendar_window_years": Option(13, _positive(int)),
    "store_backend": Option("sql", _one_of(*STORE_BACKENDS)),
    "upload_backend": Option("database", _one_of(*UPLOAD_BACKENDS)),
    "recipe_max_bytes": Option(5 * 1024 * 1024, _positive(int)),
    "shared_content_max_bytes": Option(10 * 1024 * 1024, _positive(int)),
    "enable_scheduler": Option(True, _boolify),
    "sqlite_vacuum_hours": Option(12, _positive(int)),
    "upload_sweep_hours": Option(24, _positive(int)),
    "seed_events": Option(6, int),
    "seed_rsvps_per_event": Option(5, int),
}
DEFAULTS: dict[str, Any] = {key: option.default for key, option in OPTIONS.items()}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    upload_dir: Path
    json_store_path: Path
    app_host: str
    app_port: int
    calendar_feed_url: str
    feed_timeout_seconds: float
    display_timezone: str
    calendar_window_years: int
    store_backend: str
    upload_backend: str
    recipe_max_bytes: int
    shared_content_max_bytes: int
    enable_scheduler: bool
    sqlite_vacuum_hours: int
    upload_sweep_hours: int
    seed_events: int
    seed_rsvps_per_event: int
    config_path: Path


def _cast_value(key: str, value: Any) -> Any:
    option = OPTIONS.get(key)
    if option is None:
        return value
    try:
        return option.cast(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid {key} {value!r}: {exc}") from exc


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _layered_value(key: str, toml_config: dict[str, Any]) -> Any:
    env_value = os.environ.get(f"POTLUCK_{key.upper()}")
    if env_value is not None:
        return _cast_value(key, env_value)
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return OPTIONS[key].default


def _under(base: Path, value: str | Path | None, fallback: Path) -> Path:
    path = Path(value) if value else fallback
    return path if path.is_absolute() else base / path


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("POTLUCK_BASE_DIR", Path.cwd()))
    config_path = Path(
        config_override or os.getenv("POTLUCK_CONFIG") or base_dir / "potluck.toml"
    )
    toml_config = _load_toml_config(config_path)

    data_dir = _under(
        base_dir,
        os.getenv("POTLUCK_DATA_DIR", toml_config.get("data_dir")),
        base_dir / "data",
    )
    database_path = _under(
        base_dir,
        os.getenv("POTLUCK_DB", toml_config.get("database_path")),
        data_dir / "potluck.db",
    )

    settings = Settings(
        base_dir=base_dir,
        data_dir=data_dir,
        database_path=database_path,
        upload_dir=data_dir / "uploads",
        json_store_path=data_dir / "potluck.json",
        config_path=config_path,
        **{key: _layered_value(key, toml_config) for key in OPTIONS},
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    paths = ("base_dir", "data_dir", "database_path", "upload_dir", "json_store_path")
    payload: dict[str, Any] = {name: str(getattr(settings, name)) for name in paths}
    payload.update({key: getattr(settings, key) for key in OPTIONS})
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    body = "".join(f"{key} = {_toml_literal(config[key])}\n" for key in sorted(config))
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("# Potluck configuration\n" + body, encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Merge known keys into the TOML file and reload the module-level settings.

    Values are validated before anything is written; unknown keys are ignored.
    """
    global settings
    target_path = path or settings.config_path
    merged = _load_toml_config(target_path)
    merged.update(
        {key: _cast_value(key, value) for key, value in updates.items() if key in OPTIONS}
    )
    write_config_file(merged, path=target_path)
    settings = load_settings(target_path)
    return settings


settings = load_settings()
