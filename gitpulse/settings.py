"""Runtime configuration: defaults, an optional JSON file, then environment variables."""

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import cast

from gitpulse.git_ops import GitPulseError

ENV_PREFIX = "GITPULSE_"
SETTINGS_FILE = "settings.json"

MIN_DEBOUNCE = 0.3
MAX_DEBOUNCE = 0.5


class SettingsError(GitPulseError):
    """Settings file or environment value is invalid."""


def _default_data_dir() -> Path:
    return Path.home() / ".cache" / "gitpulse"


def _env_bool(raw: str, name: str) -> bool:
    val = raw.strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise SettingsError(f"Invalid boolean for {name}: {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Static settings for one gitpulse process."""

    data_dir: Path
    log_level: str = "INFO"
    log_to_file: bool = True
    log_max_bytes: int = 1_000_000
    log_backup_count: int = 3
    debounce_seconds: float = 0.4
    poll_interval_seconds: float = 120.0
    command_timeout_seconds: float = 30.0
    fetch_timeout_seconds: float = 60.0

    @property
    def db_path(self) -> Path:
        return self.data_dir / "gitpulse.sqlite"

    @property
    def log_path(self) -> Path:
        return self.data_dir / "gitpulse.log"

    @property
    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILE


def _coerce(name: str, kind: type, value: object, source: str) -> object:
    try:
        if kind is bool:
            if isinstance(value, bool):
                return value
            if isinstance(value, str):
                return _env_bool(value, name)
            raise SettingsError(f"Invalid boolean for {name} in {source}")
        if kind is int:
            if isinstance(value, bool):
                raise SettingsError(f"Invalid integer for {name} in {source}")
            return int(cast(str, value))
        if kind is float:
            if isinstance(value, bool):
                raise SettingsError(f"Invalid number for {name} in {source}")
            return float(cast(str, value))
    except (TypeError, ValueError) as exc:
        raise SettingsError(f"Invalid value for {name} in {source}: {value!r}") from exc
    if not isinstance(value, str):
        raise SettingsError(f"Invalid value for {name} in {source}: {value!r}")
    return value


_FIELD_TYPES: dict[str, type] = {
    "log_level": str,
    "log_to_file": bool,
    "log_max_bytes": int,
    "log_backup_count": int,
    "debounce_seconds": float,
    "poll_interval_seconds": float,
    "command_timeout_seconds": float,
    "fetch_timeout_seconds": float,
}


def _load_file(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SettingsError(f"Invalid JSON in {path}") from exc
    if not isinstance(raw, dict):
        raise SettingsError(f"Invalid settings format in {path}")
    unknown = sorted(set(raw) - set(_FIELD_TYPES))
    if unknown:
        raise SettingsError(f"Unknown settings in {path}: {', '.join(unknown)}")
    return raw


def load_settings(
    data_dir: Path | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Resolve settings: defaults < `<data_dir>/settings.json` < GITPULSE_* variables."""
    env = os.environ if environ is None else environ
    if data_dir is None:
        env_dir = env.get(f"{ENV_PREFIX}DATA_DIR")
        data_dir = Path(env_dir).expanduser() if env_dir else _default_data_dir()

    settings = Settings(data_dir=data_dir)
    overrides: dict[str, object] = {}
    for name, value in _load_file(settings.settings_path).items():
        overrides[name] = _coerce(name, _FIELD_TYPES[name], value, str(settings.settings_path))
    for name, kind in _FIELD_TYPES.items():
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            overrides[name] = _coerce(name, kind, raw, "environment")

    settings = replace(settings, **overrides)
    return _validated(settings)


def _validated(settings: Settings) -> Settings:
    for f in fields(settings):
        if f.name.endswith("_seconds") and getattr(settings, f.name) <= 0:
            raise SettingsError(f"{f.name} must be positive")
    debounce = min(max(settings.debounce_seconds, MIN_DEBOUNCE), MAX_DEBOUNCE)
    return replace(settings, debounce_seconds=debounce, log_level=settings.log_level.upper().strip())
