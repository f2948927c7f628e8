"""Configuration for the ScreenVault server."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Callable, Mapping

from .storage import DEFAULT_CHUNK_SIZE

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
DEFAULT_MAX_DURATION_SECONDS = 180
ENV_PREFIX = "SCREEN_VAULT_"


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Runtime settings for storage, validation and the event log."""

    database_path: Path = Path("data/recordings.db")
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pool_size: int = 4
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    max_duration_seconds: int = DEFAULT_MAX_DURATION_SECONDS
    system_log_path: Path | None = Path("data/system_log.jsonl")
    system_log_entries: int = 500

    def __post_init__(self) -> None:
        object.__setattr__(self, "database_path", Path(self.database_path))
        if self.system_log_path is not None:
            object.__setattr__(self, "system_log_path", Path(self.system_log_path))
        for name in ("chunk_size", "pool_size", "max_upload_bytes", "system_log_entries"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")
        duration = self.max_duration_seconds
        if isinstance(duration, bool) or not isinstance(duration, int):
            raise ValueError("max_duration_seconds must be an integer")
        if not (1 <= duration <= DEFAULT_MAX_DURATION_SECONDS):
            raise ValueError(
                f"max_duration_seconds must be between 1 and {DEFAULT_MAX_DURATION_SECONDS}"
            )

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["database_path"] = str(self.database_path)
        payload["system_log_path"] = (
            str(self.system_log_path) if self.system_log_path is not None else None
        )
        return payload


def _parse_path(value: str) -> Path | None:
    text = value.strip()
    if not text or text.lower() in {"none", "off", "-"}:
        return None
    return Path(text)


def _parse_int(value: str) -> int:
    return int(value.strip(), 0)


_ENV_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "DB": ("database_path", lambda value: Path(value.strip())),
    "CHUNK_SIZE": ("chunk_size", _parse_int),
    "POOL_SIZE": ("pool_size", _parse_int),
    "MAX_UPLOAD_BYTES": ("max_upload_bytes", _parse_int),
    "MAX_DURATION": ("max_duration_seconds", _parse_int),
    "SYSTEM_LOG": ("system_log_path", _parse_path),
    "SYSTEM_LOG_ENTRIES": ("system_log_entries", _parse_int),
}

_FILE_FIELDS = {field for field, _ in _ENV_FIELDS.values()}


def _load_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.info("Config file %s not found; using defaults", path)
        return {}
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ValueError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    unknown = sorted(set(data) - _FILE_FIELDS)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    return {key: value for key, value in data.items() if key in _FILE_FIELDS}


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for suffix, (field, parser) in _ENV_FIELDS.items():
        name = ENV_PREFIX + suffix
        value = environ.get(name)
        if value is None or value == "":
            continue
        try:
            overrides[field] = parser(value)
        except ValueError:
            logger.warning("Invalid %s value %r; ignoring", name, value)
    return overrides


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Build an :class:`AppConfig` from defaults, a JSON file and the environment.

    Later sources win. ``SCREEN_VAULT_CONFIG`` names the file when *path* is
    not given.
    """

    env = os.environ if environ is None else environ
    if path is None:
        configured = env.get(ENV_PREFIX + "CONFIG")
        path = Path(configured) if configured else None
    values: dict[str, Any] = {}
    if path is not None:
        values.update(_load_file(Path(path)))
    values.update(_env_overrides(env))
    config = AppConfig()
    if not values:
        return config
    return replace(config, **values)


__all__ = [
    "AppConfig",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_MAX_DURATION_SECONDS",
    "DEFAULT_MAX_UPLOAD_BYTES",
    "load_config",
]
