"""Builder configuration loading."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from contract_builder.errors import ConfigError

ENV_PREFIX = "CONTRACT_BUILDER_"
DEFAULT_CONFIG_PATH = "config/builder.yaml"

KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([KMGTPE]?)(i?B?)\s*$", re.IGNORECASE)
_SIZE_EXPONENTS = {"": 0, "K": 1, "M": 2, "G": 3, "T": 4, "P": 5, "E": 6}

_RUNTIMES = {"docker", "local"}
_VOLUME_BACKENDS = {"loop", "directory"}


def parse_size(value: str | int) -> int:
    """Parse a ``fallocate -l`` style size into bytes.

    ``K``/``KiB`` suffixes are powers of 1024 and ``KB`` suffixes are powers
    of 1000, matching util-linux.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid size: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ConfigError(f"size must be positive: {value}")
        return value
    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise ConfigError(f"invalid size: {value!r}")
    number, unit, suffix = match.groups()
    unit = unit.upper()
    base = 1000 if suffix.upper() == "B" and unit else 1024
    size = int(number) * base ** _SIZE_EXPONENTS[unit]
    if size <= 0:
        raise ConfigError(f"size must be positive: {value!r}")
    return size


@dataclass(frozen=True)
class StageImages:
    unarchive: str = "stage-unarchive"
    build: str = "ink-builder"
    move: str = "stage-move"


@dataclass(frozen=True)
class BuilderConfig:
    images_path: Path
    api_server_url: str
    worker_count: int = 1
    max_build_duration: float = 3600
    wasm_size_limit: int = 5 * MIB
    metadata_size_limit: int = 1 * MIB
    memory_limit: int = 4 * GIB
    memory_swap_limit: int = 4 * GIB
    volume_size: int = 8 * GIB
    runtime: str = "docker"
    volume_backend: str = "loop"
    relay_sources: bool = False
    relay_patterns: tuple[str, ...] = ("*.rs", "Cargo.toml")
    images: StageImages = field(default_factory=StageImages)
    prebaked_tool_versions: tuple[str, ...] = ()
    default_rustc_version: str = "stable"
    default_tool_version: str = "3.2.0"
    pids_limit: int = 768
    artifacts_path: Path | None = None
    state_path: Path | None = None
    max_log_bytes: int = 1 * MIB
    sandbox_failure_alert_threshold: int = 3
    host: str = "127.0.0.1"
    port: int = 8300
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.artifacts_path is None:
            object.__setattr__(self, "artifacts_path", self.images_path / "artifacts")
        if self.state_path is None:
            object.__setattr__(self, "state_path", self.images_path / "sessions")
        self.validate()

    def validate(self) -> None:
        if not self.api_server_url:
            raise ConfigError("api_server_url is required")
        if self.worker_count < 1:
            raise ConfigError("worker_count must be at least 1")
        if self.max_build_duration <= 0:
            raise ConfigError("max_build_duration must be positive")
        for name in ("wasm_size_limit", "metadata_size_limit", "memory_limit", "volume_size"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.memory_swap_limit < self.memory_limit:
            raise ConfigError("memory_swap_limit must be at least memory_limit")
        if self.runtime not in _RUNTIMES:
            raise ConfigError(f"unknown runtime: {self.runtime}")
        if self.volume_backend not in _VOLUME_BACKENDS:
            raise ConfigError(f"unknown volume backend: {self.volume_backend}")
        if self.sandbox_failure_alert_threshold < 1:
            raise ConfigError("sandbox_failure_alert_threshold must be at least 1")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "BuilderConfig":
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigError(f"unknown configuration options: {', '.join(unknown)}")
        if "images_path" not in raw:
            raise ConfigError("images_path is required")
        values: dict[str, Any] = dict(raw)
        values["images_path"] = Path(values["images_path"])
        for name in ("artifacts_path", "state_path"):
            if values.get(name) is not None:
                values[name] = Path(values[name])
        for name in ("wasm_size_limit", "metadata_size_limit", "memory_limit",
                     "memory_swap_limit", "volume_size", "max_log_bytes"):
            if name in values:
                values[name] = parse_size(values[name])
        for name in ("worker_count", "pids_limit", "port", "sandbox_failure_alert_threshold"):
            if name in values:
                values[name] = _to_int(name, values[name])
        if "max_build_duration" in values:
            values["max_build_duration"] = _to_float("max_build_duration", values["max_build_duration"])
        if "relay_sources" in values:
            values["relay_sources"] = _to_bool("relay_sources", values["relay_sources"])
        for name in ("relay_patterns", "prebaked_tool_versions"):
            if name in values:
                values[name] = _to_tuple(values[name])
        if "images" in values:
            images = values["images"] or {}
            if not isinstance(images, Mapping):
                raise ConfigError("images must be a mapping")
            values["images"] = StageImages(**{str(k): str(v) for k, v in images.items()})
        try:
            return cls(**values)
        except TypeError as exc:
            raise ConfigError(str(exc)) from exc


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> BuilderConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    config_path = Path(path or DEFAULT_CONFIG_PATH)
    data: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        data.update(loaded.get("builder", loaded))
    elif path is not None:
        raise ConfigError(f"configuration file not found: {config_path}")
    data.update(_env_overrides(os.environ if environ is None else environ))
    return BuilderConfig.from_mapping(data)


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX):].lower()
        if name in {"relay_patterns", "prebaked_tool_versions"}:
            overrides[name] = [item.strip() for item in value.split(",") if item.strip()]
        else:
            overrides[name] = value
    return overrides


def _to_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer") from exc


def _to_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be a number") from exc


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean")


def _to_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item) for item in value or ())
