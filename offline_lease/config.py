"""Shared configuration loader for offline-lease."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .kdf import PBKDF2_ITERATIONS
from .model import MAX_OFFLINE_HOURS
from .store import DEFAULT_STORAGE_DIR


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".offline-lease.yaml"

ENV_STORAGE_DIR = "OFFLINE_LEASE_STORAGE_DIR"
ENV_MAX_OFFLINE_HOURS = "OFFLINE_LEASE_MAX_OFFLINE_HOURS"
ENV_KDF_ITERATIONS = "OFFLINE_LEASE_KDF_ITERATIONS"


@dataclass
class LeaseConfig:
    """Resolved settings for the store and tracker."""

    storage_dir: Path = field(default_factory=lambda: DEFAULT_STORAGE_DIR)
    max_offline_hours: float = MAX_OFFLINE_HOURS
    kdf_iterations: int = PBKDF2_ITERATIONS


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML object with a 'lease' section")
    return loaded


def _coerce_hours(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid max_offline_hours in {source}: {raw}") from exc
    if value <= 0:
        raise ConfigurationError(f"max_offline_hours in {source} must be positive, got {raw}")
    return value


def _coerce_iterations(raw: Any, *, source: str) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid kdf_iterations in {source}: {raw}") from exc
    if value < PBKDF2_ITERATIONS:
        raise ConfigurationError(
            f"kdf_iterations in {source} must be at least {PBKDF2_ITERATIONS}, got {raw}"
        )
    return value


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def load_lease_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> LeaseConfig:
    """Load lease settings from overrides, environment variables and optional YAML."""

    env_map = os.environ if env is None else env
    path = Path(config_path).expanduser() if config_path is not None else DEFAULT_CONFIG_PATH

    file_config = _load_config_file(path, required=config_path is not None)
    lease_section = file_config.get("lease") or {}
    if not isinstance(lease_section, dict):
        raise ConfigurationError(f"Expected 'lease' to be a mapping in {path}")

    override_map = dict(overrides or {})

    storage_dir = _first_value(
        override_map.get("storage_dir"),
        env_map.get(ENV_STORAGE_DIR) or None,
        lease_section.get("storage_dir"),
        default=DEFAULT_STORAGE_DIR,
    )
    max_offline_hours = _first_value(
        _coerce_hours(override_map.get("max_offline_hours"), source="overrides"),
        _coerce_hours(env_map.get(ENV_MAX_OFFLINE_HOURS) or None, source="environment"),
        _coerce_hours(lease_section.get("max_offline_hours"), source=f"{path} lease.max_offline_hours"),
        default=MAX_OFFLINE_HOURS,
    )
    kdf_iterations = _first_value(
        _coerce_iterations(override_map.get("kdf_iterations"), source="overrides"),
        _coerce_iterations(env_map.get(ENV_KDF_ITERATIONS) or None, source="environment"),
        _coerce_iterations(lease_section.get("kdf_iterations"), source=f"{path} lease.kdf_iterations"),
        default=PBKDF2_ITERATIONS,
    )

    return LeaseConfig(
        storage_dir=Path(storage_dir).expanduser(),
        max_offline_hours=max_offline_hours,
        kdf_iterations=kdf_iterations,
    )
