"""
Seat Fulfillment — Configuration Loader

Three-tier configuration loading:
  1. Base file (fulfillment.yaml)
  2. Per-environment overlay files (config/{SF_ENV}.yaml merged over base)
  3. Environment variable overrides (SF_ prefixed, ``__`` between levels)

Usage:
    from fulfillment.config import load_config, get_config_value, SweeperSettings

    cfg = load_config(base_path="fulfillment.yaml", env="prod")
    settings = SweeperSettings.from_config(cfg)
    interval = get_config_value("sweeper.interval_seconds", cfg, default=60)

Environment variables:
    SF_ENV                              — active profile (dev, staging, prod)
    SF_CONFIG_DIR                       — directory for overlay files (default: config/)
    SF_SWEEPER__INTERVAL_SECONDS=30     — {"sweeper": {"interval_seconds": 30}}
    SF_FEATURES__OPEN_ACCOUNTS=false    — {"features": {"open_accounts": False}}
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass
from datetime import timedelta, timezone
from pathlib import Path
from typing import Any

import yaml

from fulfillment.errors import ConfigError

logger = logging.getLogger("seat_fulfillment.config")

ENV_PREFIX = "SF_"
_META_ENV = {"SF_ENV", "SF_CONFIG_DIR", "SF_VERSION", "SF_CONFIG", "SF_DB_BACKEND", "SF_DB_DSN"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    env = env or os.environ.get("SF_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("SF_CONFIG_DIR", "config")
    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path) or ".") / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)
                continue
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX, environ: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Load SF_ prefixed environment variables as config overrides.

    Levels are separated by a double underscore so that keys keep their
    own underscores: SF_RETRY__BASE_SECONDS=30 → {"retry": {"base_seconds": 30}}.
    Values are parsed as YAML scalars (numbers, booleans, lists).
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for key, value in environ.items():
        if not key.startswith(prefix) or key in _META_ENV:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var overrides", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with three-tier merging.

    Priority (highest wins):
      1. Environment variable overrides (SF_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (fulfillment.yaml, or $SF_CONFIG)
    """
    base_path = base_path or os.environ.get("SF_CONFIG", "fulfillment.yaml")

    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        try:
            with open(base_path) as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse config file {base_path}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigError(f"Config file {base_path} must contain a mapping")
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("SF_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, config: dict[str, Any] | None = None, default: Any = None) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("sweeper.concurrency", cfg, 2)
    """
    if config is None:
        config = load_config()

    current: Any = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current


# ═══════════════════════════════════════════════════════════════════
# Typed Sweeper Settings
# ═══════════════════════════════════════════════════════════════════

def _int(cfg: dict, path: str, default: int, minimum: int, maximum: int | None = None) -> int:
    raw = get_config_value(path, cfg, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s: %r, using %d", path, raw, default)
        value = default
    value = max(minimum, value)
    return value if maximum is None else min(maximum, value)


def _bool(cfg: dict, path: str, default: bool) -> bool:
    raw = get_config_value(path, cfg, default)
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("0", "false", "off", "no"):
        return False
    if text in ("1", "true", "on", "yes"):
        return True
    return default


@dataclass(frozen=True)
class SweeperSettings:
    """Clamped, typed view of the sweeper/retry/allocator config sections."""
    enabled: bool = True
    interval_seconds: int = 60
    initial_delay_seconds: int = 30
    concurrency: int = 2
    batch_size: int = 50
    feature_flag: str = "open_accounts"
    max_retries: int = 8
    retry_base_seconds: int = 60
    retry_max_seconds: int = 3600
    seat_capacity: int = 5
    prefer_non_today: bool = True
    service_days_warranty: int = 30
    service_days_no_warranty: int = 30
    storage_utc_offset_hours: int = 8

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | None = None) -> SweeperSettings:
        cfg = cfg or {}
        warranty_days = _int(cfg, "service_days.warranty", 30, 1)
        return cls(
            enabled=_bool(cfg, "sweeper.enabled", True),
            interval_seconds=_int(cfg, "sweeper.interval_seconds", 60, 10),
            initial_delay_seconds=_int(cfg, "sweeper.initial_delay_seconds", 30, 1),
            concurrency=_int(cfg, "sweeper.concurrency", 2, 1),
            batch_size=_int(cfg, "sweeper.batch_size", 50, 1),
            feature_flag=str(get_config_value("sweeper.feature_flag", cfg, "open_accounts")),
            max_retries=_int(cfg, "retry.max_retries", 8, 0),
            retry_base_seconds=_int(cfg, "retry.base_seconds", 60, 5),
            retry_max_seconds=_int(cfg, "retry.max_seconds", 3600, 30),
            seat_capacity=_int(cfg, "allocator.seat_capacity", 5, 1),
            prefer_non_today=_bool(cfg, "allocator.prefer_non_today", True),
            service_days_warranty=warranty_days,
            service_days_no_warranty=_int(cfg, "service_days.no_warranty", warranty_days, 1),
            storage_utc_offset_hours=_int(cfg, "allocator.storage_utc_offset_hours", 8, -12, 14),
        )

    @property
    def storage_tz(self) -> timezone:
        return timezone(timedelta(hours=self.storage_utc_offset_hours))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
