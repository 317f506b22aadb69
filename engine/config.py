"""
Relay — Environment Config Loader

Three-tier configuration loading:
  1. Base YAML file (relay.yaml)
  2. Per-environment overlay files (config/{RELAY_ENV}.yaml merged over base)
  3. Environment variable overrides (RELAY_ prefixed)

Usage:
    from engine.config import load_config, get_settings

    cfg = load_config(base_path="relay.yaml", env="prod")
    settings = get_settings()
    settings.default_max_rounds

Environment variables:
    RELAY_ENV               — active profile (dev, staging, prod)
    RELAY_CONFIG_DIR        — directory for overlay files (default: config/)
    RELAY_CONFIG_PATH       — base config file (default: relay.yaml)
    RELAY_*                 — nested overrides (e.g., RELAY_RUNNER__DEFAULT_MAX_ROUNDS=4)
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("relay.config")

_META_VARS = {"RELAY_ENV", "RELAY_CONFIG_DIR", "RELAY_CONFIG_PATH", "RELAY_VERSION"}

DEFAULTS: dict[str, Any] = {
    "runner": {
        "default_max_rounds": 1,
        "max_tool_rounds": 20,
        "max_self_fix_retries": 3,
    },
    "tools": {
        "max_tools_per_agent": 10,
        "http_timeout_seconds": 30.0,
    },
    "worker": {
        "mode": "inline",
        "max_workers": 2,
        "poll_interval_seconds": 1.0,
        "redis_url": "redis://localhost:6379",
    },
    "store": {
        "db_path": "",
    },
    "logging": {
        "level": "INFO",
    },
}


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
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(base_path: str, env: str = "", config_dir: str = "") -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for {config_dir}/{env}.yaml next to the working directory or the base file.
    """
    env = env or os.environ.get("RELAY_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("RELAY_CONFIG_DIR", "config")
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

def _load_env_overrides(prefix: str = "RELAY_") -> dict[str, Any]:
    """
    Load RELAY_ prefixed environment variables as config overrides.

    Naming convention (double underscore separates levels, since keys
    themselves contain underscores):
      RELAY_WORKER__MODE=thread → {"worker": {"mode": "thread"}}
      RELAY_RUNNER__DEFAULT_MAX_ROUNDS=4 → {"runner": {"default_max_rounds": 4}}

    Values are parsed as YAML scalars so numbers and booleans keep their type.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        try:
            parsed = yaml.safe_load(value)
        except yaml.YAMLError:
            parsed = value
        _set_nested(overrides, path, parsed)

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
    Load configuration with three-tier merging over the built-in defaults.

    Priority (highest wins):
      1. Environment variable overrides (RELAY_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (relay.yaml)
      4. Built-in DEFAULTS
    """
    base_path = base_path or os.environ.get("RELAY_CONFIG_PATH", "relay.yaml")
    config = copy.deepcopy(DEFAULTS)

    if os.path.exists(base_path):
        with open(base_path) as f:
            config = deep_merge(config, yaml.safe_load(f) or {})
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("RELAY_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(path: str, default: Any = None, config: dict[str, Any] | None = None) -> Any:
    """
    Get a config value by dotted path.

    Example: get_config_value("runner.max_tool_rounds", default=20)
    """
    cfg = config if config is not None else load_config()
    node: Any = cfg
    for key in path.split("."):
        if isinstance(node, dict) and key in node:
            node = node[key]
        else:
            return default
    return node


# ═══════════════════════════════════════════════════════════════════
# Typed Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RuntimeSettings:
    """Flattened, typed view of the settings the execution core reads."""
    default_max_rounds: int = 1
    max_tool_rounds: int = 20
    max_self_fix_retries: int = 3
    max_tools_per_agent: int = 10
    http_timeout_seconds: float = 30.0
    worker_mode: str = "inline"
    max_workers: int = 2
    poll_interval_seconds: float = 1.0
    redis_url: str = "redis://localhost:6379"
    db_path: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> RuntimeSettings:
        runner = config.get("runner", {})
        tools = config.get("tools", {})
        worker = config.get("worker", {})
        values = {
            "default_max_rounds": runner.get("default_max_rounds"),
            "max_tool_rounds": runner.get("max_tool_rounds"),
            "max_self_fix_retries": runner.get("max_self_fix_retries"),
            "max_tools_per_agent": tools.get("max_tools_per_agent"),
            "http_timeout_seconds": tools.get("http_timeout_seconds"),
            "worker_mode": worker.get("mode"),
            "max_workers": worker.get("max_workers"),
            "poll_interval_seconds": worker.get("poll_interval_seconds"),
            "redis_url": worker.get("redis_url"),
            "db_path": config.get("store", {}).get("db_path"),
            "log_level": config.get("logging", {}).get("level"),
        }
        defaults = cls()
        kwargs = {}
        for f in fields(cls):
            raw = values.get(f.name)
            default = getattr(defaults, f.name)
            if raw is None:
                kwargs[f.name] = default
                continue
            try:
                kwargs[f.name] = type(default)(raw)
            except (TypeError, ValueError):
                logger.warning("Invalid value for %s: %r (using %r)", f.name, raw, default)
                kwargs[f.name] = default
        return cls(**kwargs)


_settings: RuntimeSettings | None = None


def get_settings(reload: bool = False) -> RuntimeSettings:
    """Process-wide settings, loaded once from load_config()."""
    global _settings
    if _settings is None or reload:
        _settings = RuntimeSettings.from_config(load_config())
    return _settings
