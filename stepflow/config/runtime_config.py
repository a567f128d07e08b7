"""Runtime configuration for the flow navigation engine.

Provides centralized defaults for engine limits and logging.
Environment variables take precedence over YAML config.

Usage:
    from stepflow.config.runtime_config import (
        get_max_traversal_depth,
        get_error_history_capacity,
        get_log_level,
    )

    depth = get_max_traversal_depth()  # 100 unless overridden
    capacity = get_error_history_capacity()  # 50 unless overridden

Environment overrides:
    STEPFLOW_MAX_TRAVERSAL_DEPTH
    STEPFLOW_ERROR_HISTORY_CAPACITY
    STEPFLOW_LOG_LEVEL
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

DEFAULT_MAX_TRAVERSAL_DEPTH = 100
DEFAULT_ERROR_HISTORY_CAPACITY = 50
DEFAULT_LOG_LEVEL = "WARNING"

# Sanity bounds for numeric settings
SETTING_MIN = 1
SETTING_MAX = 10_000

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _clamp_setting(value: int, name: str, min_val: int = SETTING_MIN, max_val: int = SETTING_MAX) -> int:
    """Clamp a numeric setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Human-readable name for logging (e.g., "max_traversal_depth")
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Clamped value within [min_val, max_val]
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %d is below minimum %d. Clamping to %d.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if value > max_val:
        logger.warning(
            "Setting '%s' value %d exceeds maximum %d. Clamping to %d.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or _default_config()
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "engine": {
            "max_traversal_depth": DEFAULT_MAX_TRAVERSAL_DEPTH,
            "error_history_capacity": DEFAULT_ERROR_HISTORY_CAPACITY,
        },
        "logging": {
            "level": DEFAULT_LOG_LEVEL,
        },
    }


def reload_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _resolve_int(env_var: str, key: str, default: int) -> int:
    """Resolve an integer engine setting.

    Precedence (highest to lowest):
    1. Environment variable
    2. Config file value under ``engine``
    3. Default

    Unparseable or non-positive values fall back to the default.
    """
    raw: Any = os.environ.get(env_var)
    source = env_var
    if raw is None or raw == "":
        raw = _load_config().get("engine", {}).get(key)
        source = f"runtime.yaml engine.{key}"
    if raw is None:
        return default

    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r. Falling back to %d.", source, raw, default)
        return default

    if value <= 0:
        logger.warning("Non-positive %s value %d. Falling back to %d.", source, value, default)
        return default

    return _clamp_setting(value, key)


def get_max_traversal_depth() -> int:
    """Maximum number of conditional skips a single resolution may perform."""
    return _resolve_int(
        "STEPFLOW_MAX_TRAVERSAL_DEPTH", "max_traversal_depth", DEFAULT_MAX_TRAVERSAL_DEPTH
    )


def get_error_history_capacity() -> int:
    """Number of error entries the ErrorService retains."""
    return _resolve_int(
        "STEPFLOW_ERROR_HISTORY_CAPACITY",
        "error_history_capacity",
        DEFAULT_ERROR_HISTORY_CAPACITY,
    )


def get_log_level() -> str:
    """Configured log level name for applications embedding the engine.

    The library never installs handlers itself; this is a hint for the host.
    """
    level = os.environ.get("STEPFLOW_LOG_LEVEL")
    if not level:
        level = _load_config().get("logging", {}).get("level", DEFAULT_LOG_LEVEL)

    level_upper = str(level).upper()
    if level_upper not in VALID_LOG_LEVELS:
        logger.warning(
            "Invalid log level '%s' (valid: %s). Falling back to '%s'.",
            level,
            ", ".join(VALID_LOG_LEVELS),
            DEFAULT_LOG_LEVEL,
        )
        return DEFAULT_LOG_LEVEL
    return level_upper
