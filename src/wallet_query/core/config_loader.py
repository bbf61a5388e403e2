"""Centralized configuration loader for YAML-based configuration.

This module provides functions to load configuration from YAML files with:
- Environment variable overrides (env var → YAML → defaults)
- Type coercion (string to float, bool, int)
- Range validation for thresholds and modes
- Graceful degradation (missing files use defaults)
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml  # type: ignore

from wallet_query.core.query_config import QueryConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "WALLET_QUERY_"
CONFIG_FILENAME = "wallet_query.yaml"

_UNIT_INTERVAL_KEYS = (
    "cache_similarity_threshold",
    "cache_confidence_threshold",
    "entity_shape_threshold",
    "retrieval_min_confidence",
    "merge_similarity_threshold",
    "initial_confidence",
    "confidence_learning_rate",
    "confidence_floor",
    "fallback_confidence_threshold",
    "implicit_signal_weight",
)
_CONTEXT_MERGE_MODES = ("always", "follow_up", "never")


def get_project_root() -> Path:
    """
    Get project root directory.

    Uses pattern: config_loader.py → core/ → wallet_query/ → src/ → project_root

    Returns:
        Path to project root directory (may not contain config/ when the
        package is installed outside a checkout)
    """
    return Path(__file__).parent.parent.parent.parent


def default_config_path() -> Path:
    return get_project_root() / "config" / CONFIG_FILENAME


def _coerce_type(value: Any, target_type: type) -> Any:
    """
    Coerce value to target type.

    Handles:
    - String "30.0" → float 30.0
    - String "true"/"false" → bool True/False (case-insensitive)
    - String "123" → int 123

    Raises:
        ValueError: If coercion fails
    """
    if value is None:
        return None

    if isinstance(value, target_type) and not (target_type is int and isinstance(value, bool)):
        return value

    if target_type is bool:
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is float:
        return float(value)

    if target_type is int:
        if isinstance(value, str):
            return int(float(value))  # Handle "30.0" → 30
        return int(value)

    if target_type is str:
        return str(value)

    return value


def _is_critical_config(key: str) -> bool:
    """
    Check if a config key is critical (should raise ValueError on type coercion failure).

    Critical configs are those that change matching behaviour if silently
    defaulted: thresholds, confidence values, learning rates and timeouts.
    """
    critical_patterns = ["threshold", "confidence", "learning_rate", "timeout"]
    return any(pattern in key.lower() for pattern in critical_patterns)


def _apply_env_overrides(config: dict[str, Any], env_mapping: dict[str, str] | None = None) -> dict[str, Any]:
    """
    Apply environment variable overrides to config.

    Supports two modes:
    1. Explicit mapping: env_mapping provides env var name → config key mapping
    2. Automatic mapping: WALLET_QUERY_<KEY> overrides <key>

    Returns:
        Config with env var overrides applied
    """
    result = config.copy()
    overridden: set[str] = set()

    if env_mapping:
        for env_key, config_key in env_mapping.items():
            env_value = os.getenv(env_key)
            if env_value is None or config_key not in result:
                continue
            target_type = type(result[config_key])
            try:
                result[config_key] = _coerce_type(env_value, target_type)
                overridden.add(config_key)
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    for config_key in result.keys():
        if config_key in overridden:
            continue
        env_key = f"{ENV_PREFIX}{config_key.upper()}"
        env_value = os.getenv(env_key)
        if env_value is None:
            continue
        target_type = type(result[config_key])
        try:
            result[config_key] = _coerce_type(env_value, target_type)
        except (ValueError, TypeError) as e:
            if _is_critical_config(config_key):
                raise ValueError(f"Type coercion failed for critical config {env_key}={env_value}: {e}") from e
            logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    return result


def _validate(config: dict[str, Any]) -> None:
    errors = []
    for key in _UNIT_INTERVAL_KEYS:
        value = config[key]
        if not 0.0 <= value <= 1.0:
            errors.append(f"{key}={value} must be between 0 and 1")
    if config["context_merge_mode"] not in _CONTEXT_MERGE_MODES:
        errors.append(f"context_merge_mode={config['context_merge_mode']!r} must be one of {_CONTEXT_MERGE_MODES}")
    if config["confidence_floor"] > config["initial_confidence"]:
        errors.append("confidence_floor must not exceed initial_confidence")
    if errors:
        raise ValueError(f"Invalid wallet query config: {'; '.join(errors)}")


def load_query_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load wallet query config from YAML with env var overrides.

    Precedence: Environment variable → YAML value → Default value

    Args:
        config_path: Optional path to config file. If None, uses config/wallet_query.yaml
            under the project root.

    Returns:
        dict with keys matching QueryConfig fields

    Raises:
        ValueError: If YAML is invalid, a critical value cannot be coerced or
            a value is out of range
    """
    defaults = QueryConfig().to_dict()

    if config_path is None:
        config_path = default_config_path()

    config = defaults.copy()
    if config_path.exists():
        try:
            with open(config_path) as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

        for key, value in yaml_data.items():
            if key not in defaults:
                logger.warning(f"Unknown config key {key} in {config_path}, ignoring")
                continue
            target_type = type(defaults[key])
            try:
                config[key] = _coerce_type(value, target_type)
            except (ValueError, TypeError) as e:
                if _is_critical_config(key):
                    raise ValueError(
                        f"Type coercion failed for critical config {key}={value}: "
                        f"expected {target_type.__name__}, got {type(value).__name__}. "
                        f"Error: {e}"
                    ) from e
                logger.warning(
                    f"Failed to coerce YAML value {key}={value} to {target_type.__name__}: {e}, using default"
                )
    else:
        logger.debug(f"Config file not found at {config_path}, using defaults")

    env_mapping = {
        "ENABLE_PATTERN_CACHE": "enable_pattern_cache",
        "ENABLE_PATTERN_LEARNING": "enable_learning",
        "EMBEDDING_MODEL": "embedding_model",
        "QUERY_LOG_DIR": "query_log_dir",
    }
    config = _apply_env_overrides(config, env_mapping)
    _validate(config)
    return config


def load_config(config_path: Path | None = None) -> QueryConfig:
    """Load and return a typed QueryConfig."""
    return QueryConfig.from_mapping(load_query_config(config_path))
