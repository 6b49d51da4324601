"""
Configuration for Speculative Decoding

Defaults, optional YAML overrides, and validation. Explicit arguments passed
by callers take precedence over the file, which takes precedence over the
defaults.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    "verifier_model": "Qwen/Qwen2.5-1.5B-Instruct",
    "draft_model": "Qwen/Qwen2.5-0.5B-Instruct",
    "implementation": "fake",
    "device": "auto",
    "dtype": "auto",
    "seed": 1234,
    "deterministic": False,
    "max_new_tokens": 64,
    "controller": "adaptive",
    "initial_k": 3,
    "min_k": 1,
    "max_k": 8,
    "adjust_window": 12,
    "high_threshold": 0.6,
    "low_threshold": 0.4,
    "stop_token_ids": None,
    "stream": False,
    "fake": {
        "vocab_size": 260,
        "multiplier": 31,
        "offset": 7,
        "draft_perturb_every": 5,
    },
}


def load_config(
    config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Load configuration from YAML file or use defaults.

    Args:
        config_path: Optional path to a YAML file
        overrides: Explicit values; None entries are ignored

    Returns:
        Validated configuration dictionary

    Raises:
        ConfigError: If the merged configuration is invalid
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path:
        if Path(config_path).exists():
            try:
                with open(config_path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
                if not isinstance(file_config, dict):
                    raise ConfigError(
                        f"Config file {config_path} must contain a mapping"
                    )
                _merge(config, file_config)
                logger.info(f"Loaded configuration from {config_path}")
            except yaml.YAMLError as e:
                logger.warning(f"Failed to load config from {config_path}: {e}")
                logger.info("Using default configuration")
        else:
            logger.warning(f"Config file not found: {config_path}")
            logger.info("Using default configuration")

    if overrides:
        _merge(config, {k: v for k, v in overrides.items() if v is not None})

    validate_config(config)
    return config


def _merge(base: Dict[str, Any], updates: Dict[str, Any]) -> None:
    """Merge updates into base, recursing into nested dictionaries."""
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


def validate_config(config: Dict[str, Any]) -> None:
    """
    Reject inconsistent settings.

    Raises:
        ConfigError: On the first problem found
    """
    if config["implementation"] not in ("fake", "hf"):
        raise ConfigError(
            f"Unknown implementation: {config['implementation']}. "
            f"Available: ['fake', 'hf']"
        )
    if config["controller"] not in ("fixed", "adaptive"):
        raise ConfigError(
            f"Unknown controller: {config['controller']}. "
            f"Available: ['fixed', 'adaptive']"
        )
    if int(config["max_new_tokens"]) < 1:
        raise ConfigError(
            f"max_new_tokens must be >= 1, got {config['max_new_tokens']}"
        )

    min_k, max_k = int(config["min_k"]), int(config["max_k"])
    initial_k = int(config["initial_k"])
    if min_k < 1:
        raise ConfigError(f"min_k must be >= 1, got {min_k}")
    if min_k > max_k:
        raise ConfigError(f"min_k ({min_k}) must not exceed max_k ({max_k})")
    if config["controller"] == "adaptive" and not min_k <= initial_k <= max_k:
        raise ConfigError(
            f"initial_k ({initial_k}) must lie within [{min_k}, {max_k}]"
        )
    if initial_k < 1:
        raise ConfigError(f"initial_k must be >= 1, got {initial_k}")
    if int(config["adjust_window"]) < 1:
        raise ConfigError(
            f"adjust_window must be >= 1, got {config['adjust_window']}"
        )

    low, high = float(config["low_threshold"]), float(config["high_threshold"])
    if not 0.0 <= low <= high <= 1.0:
        raise ConfigError(
            f"Thresholds must satisfy 0 <= low ({low}) <= high ({high}) <= 1"
        )

    stop_ids = config.get("stop_token_ids")
    if stop_ids is not None and not isinstance(stop_ids, (list, tuple)):
        raise ConfigError(f"stop_token_ids must be a list, got {stop_ids!r}")
