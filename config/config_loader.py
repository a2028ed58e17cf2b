"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules read their settings through this module.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def _get_section(name: str) -> Dict[str, Any]:
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No config section '{name}'. "
            f"Available: {list(config.keys())}"
        )
    return config[name]


def get_ledger_config() -> Dict[str, Any]:
    """Returns the ledger block (raw column names, encoding, timestamp format)."""
    return _get_section("ledger")


def get_monetary_config() -> Dict[str, Any]:
    """Returns the monetary block."""
    return _get_section("monetary")


def get_classification_config() -> Dict[str, Any]:
    """Returns the classification block (admin code patterns)."""
    return _get_section("classification")


def get_rfm_config() -> Dict[str, Any]:
    return _get_section("rfm")


def get_activity_status_config() -> Dict[str, int]:
    """Returns the recency thresholds used for activity status labels."""
    return _get_section("activity_status")


def get_temporal_split_config() -> Dict[str, Any]:
    """Returns default history/outcome spans in days."""
    return _get_section("temporal_split")


def get_modeling_config() -> Dict[str, Any]:
    return _get_section("modeling")


def get_drift_monitoring_config() -> Dict[str, Any]:
    """Returns drift monitoring config."""
    return _get_section("drift_monitoring")


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
