# PATH: config/__init__.py
"""
Configuration loading utilities for POLYARB.
"""

from pathlib import Path
from typing import Any, Dict, Union

import yaml

from core.exceptions import ConfigError


CONFIG_DIR = Path(__file__).parent


def load_yaml(filename: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML configuration file.

    Args:
        filename: Name of file in config directory, or an explicit path

    Returns:
        Parsed YAML as dict
    """
    filepath = filename if isinstance(filename, Path) else CONFIG_DIR / filename
    if not filepath.exists():
        raise ConfigError(f"Config file not found: {filepath}")

    with open(filepath, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {filepath}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at the top of {filepath}")
    return data


def load_tokens() -> Dict[str, Any]:
    """Load Polygon token registry."""
    return load_yaml("tokens.yaml")


def load_venues() -> Dict[str, Any]:
    """Load venue registry."""
    return load_yaml("venues.yaml")


def load_strategy() -> Dict[str, Any]:
    """Load strategy configuration."""
    return load_yaml("strategy.yaml")
