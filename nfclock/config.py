"""
Configuration file handling.
Settings live in a JSON file and are looked up by path, e.g.
config.get("hardware", "duration").
"""

import copy
import json
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "configuration.json"

DEFAULTS: Dict[str, Any] = {
    "database": "database.json",
    "log_level": "INFO",
    "hardware": {
        "duration": 3.0,
        "interval": 0.5,
        "gpio": {
            "solenoid": None,
            "sensor_power": None,
            "sensor_state": None,
        },
    },
    "desfire": {
        "application": 0x000591,
        "key_number": 0,
        "file": 1,
        "secret_length": 16,
    },
    "reader": {
        "timeout": 2.0,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


class Configuration:
    """JSON configuration with built-in defaults."""

    def __init__(self, filename: str = DEFAULT_CONFIG_FILE):
        self.filename = filename
        self._data = copy.deepcopy(DEFAULTS)

    def load(self) -> "Configuration":
        try:
            with open(self.filename, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            logger.warning("Configuration %s not found, using defaults", self.filename)
            return self
        except ValueError as e:
            raise ValueError(f"invalid configuration file {self.filename}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"configuration {self.filename} must be a JSON object")
        self._data = _merge(DEFAULTS, data)
        return self

    def get(self, *path: str, default: Any = None) -> Any:
        """Look up a nested setting; returns default when any level is missing."""
        node: Any = self._data
        for key in path:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node
