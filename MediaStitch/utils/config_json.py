# 18.10.26

import os
import json
import copy
import logging
from typing import Any, Dict, Optional


# Variable
logger = logging.getLogger(__name__)
CONFIG_ENV = "MEDIASTITCH_CONFIG"
DEFAULT_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "conf", "config.json")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "DEFAULT": {
        "debug": False,
        "log_to_file": False,
        "log_file": "mediastitch.log",
    },
    "REQUESTS": {
        "timeout": 30,
        "max_retry": 6,
        "verify": True,
        "impersonate": "",
        "user_agent": "",
    },
    "DOWNLOAD": {
        "thread_count": 6,
        "retry_base_delay": 0.5,
        "retry_max_delay": 30,
        "validate_content": True,
        "min_segment_bytes": 512,
        "filter_ads": True,
    },
    "SPILL": {
        "ram_threshold_mb": 100,
        "assumed_segment_mb": 1,
        "temp_dir": "",
        "write_retries": 3,
    },
    "HOOKS": {
        "url_refresh_timeout": 30,
        "sleep_drift": 30,
        "network_window": 10,
    },
    "HLS": {
        "max_depth": 5,
    },
}


class ConfigAccessor:
    """Typed read access to one loaded configuration tree."""

    def __init__(self, data: Dict[str, Dict[str, Any]]):
        self._data = data

    def _raw(self, section: str, key: str, default: Any) -> Any:
        value = self._data.get(section, {}).get(key)
        return default if value is None else value

    def get(self, section: str, key: Optional[str] = None, default: Any = None) -> Any:
        if key is None:
            return self._data.get(section, default)
        return self._raw(section, key, default)

    def get_int(self, section: str, key: str, default: int = 0) -> int:
        value = self._raw(section, key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Config {section}.{key}={value!r} is not an int, using {default}")
            return default

    def get_float(self, section: str, key: str, default: float = 0.0) -> float:
        value = self._raw(section, key, default)
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning(f"Config {section}.{key}={value!r} is not a float, using {default}")
            return default

    def get_bool(self, section: str, key: str, default: bool = False) -> bool:
        value = self._raw(section, key, default)
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)


class ConfigManager:
    def __init__(self, file_path: Optional[str] = None):
        self.file_path = file_path or os.environ.get(CONFIG_ENV) or DEFAULT_PATH
        self.config = ConfigAccessor(copy.deepcopy(DEFAULTS))
        self.load_config()

    def load_config(self) -> None:
        """Merge the JSON file at ``file_path`` over the built-in defaults."""
        data = copy.deepcopy(DEFAULTS)

        if os.path.exists(self.file_path):
            try:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    user_data = json.load(f)

            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to read config {self.file_path}: {e}")
                user_data = {}

            for section, values in user_data.items():
                if isinstance(values, dict):
                    data.setdefault(section, {}).update(values)
                else:
                    logger.warning(f"Ignoring non-object config section: {section}")

        else:
            logger.debug(f"Config file not found, using defaults: {self.file_path}")

        self.config = ConfigAccessor(data)

    def reload(self, file_path: Optional[str] = None) -> None:
        if file_path:
            self.file_path = file_path
        self.load_config()


config_manager = ConfigManager()
