"""
Configuration Store

A single JSON document holding flat launcher settings and the user's named
launch-argument sets:

    {
      "installDir": "/home/me/.local/share/koboldkit",
      "currentKoboldBinary": ".../koboldcpp-linux-x64-1.97/koboldcpp-launcher",
      "selectedConfig": "llama-8b",
      "frontendPreference": "koboldcpp",
      "configs": {"llama-8b": ["--model", "llama.gguf", "--port", "5001"]}
    }

Every write rewrites the whole file through a temp file and os.replace, so
a crash never leaves half a document behind. Writes from threads in this
process are serialized; saving the same config name twice keeps the last.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_FRONTEND_PREFERENCE
from .notifications import Channel, NotificationBus
from .paths import config_file_path, default_install_dir

logger = logging.getLogger(__name__)

# --- Keys ---
INSTALL_DIR_KEY = "installDir"
CURRENT_BINARY_KEY = "currentKoboldBinary"
SELECTED_CONFIG_KEY = "selectedConfig"
FRONTEND_PREFERENCE_KEY = "frontendPreference"
CONFIGS_KEY = "configs"

DEFAULTS: Dict[str, Any] = {
    FRONTEND_PREFERENCE_KEY: DEFAULT_FRONTEND_PREFERENCE,
}


class BackendConfig(BaseModel):
    """A named set of launch arguments. The name is the identity key."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Unique config name")
    args: List[str] = Field(default_factory=list, description="Arguments passed to the backend binary")


class ConfigStore:
    """
    JSON-backed launcher settings.

    Args:
        path: Config file location (defaults to the per-OS config directory)
        notifier: Bus used to announce install directory changes
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, notifier: Optional[NotificationBus] = None):
        self.path = Path(path) if path is not None else config_file_path()
        self.notifier = notifier
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read config {self.path}, starting from empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Config {self.path} is not a JSON object, starting from empty")
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".config-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def _update(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._read()
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)

    # ------------------------------------------------------------------
    # Flat key-value
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        data = self._read()
        if key in data:
            return data[key]
        if default is None:
            return DEFAULTS.get(key)
        return default

    def set(self, key: str, value: Any) -> None:
        """Store a value. Setting None removes the key."""
        self._update(key, value)

    # ------------------------------------------------------------------
    # Named launch-argument sets
    # ------------------------------------------------------------------

    def save_config(self, config: BackendConfig) -> None:
        with self._lock:
            data = self._read()
            configs = data.get(CONFIGS_KEY)
            if not isinstance(configs, dict):
                configs = {}
            configs[config.name] = list(config.args)
            data[CONFIGS_KEY] = configs
            self._write(data)
        logger.debug(f"Saved config '{config.name}'")

    def load_config(self, name: str) -> Optional[BackendConfig]:
        configs = self._read().get(CONFIGS_KEY) or {}
        args = configs.get(name)
        if not isinstance(args, list):
            return None
        return BackendConfig(name=name, args=[str(arg) for arg in args])

    def list_configs(self) -> List[str]:
        configs = self._read().get(CONFIGS_KEY) or {}
        return sorted(configs)

    def delete_config(self, name: str) -> bool:
        with self._lock:
            data = self._read()
            configs = data.get(CONFIGS_KEY) or {}
            if name not in configs:
                return False
            del configs[name]
            data[CONFIGS_KEY] = configs
            if data.get(SELECTED_CONFIG_KEY) == name:
                data.pop(SELECTED_CONFIG_KEY)
            self._write(data)
        return True

    # ------------------------------------------------------------------
    # Launcher settings
    # ------------------------------------------------------------------

    @property
    def install_dir(self) -> Path:
        value = self.get(INSTALL_DIR_KEY)
        return Path(value) if value else default_install_dir()

    def set_install_dir(self, path: Union[str, Path]) -> None:
        path = Path(path).expanduser()
        self.set(INSTALL_DIR_KEY, str(path))
        logger.info(f"Install directory set to {path}")
        if self.notifier:
            self.notifier.publish(Channel.INSTALL_DIR_CHANGED, str(path))

    @property
    def current_binary(self) -> Optional[str]:
        return self.get(CURRENT_BINARY_KEY)

    def set_current_binary(self, path: Optional[Union[str, Path]]) -> None:
        self.set(CURRENT_BINARY_KEY, str(path) if path is not None else None)

    @property
    def selected_config(self) -> Optional[str]:
        return self.get(SELECTED_CONFIG_KEY)

    def set_selected_config(self, name: Optional[str]) -> None:
        self.set(SELECTED_CONFIG_KEY, name)
