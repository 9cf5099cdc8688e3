"""Per-OS locations for the config file and default install directory."""

import os
from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

from .constants import CONFIG_FILE_NAME, PRODUCT_NAME

CONFIG_DIR_ENV = "KOBOLDKIT_CONFIG_DIR"


def config_dir() -> Path:
    """
    Directory holding config.json and the log file.

    KOBOLDKIT_CONFIG_DIR overrides the platform convention (roaming AppData
    on Windows, Application Support on macOS, $XDG_CONFIG_HOME on Linux).
    """
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    return Path(user_config_dir(PRODUCT_NAME, appauthor=False, roaming=True))


def config_file_path() -> Path:
    return config_dir() / CONFIG_FILE_NAME


def default_install_dir() -> Path:
    """Where backends are installed until the user picks another directory."""
    return Path(user_data_dir(PRODUCT_NAME, appauthor=False))
