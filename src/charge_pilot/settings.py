"""Process-wide settings: where config lives and the loaded ``ConfigManager``."""

from __future__ import annotations

import os
from pathlib import Path

from charge_pilot.config.manager import ConfigManager
from charge_pilot.config.schema import AppConfig

CONFIG_DIR_ENV = "CHARGE_PILOT_CONFIG_DIR"

_manager: ConfigManager | None = None


def config_paths(config_dir: str | Path | None = None) -> tuple[Path, Path]:
    """Defaults and user config files in ``config_dir``.

    Falls back to ``$CHARGE_PILOT_CONFIG_DIR``, then the working directory.
    """
    base = Path(config_dir or os.environ.get(CONFIG_DIR_ENV) or ".")
    return base / "config.defaults.yaml", base / "config.yaml"


def load_settings(defaults_path: Path | None = None, user_path: Path | None = None) -> AppConfig:
    global _manager
    default_defaults, default_user = config_paths()
    _manager = ConfigManager(defaults_path or default_defaults, user_path or default_user)
    return _manager.load()


def get_config_manager() -> ConfigManager:
    if _manager is None:
        raise RuntimeError("Settings not loaded. Call load_settings() first.")
    return _manager
