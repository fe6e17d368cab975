"""Configuration loading, persistence and secret handling.

Layers, later wins: ``config.defaults.yaml``, the user's ``config.yaml``,
then API keys from the environment. Mappings deep-merge; lists (users,
blackout windows) are replaced whole.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from charge_pilot.config.schema import AppConfig, UserConfig

logger = logging.getLogger(__name__)

# Environment variable -> config path. Keeps credentials out of YAML files.
SECRET_ENV_VARS: dict[str, tuple[str, ...]] = {
    "CHARGE_PILOT_AMBER_API_KEY": ("providers", "tariff", "api_key"),
    "CHARGE_PILOT_FOXESS_API_KEY": ("hardware", "foxess", "api_key"),
}

_SECRET_FIELDS = frozenset({"api_key"})


class ConfigManager:
    """Owns the active ``AppConfig`` and the user override file."""

    def __init__(
        self,
        defaults_path: Path | None = None,
        user_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._defaults_path = defaults_path or Path("config.defaults.yaml")
        self._user_path = user_path or Path("config.yaml")
        self._environ = os.environ if environ is None else environ
        self._config: AppConfig | None = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise RuntimeError("Config not loaded. Call load() first.")
        return self._config

    def load(self) -> AppConfig:
        merged = self._deep_merge(
            self._load_yaml(self._defaults_path), self._load_yaml(self._user_path),
        )
        for var, path in SECRET_ENV_VARS.items():
            value = self._environ.get(var)
            if value:
                _set_path(merged, path, value.strip())
                logger.debug("Using %s from environment", ".".join(path))

        self._config = AppConfig.model_validate(merged)
        enabled = sum(1 for u in self._config.users if u.enabled)
        logger.info(
            "Configuration loaded: %d user(s), %d enabled, timezone %s",
            len(self._config.users), enabled, self._config.automation.timezone,
        )
        return self._config

    def redacted(self) -> dict[str, Any]:
        """Config as a dict with credentials masked, safe to log or display."""
        return _mask_secrets(self.config.model_dump(mode="json"))

    def to_json(self) -> str:
        return json.dumps(self.redacted(), indent=2)

    # ── Persistence ─────────────────────────────────────────

    def save_user_config(self, updates: dict[str, Any]) -> AppConfig:
        """Merge ``updates`` into config.yaml and reload.

        The merged result is validated before anything is written, so a bad
        update leaves the file untouched.
        """
        current = self._load_yaml(self._user_path)
        merged = self._deep_merge(current, updates)
        AppConfig.model_validate(self._deep_merge(self._load_yaml(self._defaults_path), merged))
        self._write_yaml(merged)
        return self.load()

    def upsert_user(self, user: UserConfig) -> AppConfig:
        """Add or replace an automated user by ``user_id``."""
        users = [u for u in self.config.users if u.user_id != user.user_id]
        users.append(user)
        logger.info("Saving user %s (device %s)", user.user_id, user.device_id)
        return self.save_user_config({"users": [u.model_dump() for u in users]})

    def remove_user(self, user_id: str) -> AppConfig:
        users = [u for u in self.config.users if u.user_id != user_id]
        if len(users) == len(self.config.users):
            raise KeyError(f"unknown user {user_id!r}")
        logger.info("Removing user %s", user_id)
        return self.save_user_config({"users": [u.model_dump() for u in users]})

    def _write_yaml(self, data: dict[str, Any]) -> None:
        self._user_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._user_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    # ── Helpers ─────────────────────────────────────────────

    @staticmethod
    def _load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge override into base, returning a new dict."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if isinstance(result.get(key), dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result


def _set_path(data: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = data
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[path[-1]] = value


def _mask_secrets(data: Any) -> Any:
    if isinstance(data, dict):
        return {
            k: ("***" if k in _SECRET_FIELDS and v else _mask_secrets(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_mask_secrets(v) for v in data]
    return data
