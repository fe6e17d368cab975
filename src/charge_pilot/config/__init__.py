"""Configuration management for Charge Pilot."""

from charge_pilot.config.schema import AppConfig
from charge_pilot.config.manager import ConfigManager

__all__ = ["AppConfig", "ConfigManager"]
