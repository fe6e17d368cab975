"""Charge Pilot: rule-driven battery inverter automation."""

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("charge-pilot")
except Exception:
    __version__ = "dev"
