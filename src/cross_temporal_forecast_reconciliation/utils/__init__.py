"""Utility modules for forecast reconciliation."""

from .cache import FactorizationCache, fingerprint
from .config import configure_logging, load_config, setup_logging

__all__ = [
    "FactorizationCache",
    "fingerprint",
    "configure_logging",
    "load_config",
    "setup_logging",
]
