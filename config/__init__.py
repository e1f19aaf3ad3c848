"""
Configuration management for code-link

Handles defaults and the layered loading of per-project sync configuration.
"""

from .loader import ConfigurationLoader
from .defaults import DEFAULT_SETTINGS

__all__ = ["ConfigurationLoader", "DEFAULT_SETTINGS"]
