"""Configuration module for loading and managing application settings"""
from typing import Dict, Any, Optional
import os

from .lib.load_settings_conf import (
    load_settings_conf, validate_settings, SettingsError, DEFAULTS
)

__all__ = ['get_settings', 'reset_settings', 'SettingsError', 'DEFAULTS', 'validate_settings']

_settings: Optional[Dict[str, Any]] = None

def get_settings(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Load settings.conf once and return the cached settings.

    Args:
        settings_path: Directory containing settings.conf. Falls back to the
                       ESCROW_SETTINGS_DIR environment variable, then the
                       current directory.

    Raises:
        SettingsError: If settings.conf is missing or invalid
    """
    global _settings

    if _settings is None:
        path = settings_path or os.environ.get('ESCROW_SETTINGS_DIR', '.')
        try:
            _settings = load_settings_conf(path)
        except SettingsError as e:
            # Re-raise the error but provide more context
            raise SettingsError(
                f"Configuration Error\n"
                "=================\n\n"
                f"{str(e)}\n\n"
                "Please ensure settings.conf is properly configured.\n"
                "Run `python -m config` to write examples/settings.conf.example."
            ) from e
    return _settings

def reset_settings() -> None:
    """Drop cached settings so the next get_settings() reloads the file."""
    global _settings
    _settings = None
