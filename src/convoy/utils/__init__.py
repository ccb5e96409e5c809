"""Utility helpers shared across the package."""

from .logging import configure_from_settings, get_log_path, get_logger, setup_logging

__all__ = ["configure_from_settings", "get_log_path", "get_logger", "setup_logging"]
