"""Configuration management package for testbed."""

from .config_manager import ConfigManager, ConfigValidationError, scoped_env

__all__ = ['ConfigManager', 'ConfigValidationError', 'scoped_env']
