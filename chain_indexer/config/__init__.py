"""Configuration module"""

from .models import ChainConfig, Settings

__all__ = ["ChainConfig", "Settings"]
