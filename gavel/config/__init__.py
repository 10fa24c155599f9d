"""Configuration package for the auction engine."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
