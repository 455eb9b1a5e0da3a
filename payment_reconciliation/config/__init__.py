"""Configuration package for the reconciliation service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
