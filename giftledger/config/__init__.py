"""Configuration package for the gift card ledger."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
