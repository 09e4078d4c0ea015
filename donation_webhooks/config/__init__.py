"""Configuration package for the donation webhook service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
