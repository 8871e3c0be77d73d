"""Configuration module for the passkey onboarding service."""
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "load_settings"]
