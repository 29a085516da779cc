"""Data models for structsync."""

from .config_models import SyncConfig

__all__ = ["SyncConfig"]
