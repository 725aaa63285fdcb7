"""Per-tenant messaging account linking, reconnection and credential storage."""

from .api import create_app
from .manager import LinkManager, build_manager

__all__ = ["LinkManager", "build_manager", "create_app"]
