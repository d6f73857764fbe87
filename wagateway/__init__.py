"""Multi-account messaging gateway service."""

from .api import create_app
from .manager import ConnectionManager
from .registry import ConnectionRegistry

__all__ = ["create_app", "ConnectionManager", "ConnectionRegistry"]
