"""Local record stores."""

from .base import LocalStore
from .json_store import JsonLocalStore
from .memory import MemoryLocalStore

__all__ = ["JsonLocalStore", "LocalStore", "MemoryLocalStore"]
