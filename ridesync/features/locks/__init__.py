"""
Locks feature.

Redis-backed cooperative locks per (operation, provider, user).
"""

from .service import LockService, LockHandle, LockKind

__all__ = ["LockService", "LockHandle", "LockKind"]
