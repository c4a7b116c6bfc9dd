"""Sticker chart persistence, access gate and backup/restore core."""

from .auth import SessionContext
from .backup import BackupManager, RestoreManager
from .services import initialize

__all__ = ["BackupManager", "RestoreManager", "SessionContext", "initialize"]
