"""Backup and restore lifecycle for the local archive directory."""

import enum
import logging
from pathlib import Path
from typing import Iterable, List, Optional

from . import archive
from .auth import SessionContext
from .config import Settings, settings
from .errors import BackupError, InvalidArchiveError, NotFoundError, RestoreError
from .schemas import ArchivePayload
from .storage import get_backup_dir, get_documents_root, get_icons_dir, get_photos_dir, get_staging_dir

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".zip"
BACKUP_STAGING = "backup_temp"


class LifecycleState(str, enum.Enum):
    IDLE = "Idle"
    EXPORTING = "Exporting"
    SELECTING = "Selecting"
    IMPORTING = "Importing"


def _archive_names(directory: Path) -> List[str]:
    return sorted(
        p.name for p in directory.iterdir() if p.is_file() and p.suffix.lower() == ARCHIVE_SUFFIX
    )


def _checked_name(name: str) -> str:
    if not name or Path(name).name != name:
        raise InvalidArchiveError(f"invalid archive name {name!r}")
    return name


class BackupManager:
    """Writes archives into the backup directory and manages existing ones."""

    def __init__(self, cfg: Optional[Settings] = None):
        self.settings = cfg or settings
        self.state = LifecycleState.IDLE

    @property
    def backup_dir(self) -> Path:
        return get_backup_dir(self.settings)

    @property
    def archive_name(self) -> str:
        return self.settings.backup_base_name + ARCHIVE_SUFFIX

    def create_backup(self) -> Path:
        """Export the current state to ``<backup dir>/<base name>.zip``.

        An earlier archive with the same name is rotated to a dated name.
        """
        if self.state is not LifecycleState.IDLE:
            raise BackupError("a backup is already in progress")
        self.state = LifecycleState.EXPORTING
        try:
            path = archive.export_archive(
                self.backup_dir / self.archive_name,
                get_photos_dir(self.settings),
                get_documents_root(self.settings),
                get_staging_dir(BACKUP_STAGING, self.settings),
            )
        finally:
            self.state = LifecycleState.IDLE
        logger.info("backup created at %s", path)
        return path

    def list_backups(self) -> List[str]:
        return _archive_names(self.backup_dir)

    def delete_backups(self, names: Iterable[str]) -> int:
        """Delete the named archives. Missing ones are skipped."""
        if self.state is not LifecycleState.IDLE:
            raise BackupError("cannot delete archives while a backup is in progress")
        deleted = 0
        for name in names:
            path = self.backup_dir / _checked_name(name)
            if not path.is_file():
                logger.warning("archive %s not found, skipping", name)
                continue
            path.unlink()
            deleted += 1
            logger.info("deleted archive %s", name)
        return deleted


class RestoreManager:
    """Lists archives in the backup directory and restores one of them."""

    def __init__(self, cfg: Optional[Settings] = None):
        self.settings = cfg or settings
        self.state = LifecycleState.IDLE

    @property
    def backup_dir(self) -> Path:
        return get_backup_dir(self.settings)

    def list_archives(self) -> List[str]:
        if self.state is LifecycleState.IMPORTING:
            raise RestoreError("a restore is already in progress")
        names = _archive_names(self.backup_dir)
        self.state = LifecycleState.SELECTING
        return names

    def cancel(self) -> None:
        if self.state is LifecycleState.SELECTING:
            self.state = LifecycleState.IDLE

    def restore(self, name: str, session: Optional[SessionContext] = None) -> ArchivePayload:
        """Replace the current state with the archive ``name``.

        On success ``session`` is reset to Guest, since the user it pointed
        at may no longer exist.
        """
        if self.state is LifecycleState.IMPORTING:
            raise RestoreError("a restore is already in progress")
        path = self.backup_dir / _checked_name(name)
        if not path.is_file():
            self.state = LifecycleState.IDLE
            raise NotFoundError(f"archive {name} not found")

        self.state = LifecycleState.IMPORTING
        try:
            payload = archive.import_archive(
                path, get_photos_dir(self.settings), get_icons_dir(self.settings)
            )
        finally:
            self.state = LifecycleState.IDLE

        if session is not None:
            session.reset()
        logger.info("restored archive %s", name)
        return payload
