"""Moving archives in from and out to the host platform."""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol, Union
from urllib.parse import unquote, urlparse

from .errors import NotFoundError, StorageError

logger = logging.getLogger(__name__)

ZIP_MIME = "application/zip"


class FilePicker(Protocol):
    def pick(self, mime_type: str) -> Optional[str]:
        """Return the URI of the picked file, or ``None`` when cancelled."""

    def resolve(self, uri: str) -> bytes: ...

    def copy(self, uri: str, dest_path: Path) -> None: ...


class ShareSheet(Protocol):
    def share(self, path: Path, mime_type: str) -> None: ...


def _uri_path(uri: str) -> Path:
    if uri.startswith("file://"):
        return Path(unquote(urlparse(uri).path))
    return Path(uri)


class LocalFilePicker:
    """File picker over the local filesystem; ``source`` is what gets picked."""

    def __init__(self, source: Optional[Union[str, Path]] = None):
        self.source = source

    def pick(self, mime_type: str) -> Optional[str]:
        if self.source is None:
            return None
        return Path(self.source).resolve().as_uri()

    def resolve(self, uri: str) -> bytes:
        return _uri_path(uri).read_bytes()

    def copy(self, uri: str, dest_path: Path) -> None:
        shutil.copyfile(_uri_path(uri), dest_path)


class DirectoryShareSheet:
    """Share sheet that drops shared files into an outbox directory."""

    def __init__(self, outbox: Union[str, Path]):
        self.outbox = Path(outbox)

    def share(self, path: Path, mime_type: str) -> None:
        self.outbox.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, self.outbox / Path(path).name)
        logger.info("shared %s (%s) to %s", path, mime_type, self.outbox)


def _archive_name(uri: str) -> str:
    name = unquote(urlparse(uri).path or uri).rstrip("/").split("/")[-1]
    if not name:
        name = f"import_{datetime.now().strftime('%Y%m%d%H%M%S')}"
    if not name.lower().endswith(".zip"):
        name += ".zip"
    return name


def import_from_external(picker: FilePicker, backup_dir: Union[str, Path]) -> Optional[Path]:
    """Copy an archive chosen with ``picker`` into ``backup_dir``.

    Returns the destination path, or ``None`` when the picker was cancelled.
    """
    uri = picker.pick(ZIP_MIME)
    if uri is None:
        logger.info("archive import cancelled")
        return None

    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)
    dest = backup_dir / _archive_name(uri)
    try:
        picker.copy(uri, dest)
    except Exception as exc:
        logger.warning("direct copy of %s failed (%s), reading content instead", uri, exc)
        try:
            dest.write_bytes(picker.resolve(uri))
        except Exception as read_exc:
            raise StorageError(f"cannot import {uri}: {read_exc}") from read_exc

    if not dest.is_file():
        raise StorageError(f"imported archive missing at {dest}")
    logger.info("imported archive %s", dest.name)
    return dest


def export_to_share_sheet(share_sheet: ShareSheet, backup_dir: Union[str, Path], name: str) -> Path:
    """Hand the archive ``name`` from ``backup_dir`` to the share sheet."""
    path = Path(backup_dir) / Path(name).name
    if not path.is_file():
        raise NotFoundError(f"archive {name} not found")
    share_sheet.share(path, ZIP_MIME)
    logger.info("archive %s handed to share sheet", name)
    return path
