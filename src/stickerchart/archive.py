"""Zip archive export and import of the whole sticker chart state.

An archive holds ``database.json`` with every user, event type, event and
role, plus the photo and icon files under ``photos/`` and ``icons/``.
"""

import logging
import shutil
import zipfile
import zlib
from datetime import date
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from prometheus_client import Counter
from pydantic import ValidationError

from . import services
from .errors import BackupError, InvalidArchiveError, RestoreError, StickerChartError
from .schemas import ArchivePayload
from .storage import icon_archive_name, resolve_asset

logger = logging.getLogger(__name__)

DATABASE_ENTRY = "database.json"
PHOTOS_PREFIX = "photos/"
ICONS_PREFIX = "icons/"

BACKUP_COUNTER = Counter("stickerchart_backups_total", "Archives written")
BACKUP_FAILURES = Counter("stickerchart_backup_failures_total", "Archive exports that failed")
RESTORE_COUNTER = Counter("stickerchart_restores_total", "Archives restored")
RESTORE_FAILURES = Counter("stickerchart_restore_failures_total", "Archive imports that failed")

PathLike = Union[str, Path]

# Raised while inflating a damaged or unsupported entry
ENTRY_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, OSError)


def rotate_existing(path: Path, today: Optional[date] = None) -> Optional[Path]:
    """Rename an existing file at ``path`` to ``<base>.<YYYYMMDD><ext>``.

    ``-<n>`` is appended to the date when that name is already taken.
    Returns the new location, or ``None`` when there was nothing to rotate.
    """
    if not path.exists():
        return None
    stamp = (today or date.today()).strftime("%Y%m%d")
    stem = path.name[: -len(path.suffix)] if path.suffix else path.name
    candidate = path.with_name(f"{stem}.{stamp}{path.suffix}")
    n = 1
    while candidate.exists():
        candidate = path.with_name(f"{stem}.{stamp}-{n}{path.suffix}")
        n += 1
    path.rename(candidate)
    logger.info("rotated %s to %s", path.name, candidate.name)
    return candidate


def _write_archive(
    archive_path: Path,
    payload: ArchivePayload,
    photos_dir: Path,
    documents_root: Path,
    icons_staging: Path,
) -> None:
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(DATABASE_ENTRY, payload.model_dump_json(by_alias=True, indent=2))

        photo_count = 0
        if photos_dir.is_dir():
            for photo in sorted(photos_dir.iterdir()):
                if photo.is_file():
                    zf.write(photo, PHOTOS_PREFIX + photo.name)
                    photo_count += 1

        icon_names = {}
        for user in payload.users:
            if not user.icon:
                continue
            source = resolve_asset(user.icon, documents_root)
            if not source.is_file():
                raise BackupError(f"icon for user {user.id} not found at {source}")
            name = icon_archive_name(user.icon, user.id)
            if name in icon_names:
                if icon_names[name] == source:
                    continue
                name = f"icon_{user.id}{PurePosixPath(name).suffix or '.jpg'}"
                logger.warning("icon name clash, archiving user %s icon as %s", user.id, name)
            staged = icons_staging / name
            shutil.copyfile(source, staged)
            zf.write(staged, ICONS_PREFIX + name)
            icon_names[name] = source

    logger.info(
        "archive written users=%d events=%d photos=%d icons=%d",
        len(payload.users),
        len(payload.events),
        photo_count,
        len(icon_names),
    )


def export_archive(
    zip_path: PathLike,
    photos_dir: PathLike,
    documents_root: PathLike,
    staging_dir: PathLike,
) -> Path:
    """Write the current state to ``zip_path``.

    The archive is built in ``staging_dir`` and only moved into place once
    complete; an existing archive at ``zip_path`` is rotated, never
    overwritten. The staging directory is removed afterwards.

    Raises
    ------
    BackupError
        If the snapshot, the asset collection or the final move fails.
    """
    zip_path = Path(zip_path)
    staging = Path(staging_dir)
    logger.info("exporting archive to %s", zip_path)
    rotated = None
    try:
        shutil.rmtree(staging, ignore_errors=True)
        icons_staging = staging / "icons"
        icons_staging.mkdir(parents=True)

        payload = services.snapshot()
        temp_path = staging / (zip_path.name + ".partial")
        _write_archive(temp_path, payload, Path(photos_dir), Path(documents_root), icons_staging)

        zip_path.parent.mkdir(parents=True, exist_ok=True)
        rotated = rotate_existing(zip_path)
        try:
            shutil.move(str(temp_path), str(zip_path))
        except OSError:
            if rotated is not None and not zip_path.exists():
                rotated.rename(zip_path)
            raise
    except Exception as exc:
        BACKUP_FAILURES.inc()
        logger.exception("archive export to %s failed", zip_path)
        raise BackupError(f"backup failed: {exc}") from exc
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    BACKUP_COUNTER.inc()
    logger.info("archive export complete: %s", zip_path)
    return zip_path


def read_payload(zf: zipfile.ZipFile) -> ArchivePayload:
    """Parse ``database.json`` from an open archive."""
    try:
        raw = zf.read(DATABASE_ENTRY)
    except KeyError as exc:
        raise InvalidArchiveError(f"archive has no {DATABASE_ENTRY}") from exc
    except ENTRY_READ_ERRORS as exc:
        raise InvalidArchiveError(f"cannot read {DATABASE_ENTRY}: {exc}") from exc
    try:
        return ArchivePayload.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidArchiveError(f"malformed {DATABASE_ENTRY}: {exc}") from exc


def _reset_dir(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def restore_assets(zf: zipfile.ZipFile, photos_dir: Path, icons_dir: Path) -> int:
    """Replace the photos and icons directories with the archive's files.

    Entries that cannot be read or written are logged and skipped. Returns the number
    of files written.
    """
    try:
        _reset_dir(photos_dir)
        _reset_dir(icons_dir)
    except OSError as exc:
        raise RestoreError(f"cannot recreate asset directories: {exc}") from exc

    written = 0
    for info in zf.infolist():
        if info.is_dir():
            continue
        if info.filename.startswith(PHOTOS_PREFIX):
            target_dir = photos_dir
        elif info.filename.startswith(ICONS_PREFIX):
            target_dir = icons_dir
        else:
            continue
        name = PurePosixPath(info.filename).name
        if not name:
            continue
        try:
            (target_dir / name).write_bytes(zf.read(info))
            written += 1
        except ENTRY_READ_ERRORS as exc:
            logger.warning("could not restore %s: %s", info.filename, exc)
    return written


def import_archive(zip_path: PathLike, photos_dir: PathLike, icons_dir: PathLike) -> ArchivePayload:
    """Replace the current state with the content of ``zip_path``.

    The relational replacement is all-or-nothing; the asset directories are
    rewritten afterwards on a best-effort basis.

    Raises
    ------
    InvalidArchiveError
        If the file is not a zip archive or ``database.json`` is missing or
        malformed. Nothing is changed in that case.
    RestoreError
        If the database replacement fails (rolled back) or the asset
        directories cannot be recreated.
    """
    zip_path = Path(zip_path)
    logger.info("importing archive %s", zip_path)
    try:
        try:
            zf = zipfile.ZipFile(zip_path)
        except (zipfile.BadZipFile, OSError) as exc:
            raise InvalidArchiveError(f"{zip_path.name} is not a readable zip archive") from exc

        with zf:
            payload = read_payload(zf)
            try:
                services.replace_all(payload)
            except StickerChartError as exc:
                raise RestoreError(f"restore failed: {exc}") from exc
            written = restore_assets(zf, Path(photos_dir), Path(icons_dir))
    except RestoreError:
        RESTORE_FAILURES.inc()
        logger.exception("archive import from %s failed", zip_path)
        raise
    except Exception as exc:
        RESTORE_FAILURES.inc()
        logger.exception("archive import from %s failed", zip_path)
        raise RestoreError(f"restore failed: {exc}") from exc

    RESTORE_COUNTER.inc()
    logger.info(
        "archive import complete users=%d events=%d assets=%d",
        len(payload.users),
        len(payload.events),
        written,
    )
    return payload
