"""
Local document storage layout.

Everything lives under the configured documents root:
- <root>/photos       event photos
- <root>/icons        user icons
- <root>/Sticker-Chart  backup archives
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlparse

from .config import Settings, settings
from .errors import StorageError

logger = logging.getLogger(__name__)

PHOTOS = "photos"
ICONS = "icons"


def get_documents_root(cfg: Optional[Settings] = None) -> Path:
    cfg = cfg or settings
    return Path(cfg.documents_root).expanduser().resolve()


def ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise StorageError(f"cannot create directory {path}: {exc}") from exc
    return path


def get_photos_dir(cfg: Optional[Settings] = None) -> Path:
    cfg = cfg or settings
    return ensure_dir(get_documents_root(cfg) / cfg.photos_dir_name)


def get_icons_dir(cfg: Optional[Settings] = None) -> Path:
    cfg = cfg or settings
    return ensure_dir(get_documents_root(cfg) / cfg.icons_dir_name)


def get_backup_dir(cfg: Optional[Settings] = None) -> Path:
    cfg = cfg or settings
    return ensure_dir(get_documents_root(cfg) / cfg.backup_dir_name)


def get_staging_dir(name: str, cfg: Optional[Settings] = None) -> Path:
    """Path of a scratch directory under the cache root; not created here."""
    cfg = cfg or settings
    return Path(cfg.cache_root).expanduser().resolve() / name


def resolve_asset(ref: str, root: Optional[Path] = None) -> Path:
    """Turn a stored asset reference into a filesystem path.

    Accepts ``file://`` URIs, absolute paths and paths relative to the
    documents root such as ``photos/a.jpg``.
    """
    if ref.startswith("file://"):
        return Path(unquote(urlparse(ref).path))
    path = Path(ref)
    if path.is_absolute():
        return path
    return (root or get_documents_root()) / path


def icon_archive_name(icon_ref: Optional[str], user_id: int) -> str:
    """Name under which a user icon is stored: its last path segment or ``icon_<id>.jpg``."""
    if icon_ref:
        name = icon_ref.rstrip("/").split("/")[-1]
        if name:
            return unquote(name)
    return f"icon_{user_id}.jpg"


def store_asset(
    source: Union[str, Path], kind: str = PHOTOS, cfg: Optional[Settings] = None
) -> str:
    """Copy a picked image into the photos or icons directory.

    Returns the relative reference (``photos/<name>``) to keep in the database.
    """
    if kind == PHOTOS:
        target_dir = get_photos_dir(cfg)
    elif kind == ICONS:
        target_dir = get_icons_dir(cfg)
    else:
        raise ValueError(f"unknown asset kind {kind!r}")

    src = resolve_asset(str(source), get_documents_root(cfg))
    name = f"{datetime.now().strftime('%Y%m%d%H%M%S%f')}_{src.name}"
    try:
        shutil.copyfile(src, target_dir / name)
    except OSError as exc:
        logger.exception("failed to store asset %s", src)
        raise StorageError(f"cannot store asset {src}: {exc}") from exc
    logger.info("stored %s asset %s", kind, name)
    return f"{target_dir.name}/{name}"
