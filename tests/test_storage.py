import pytest

from stickerchart.errors import StorageError
from stickerchart.storage import (
    ICONS,
    PHOTOS,
    get_backup_dir,
    get_photos_dir,
    icon_archive_name,
    resolve_asset,
    store_asset,
)


def test_directories_follow_settings(cfg):
    root = cfg.documents_root.resolve()
    assert get_backup_dir(cfg) == root / "Sticker-Chart"
    assert get_photos_dir(cfg) == root / "photos"
    assert get_photos_dir(cfg).is_dir()


def test_resolve_asset(tmp_path):
    assert resolve_asset("photos/a.jpg", tmp_path) == tmp_path / "photos" / "a.jpg"
    assert resolve_asset(str(tmp_path / "b.jpg"), tmp_path / "other") == tmp_path / "b.jpg"
    assert resolve_asset("file:///data/icons/my%20icon.png") == resolve_asset("/data/icons/my icon.png")


@pytest.mark.parametrize(
    "ref, expected",
    [
        ("icons/alice.png", "alice.png"),
        ("file:///var/mobile/icons/bob.jpg", "bob.jpg"),
        (None, "icon_7.jpg"),
        ("", "icon_7.jpg"),
    ],
)
def test_icon_archive_name(ref, expected):
    assert icon_archive_name(ref, 7) == expected


def test_store_asset_returns_relative_reference(cfg, tmp_path):
    picked = tmp_path / "picked.jpg"
    picked.write_bytes(b"image")

    ref = store_asset(picked, ICONS, cfg)

    assert ref.startswith("icons/") and ref.endswith("_picked.jpg")
    assert resolve_asset(ref, cfg.documents_root.resolve()).read_bytes() == b"image"


def test_store_asset_missing_source(cfg, tmp_path):
    with pytest.raises(StorageError):
        store_asset(tmp_path / "nope.jpg", PHOTOS, cfg)


def test_store_asset_unknown_kind(cfg, tmp_path):
    with pytest.raises(ValueError):
        store_asset(tmp_path / "x.jpg", "videos", cfg)
