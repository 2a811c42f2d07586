from __future__ import annotations

from pathlib import Path

import pytest

from imagegen_orchestrator.errors import ExternalProviderError, NotFoundError
from imagegen_orchestrator.storage import FilesystemObjectStorage


def _staged_leftovers(root: Path) -> list[Path]:
    return [path for path in root.rglob("*") if path.name.endswith(".part")]


def test_put_then_get_returns_file_url(tmp_path: Path) -> None:
    storage = FilesystemObjectStorage(tmp_path / "objects")
    url = storage.put("image-generation/org-1/req-1/img-1.png", b"first", "image/png")

    target = tmp_path / "objects" / "image-generation" / "org-1" / "req-1" / "img-1.png"
    assert url == target.resolve().as_uri()
    assert url.startswith("file://")
    assert storage.get("image-generation/org-1/req-1/img-1.png") == b"first"


def test_put_overwrites_existing_object(tmp_path: Path) -> None:
    storage = FilesystemObjectStorage(tmp_path)
    storage.put("a/b.png", b"old", "image/png")
    storage.put("a/b.png", b"new", "image/png")

    assert storage.get("a/b.png") == b"new"
    assert _staged_leftovers(tmp_path) == []


@pytest.mark.parametrize("key", ["/etc/passwd", "../outside.png", "a/../../b.png", ""])
def test_invalid_keys_are_rejected(tmp_path: Path, key: str) -> None:
    storage = FilesystemObjectStorage(tmp_path)
    with pytest.raises(ValueError, match="invalid storage key"):
        storage.put(key, b"x", "image/png")
    with pytest.raises(ValueError, match="invalid storage key"):
        storage.get(key)


def test_missing_object_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(NotFoundError):
        FilesystemObjectStorage(tmp_path).get("nothing/here.png")


def test_failed_replace_leaves_no_staged_file(tmp_path: Path) -> None:
    storage = FilesystemObjectStorage(tmp_path)
    (tmp_path / "a" / "b.png").mkdir(parents=True)

    with pytest.raises(ExternalProviderError, match="a/b.png"):
        storage.put("a/b.png", b"bytes", "image/png")
    assert _staged_leftovers(tmp_path) == []
    assert (tmp_path / "a" / "b.png").is_dir()
