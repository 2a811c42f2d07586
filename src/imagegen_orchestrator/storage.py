from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

from .errors import ExternalProviderError, NotFoundError

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    """Durable byte storage addressed by key."""

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        """Store ``data`` under ``key`` and return a URL referencing it."""
        ...

    def get(self, key: str) -> bytes:
        ...


class FilesystemObjectStorage:
    """Object storage on the local filesystem, returning ``file://`` URLs.

    Writers of the same key serialize on a ``<name>.lock`` file next to the
    object; readers never see a partial object because bytes are staged in a
    ``.part`` file and renamed over the target.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValueError(f"invalid storage key: {key!r}")
        return self.root.joinpath(*relative.parts)

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        lock_fd = os.open(path.parent / f"{path.name}.lock", os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX)
            staged = tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=f".{path.name}.", suffix=".part", delete=False
            )
            staged_path = Path(staged.name)
            try:
                with staged:
                    staged.write(data)
                    staged.flush()
                    os.fsync(staged.fileno())
                os.replace(staged_path, path)
            except BaseException:
                staged_path.unlink(missing_ok=True)
                raise
        finally:
            # closing the descriptor drops the flock
            os.close(lock_fd)

    def put(self, key: str, data: bytes, mime_type: str) -> str:
        path = self._path_for(key)
        try:
            self._write(path, data)
        except OSError as exc:
            raise ExternalProviderError(f"failed to store object {key}: {exc}") from exc
        logger.debug("stored %d bytes (%s) at %s", len(data), mime_type, path)
        return path.resolve().as_uri()

    def get(self, key: str) -> bytes:
        path = self._path_for(key)
        if not path.is_file():
            raise NotFoundError(f"stored object not found: {key}")
        return path.read_bytes()
