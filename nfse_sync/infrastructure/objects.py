"""Blob storage backends addressed by slash separated keys."""
from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path, PurePosixPath
from typing import Protocol

from nfse_sync.domain import StoredObject, content_type_for
from nfse_sync.domain.errors import DocumentNotFound, StorageWriteError


class ObjectStore(Protocol):
    """Minimal object store contract used by the storage organizer."""

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject: ...

    def get(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...

    def list(self, prefix: str) -> list[StoredObject]: ...

    def delete(self, key: str) -> None: ...


def normalise_key(key: str) -> str:
    """Reject keys that would escape the store root."""

    cleaned = key.strip().lstrip("/")
    parts = PurePosixPath(cleaned).parts
    if not parts or any(part in {"..", "."} for part in parts):
        raise ValueError(f"invalid object key: {key!r}")
    return "/".join(parts)


class InMemoryObjectStore:
    """Dictionary-backed store for tests."""

    def __init__(self) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        key = normalise_key(key)
        content_type = content_type or content_type_for(key)
        with self._lock:
            self._objects[key] = (bytes(data), content_type)
        return StoredObject(key=key, size=len(data), content_type=content_type)

    def get(self, key: str) -> bytes:
        key = normalise_key(key)
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            raise DocumentNotFound(f"object {key} not found")
        return entry[0]

    def exists(self, key: str) -> bool:
        with self._lock:
            return normalise_key(key) in self._objects

    def list(self, prefix: str) -> list[StoredObject]:
        with self._lock:
            items = [
                StoredObject(key=key, size=len(data), content_type=content_type)
                for key, (data, content_type) in self._objects.items()
                if key.startswith(prefix)
            ]
        return sorted(items, key=lambda item: item.key)

    def delete(self, key: str) -> None:
        key = normalise_key(key)
        with self._lock:
            self._objects.pop(key, None)


class LocalObjectStore:
    """Filesystem store rooted at a directory.

    Each put lands in a temporary file next to the target and is renamed into
    place, so readers never observe a partially written object.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).expanduser().resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._root.joinpath(*normalise_key(key).split("/"))

    def put(self, key: str, data: bytes, content_type: str | None = None) -> StoredObject:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as buffer:
                    buffer.write(data)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageWriteError(f"failed to write {key}: {exc}") from exc
        normalised = normalise_key(key)
        return StoredObject(
            key=normalised,
            size=len(data),
            content_type=content_type or content_type_for(normalised),
        )

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise DocumentNotFound(f"object {key} not found") from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list(self, prefix: str) -> list[StoredObject]:
        # walk from the deepest directory fully covered by the prefix
        directory_part = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        base = self._root.joinpath(*[part for part in directory_part.split("/") if part])
        if not base.is_dir():
            return []
        items: list[StoredObject] = []
        for path in base.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                items.append(StoredObject(key=key, size=path.stat().st_size, content_type=content_type_for(key)))
        return sorted(items, key=lambda item: item.key)

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageWriteError(f"failed to delete {key}: {exc}") from exc
