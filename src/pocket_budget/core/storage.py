from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path

from pocket_budget.core.config import settings
from pocket_budget.core.logging import get_logger, log_event, log_exception, monotonic_ms

logger = get_logger(__name__)


class StorageError(RuntimeError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    byte_size: int


class ObjectStorage:
    def put(self, *, key: str, body: bytes) -> StoredObject:  # pragma: no cover
        raise NotImplementedError

    def get(self, *, key: str) -> bytes:  # pragma: no cover
        raise NotImplementedError

    def delete(self, *, key: str) -> bool:  # pragma: no cover
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:  # pragma: no cover
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    """Blob store on the local filesystem; keys are relative paths under ``root``."""

    def __init__(self, root: Path):
        self._root = root.resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if path != self._root and self._root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, *, key: str, body: bytes) -> StoredObject:
        start = time.monotonic()
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(body)
        except OSError:
            log_exception(logger, "storage.put.failure", storage_key=key, byte_size=len(body))
            raise
        log_event(
            logger,
            "storage.put.success",
            storage_key=key,
            byte_size=len(body),
            duration_ms=monotonic_ms(start),
        )
        return StoredObject(key=key, byte_size=len(body))

    def get(self, *, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as e:
            log_event(logger, "storage.get.missing", storage_key=key)
            raise StorageError(f"Object not found: {key}") from e

    def delete(self, *, key: str) -> bool:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return False
        except OSError:
            log_exception(logger, "storage.delete.failure", storage_key=key)
            raise
        log_event(logger, "storage.delete.success", storage_key=key)
        return True

    def delete_prefix(self, prefix: str) -> int:
        base = self._path(prefix)
        if not base.is_dir():
            return 0
        removed = 0
        # Deepest paths first so emptied directories can be removed too.
        for path in sorted(base.rglob("*"), key=lambda p: len(p.parts), reverse=True):
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink()
                removed += 1
        log_event(logger, "storage.delete_prefix.success", storage_prefix=prefix, count=removed)
        return removed


_storage: ObjectStorage | None = None


def get_storage() -> ObjectStorage:
    global _storage  # noqa: PLW0603
    if _storage is None:
        root = settings.local_storage_path
        if not root.is_absolute():
            root = Path(os.getcwd()) / root
        _storage = LocalObjectStorage(root)
    return _storage
