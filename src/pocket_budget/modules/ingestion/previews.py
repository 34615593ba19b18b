from __future__ import annotations

import uuid
from collections.abc import Iterable

from pocket_budget.core.logging import get_logger, log_event, log_exception
from pocket_budget.core.storage import ObjectStorage
from pocket_budget.modules.ingestion.domain import PreviewHandle

logger = get_logger(__name__)

PREVIEW_PREFIX = "previews"


def _sanitize_filename(name: str) -> str:
    name = (name or "").replace("\\", "/").split("/")[-1].strip()
    return "_".join(name.split()) or "image"


class PreviewRegistry:
    """
    Owns the preview blobs of one ingestion session.

    Every handle handed out by ``acquire`` is released at most once; releasing
    an unknown or already released handle is a no-op.
    """

    def __init__(self, storage: ObjectStorage, *, prefix: str):
        self._storage = storage
        self._prefix = prefix.rstrip("/")
        self._live: set[str] = set()

    @property
    def live_count(self) -> int:
        return len(self._live)

    def acquire(self, *, filename: str, body: bytes) -> PreviewHandle:
        key = f"{self._prefix}/{uuid.uuid4().hex}-{_sanitize_filename(filename)}"
        self._storage.put(key=key, body=body)
        self._live.add(key)
        return PreviewHandle(key=key)

    def read(self, handle: PreviewHandle) -> bytes:
        return self._storage.get(key=handle.key)

    def release(self, handle: PreviewHandle) -> bool:
        if handle.key not in self._live:
            return False
        self._live.discard(handle.key)
        self._storage.delete(key=handle.key)
        return True

    def release_many(self, handles: Iterable[PreviewHandle]) -> int:
        released = 0
        for handle in handles:
            try:
                if self.release(handle):
                    released += 1
            except Exception:  # noqa: BLE001
                # The handle is already dropped from the live set; keep releasing the rest.
                log_exception(logger, "ingestion.preview.release_failed", storage_key=handle.key)
        if released:
            log_event(logger, "ingestion.preview.released", count=released)
        return released

    def release_all(self) -> int:
        return self.release_many([PreviewHandle(key=k) for k in sorted(self._live)])
