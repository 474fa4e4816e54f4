from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable


log = logging.getLogger(__name__)


@dataclass
class _Entry:
    data: Any
    stored_at: float
    ttl_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at > self.ttl_seconds


class ContentCache:
    """Two-level cache: an in-memory map with per-entry expiry and a directory of raw files.

    A miss or an expired entry is always safe to recompute. Disk entries age by
    modification time, so ``load_from_disk`` takes the maximum acceptable age
    from the caller rather than storing one.
    """

    def __init__(self, cache_dir: Path, clock: Callable[[], float] = time.time):
        self.cache_dir = Path(cache_dir)
        self._clock = clock
        self._memory: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._memory.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._memory[key]
                log.debug("Memory cache entry expired: %s", key)
                return None
            return entry.data

    def put(self, key: str, data: Any, ttl_seconds: float) -> None:
        if data is None:
            return
        with self._lock:
            self._memory[key] = _Entry(data=data, stored_at=self._clock(), ttl_seconds=float(ttl_seconds))

    def remove(self, key: str) -> None:
        with self._lock:
            self._memory.pop(key, None)

    def clear_memory(self) -> None:
        with self._lock:
            self._memory.clear()

    def _disk_path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError(f"Invalid cache file name: {name!r}")
        return self.cache_dir / name

    def save_to_disk(self, name: str, data: bytes) -> None:
        path = self._disk_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            with tmp.open("wb") as fh:
                fh.write(data)
            tmp.replace(path)
        except OSError:
            log.exception("Failed to write disk cache entry %s", name)
            tmp.unlink(missing_ok=True)

    def load_from_disk(self, name: str, max_age_seconds: float | None) -> bytes | None:
        """Return the stored bytes, or None when absent or older than ``max_age_seconds``.

        ``max_age_seconds=None`` accepts any age; it is how callers look for a
        stale copy after a network failure.
        """
        path = self._disk_path(name)
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        if max_age_seconds is not None and self._clock() - stat.st_mtime > max_age_seconds:
            log.debug("Disk cache entry too old: %s", name)
            return None
        try:
            return path.read_bytes()
        except OSError:
            log.exception("Failed to read disk cache entry %s", name)
            return None

    def remove_from_disk(self, name: str) -> None:
        self._disk_path(name).unlink(missing_ok=True)

    def cleanup_expired(self, disk_max_age_seconds: float = 7 * 24 * 60 * 60) -> int:
        now = self._clock()
        with self._lock:
            expired_keys = [k for k, e in self._memory.items() if e.expired(now)]
            for key in expired_keys:
                del self._memory[key]
        removed = len(expired_keys)

        if self.cache_dir.exists():
            for path in self.cache_dir.iterdir():
                try:
                    if path.is_file() and now - path.stat().st_mtime > disk_max_age_seconds:
                        path.unlink()
                        removed += 1
                except OSError:
                    log.warning("Could not remove expired cache file %s", path)
        if removed:
            log.info("Removed %d expired cache entries", removed)
        return removed
