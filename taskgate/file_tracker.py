"""
TASKGATE File Context Tracker — the read cache.

Consulted before every read and updated after every successful one,
so multi-step reasoning does not pay for the same file twice.

An entry is served only while it is younger than the TTL *and* the
on-disk fingerprint (mtime + size) still matches what was cached.
"""

from __future__ import annotations

import hashlib
import math
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from loguru import logger

from taskgate.config_loader import FileTrackerConfig
from taskgate.event_bus import EventBus, EventType


@dataclass
class CacheEntry:
    content: str
    timestamp: float
    hash: str
    fingerprint: str | None
    size: int
    line_count: int


@dataclass
class ReadDecision:
    should_read: bool
    reason: str
    cached_content: str | None = None
    is_partial_read: bool = False


class FileContextTracker:
    def __init__(
        self,
        workspace_root: Path | str,
        config: FileTrackerConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.workspace_root = Path(workspace_root).resolve()
        self.config = config or FileTrackerConfig()
        self.bus = bus
        self._clock = clock
        self._cache: dict[str, CacheEntry] = {}

    # -- public API ----------------------------------------------------------

    def should_read_file(self, file_path: str | Path, limit: int | None = None, offset: int | None = None) -> ReadDecision:
        """Decide whether the caller must hit the disk or can reuse the cache."""
        full_path = self._resolve(file_path)
        partial = self._is_window(limit, offset)

        if not full_path.exists():
            return ReadDecision(True, "File does not exist - read to surface the error")

        key = self._cache_key(file_path, limit, offset)
        cached = self._cache.get(key)

        if cached is None:
            logger.debug(f"[CACHE] No entry for {file_path} - will read")
            return ReadDecision(True, "No cached content available")

        age = self._clock() - cached.timestamp
        if age >= self.config.ttl_seconds:
            logger.debug(f"[CACHE] Expired entry for {file_path} - will re-read")
            return ReadDecision(True, "Cache expired")

        try:
            current = self._fingerprint(full_path)
        except OSError:
            return ReadDecision(True, "Unable to verify file state")
        if current != cached.fingerprint:
            logger.debug(f"[CACHE] {file_path} modified on disk - will re-read")
            self._emit(EventType.CACHE_STALE, {"path": str(full_path)})
            return ReadDecision(True, "File has been modified")

        if age < self.config.min_read_interval_seconds:
            reason = "Recently read - using cached content"
        else:
            reason = "Valid cached content available"

        logger.debug(f"[CACHE] HIT {file_path} ({age:.0f}s old)")
        self._emit(EventType.CACHE_HIT, {"path": str(full_path), "age_seconds": round(age, 1)})
        return ReadDecision(False, reason, cached_content=cached.content, is_partial_read=partial)

    def cache_file_content(
        self,
        file_path: str | Path,
        content: str,
        limit: int | None = None,
        offset: int | None = None,
    ) -> bool:
        """Store freshly read content. Returns False when the content was too large to cache."""
        if len(content) > self.config.max_file_size:
            logger.debug(f"[CACHE] Skipping oversized {file_path} ({len(content)} bytes)")
            return False

        full_path = self._resolve(file_path)
        try:
            fingerprint = self._fingerprint(full_path)
        except OSError:
            fingerprint = None

        key = self._cache_key(file_path, limit, offset)
        if key not in self._cache and len(self._cache) >= self.config.max_entries:
            self._evict_oldest_entries()

        self._cache[key] = CacheEntry(
            content=content,
            timestamp=self._clock(),
            hash=hashlib.sha256(content.encode("utf-8", errors="replace")).hexdigest(),
            fingerprint=fingerprint,
            size=len(content),
            line_count=content.count("\n") + 1,
        )
        logger.debug(f"[CACHE] Stored {file_path} ({self._cache[key].line_count} lines, {len(content)} bytes)")
        return True

    def get_cached_content(self, file_path: str | Path, limit: int | None = None, offset: int | None = None) -> str | None:
        cached = self._cache.get(self._cache_key(file_path, limit, offset))
        if cached and self._clock() - cached.timestamp < self.config.ttl_seconds:
            return cached.content
        return None

    def has_any_cached_content(self, file_path: str | Path) -> bool:
        """True if any live entry (full or windowed) exists for the file."""
        now = self._clock()
        return any(
            now - entry.timestamp < self.config.ttl_seconds
            for key, entry in self._cache.items()
            if self._path_of(key) == self._normalize(file_path)
        )

    def clear_cache(self, file_path: str | Path | None = None) -> int:
        """Drop every entry for one file, or the whole cache. Returns entries removed."""
        if file_path is None:
            removed = len(self._cache)
            self._cache.clear()
        else:
            target = self._normalize(file_path)
            doomed = [key for key in self._cache if self._path_of(key) == target]
            for key in doomed:
                del self._cache[key]
            removed = len(doomed)
        logger.debug(f"[CACHE] Cleared {removed} entries")
        return removed

    def get_cached_files(self) -> list[str]:
        return list(dict.fromkeys(self._path_of(key) for key in self._cache))

    def get_cache_stats(self) -> dict:
        now = self._clock()
        timestamps = [e.timestamp for e in self._cache.values()]
        return {
            "total_files": len(self._cache),
            "total_size": sum(e.size for e in self._cache.values()),
            "average_age": (sum(now - t for t in timestamps) / len(timestamps)) if timestamps else 0.0,
            "oldest_entry": min(timestamps, default=now),
            "newest_entry": max(timestamps, default=0.0),
        }

    def dispose(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    # -- internals -----------------------------------------------------------

    def _evict_oldest_entries(self) -> None:
        count = math.ceil(len(self._cache) * self.config.evict_fraction)
        oldest = sorted(self._cache.items(), key=lambda item: item[1].timestamp)[:count]
        for key, _ in oldest:
            del self._cache[key]
        logger.debug(f"[CACHE] Evicted {count} oldest entries")
        self._emit(EventType.CACHE_EVICTED, {"count": count})

    @staticmethod
    def _is_window(limit: int | None, offset: int | None) -> bool:
        return bool(limit) or bool(offset)

    def _cache_key(self, file_path: str | Path, limit: int | None, offset: int | None) -> str:
        normalized = self._normalize(file_path)
        # offset=0 with no limit is a full read
        if not self._is_window(limit, offset):
            return normalized
        return f"{normalized}::limit={limit or 'none'}::offset={offset or 0}"

    @staticmethod
    def _path_of(key: str) -> str:
        return key.split("::", 1)[0]

    def _resolve(self, file_path: str | Path) -> Path:
        path = Path(file_path)
        return path if path.is_absolute() else self.workspace_root / path

    def _normalize(self, file_path: str | Path) -> str:
        return os.path.normpath(str(self._resolve(file_path)))

    @staticmethod
    def _fingerprint(full_path: Path) -> str:
        stat = full_path.stat()
        return f"{stat.st_mtime_ns}-{stat.st_size}"

    def _emit(self, event_type: EventType, payload: dict) -> None:
        if self.bus:
            self.bus.emit(event_type, "file_tracker", payload)
