"""
Local fallback cache with per-entry TTL.

Consulted only when the network call fails outright; a reachable store is
always the source of truth. Entries live in memory and, when a directory is
given, in one JSON file so they survive restarts.

Cache Structure:
    .tourcal/cache/
    └── cache.json      # {key: {"value": ..., "timestamp": ..., "expires": ...}}
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
CACHE_FILE_NAME = "cache.json"


class LocalCache:
    """Keyed TTL store: put(key, value, ttl) / get(key, ignore_expiry)."""

    def __init__(
        self,
        directory: Optional[Path] = None,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory) if directory else None
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self.directory / CACHE_FILE_NAME if self.directory else None

    def _load(self) -> dict[str, dict[str, Any]]:
        path = self.path
        if path is None or not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"[Cache] Discarding unreadable cache {path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _flush(self) -> None:
        path = self.path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._entries), encoding="utf-8")
            tmp.replace(path)
        except (OSError, TypeError) as e:
            # The cache is a fallback; failing to persist it only costs offline reads
            logger.warning(f"[Cache] Could not persist cache: {e}")

    def put(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        self._entries[key] = {
            "value": value,
            "timestamp": now,
            "expires": now + (self.default_ttl if ttl is None else ttl),
        }
        self._flush()

    def get(self, key: str, ignore_expiry: bool = False) -> Any:
        """Return the cached value, or None if absent or (unless ignore_expiry) stale."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not ignore_expiry and entry["expires"] < self._clock():
            return None
        return entry["value"]

    def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._flush()

    def clear(self) -> None:
        self._entries.clear()
        self._flush()
