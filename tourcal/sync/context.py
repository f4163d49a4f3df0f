"""
Sync stack wiring.

Builds one SessionStore -> TransportClient -> RecordSyncClient chain plus the
TourDirectory and ClaimProtocol that sit on top, all from Settings.
"""

import logging
from typing import Optional

import httpx

from tourcal.core.config import Settings, get_settings
from tourcal.core.logging_config import setup_logging
from tourcal.sync.cache import LocalCache
from tourcal.sync.claim import ClaimProtocol
from tourcal.sync.records import RecordSyncClient
from tourcal.sync.session_store import SessionStore
from tourcal.sync.storage import JsonFileKeyValueStore, KeyValueStore
from tourcal.sync.tours import TourDirectory
from tourcal.sync.transport import TransportClient

logger = logging.getLogger(__name__)


class SyncContext:
    """Owns every sync component for one signed-in client."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[KeyValueStore] = None,
        cache: Optional[LocalCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or JsonFileKeyValueStore(self.settings.storage.session_file)
        self.cache = cache or LocalCache(self.settings.cache.directory, self.settings.cache.ttl_seconds)

        self.session = SessionStore(self.storage)
        self.transport = TransportClient(self.session, self.settings, http_client=http_client)
        self.records = RecordSyncClient(self.transport, self.cache, self.settings.cache.ttl_seconds)
        self.tours = TourDirectory(self.records, self.storage, self.settings.cloudkit.zone_name, self.cache)
        self.claims = ClaimProtocol(self.records, self.session, self.tours, self.settings.claim)
        self._unwatch = self.claims.watch_for_confirmation()

        logger.info(
            f"[Sync] Context ready for {self.settings.cloudkit.container} ({self.settings.cloudkit.environment})"
        )

    def start(self, navigation_url: Optional[str] = None) -> Optional[str]:
        """
        Restore the session and warm tours from cache.

        Returns:
            ``navigation_url`` with any one-time credential stripped.
        """
        cleaned = self.session.initialize(navigation_url)
        self.tours.load_cached_tours()
        return cleaned

    async def close(self) -> None:
        self._unwatch()
        await self.transport.close()

    async def __aenter__(self) -> "SyncContext":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()


# Singleton instance
_sync_context: Optional[SyncContext] = None


def get_sync_context() -> SyncContext:
    """Get sync context singleton."""
    global _sync_context
    if _sync_context is None:
        settings = get_settings()
        setup_logging(settings.log_level)
        _sync_context = SyncContext(settings)
    return _sync_context
