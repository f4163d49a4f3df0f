"""
Tour directory - the bulk "which tours can I see" read.

Tours come from the caller's private zone plus every shared zone they have
accepted. The read is deduplicated: concurrent fetch_tours() callers await
one in-flight task instead of issuing N identical sweeps.
"""

import asyncio
import logging
from typing import Callable, Optional

from tourcal.core.exceptions import SessionExpired, TourCalError
from tourcal.core.models import Tour, ZoneRef
from tourcal.sync.cache import LocalCache
from tourcal.sync.records import RecordSyncClient
from tourcal.sync.storage import KeyValueStore

logger = logging.getLogger(__name__)

TOURS_CACHE_KEY = "tours"
ACTIVE_TOUR_KEY = "tourcal_activeTourId"

TourListener = Callable[[Optional[Tour]], None]


class TourDirectory:
    """Fetches, caches and remembers the active tour."""

    def __init__(
        self,
        records: RecordSyncClient,
        storage: KeyValueStore,
        zone_name: str = "TourCalZone",
        cache: Optional[LocalCache] = None,
    ):
        self.records = records
        self.storage = storage
        self.zone_name = zone_name
        self.cache = cache
        self._tours: list[Tour] = []
        self._active: Optional[Tour] = None
        self._listeners: list[TourListener] = []
        self._inflight: Optional[asyncio.Task] = None

    @property
    def tours(self) -> list[Tour]:
        return list(self._tours)

    @property
    def active_tour(self) -> Optional[Tour]:
        return self._active

    def set_active_tour(self, tour: Optional[Tour]) -> None:
        self._active = tour
        if tour is not None:
            self.storage.set(ACTIVE_TOUR_KEY, tour.record_name)
        self._notify()

    def subscribe(self, listener: TourListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._active)
            except Exception:
                logger.exception("[Tours] Listener failed")

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    async def fetch_tours(self) -> list[Tour]:
        """Refresh the tour list. Concurrent callers share one request."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.get_running_loop().create_task(self._fetch_tours())
        return await asyncio.shield(self._inflight)

    async def _fetch_tours(self) -> list[Tour]:
        tours: list[Tour] = []
        private_ok = False
        shared_ok = False

        try:
            tours.extend(await self._fetch_private_tours())
            private_ok = True
        except SessionExpired:
            raise
        except TourCalError as e:
            logger.warning(f"[Tours] Error fetching private tours: {e.message}")

        try:
            tours.extend(await self._fetch_shared_tours())
            shared_ok = True
        except SessionExpired:
            raise
        except TourCalError as e:
            logger.warning(f"[Tours] Error fetching shared tours: {e.message}")

        if not private_ok and not shared_ok:
            logger.warning("[Tours] Both tour reads failed, keeping the last known list")
            return self.load_cached_tours()

        self._tours = sorted(tours, key=lambda t: t.name or "")
        # Only a sweep that includes the private read replaces the cached list
        if self.cache is not None and private_ok:
            self.cache.put(TOURS_CACHE_KEY, [t.model_dump(mode="json") for t in self._tours])
        self._restore_active()
        logger.info(f"[Tours] Loaded {len(self._tours)} tour(s)")
        return self.tours

    async def _fetch_private_tours(self) -> list[Tour]:
        page = await self.records.query("Tour", ZoneRef.private(self.zone_name))
        return [Tour.from_record(record, is_shared=False) for record in page]

    async def _fetch_shared_tours(self) -> list[Tour]:
        tours = []
        for zone in await self.records.list_shared_zones():
            try:
                page = await self.records.query("Tour", zone)
            except SessionExpired:
                raise
            except TourCalError as e:
                logger.warning(f"[Tours] Error querying zone {zone.name}: {e.message}")
                continue

            role = None
            for record in page:
                if role is None:
                    role = await self.detect_role(zone)
                tour = Tour.from_record(record, is_shared=True)
                tour.role = role
                tours.append(tour)
        return tours

    async def detect_role(self, zone: ZoneRef) -> str:
        """
        Role of the caller in a shared zone, read from the zone's share record.

        Newer shares carry an explicit tourRole; older ones fall back to the
        participant permission (READ_WRITE is Admin, anything else Crew).
        """
        try:
            share = await self.records.lookup(zone, f"cloudkit.share.{zone.name}")
        except SessionExpired:
            raise
        except TourCalError as e:
            logger.warning(f"[Tours] Error detecting role in {zone.name}: {e.message}")
            return "Crew"

        if share is None:
            return "Crew"
        role = share.get("tourRole")
        if role:
            return role
        if share.attributes.get("publicPermission") == "READ_WRITE":
            return "Admin"
        participant = share.attributes.get("currentUserParticipant") or {}
        if isinstance(participant, dict) and participant.get("permission") == "READ_WRITE":
            return "Admin"
        return "Crew"

    # ------------------------------------------------------------------
    # Cache / active tour
    # ------------------------------------------------------------------

    def _restore_active(self) -> None:
        saved_id = self.storage.get(ACTIVE_TOUR_KEY)
        if not saved_id:
            return
        for tour in self._tours:
            if tour.record_name == saved_id:
                self._active = tour
                self._notify()
                return

    def load_cached_tours(self) -> list[Tour]:
        """Populate from the cache (ignoring expiry) before the first fetch."""
        if self.cache is None:
            return self.tours
        cached = self.cache.get(TOURS_CACHE_KEY, ignore_expiry=True)
        if cached:
            self._tours = [Tour.model_validate(item) for item in cached]
            saved_id = self.storage.get(ACTIVE_TOUR_KEY)
            self._active = next((t for t in self._tours if t.record_name == saved_id), None)
        return self.tours
