"""
Record Sync Client - typed CRUD over CloudKit records.

Concurrency control is optimistic: every record carries a change tag and
the store rejects writes with a stale one. On a conflict we re-issue the
write exactly once as a forced overwrite with the server's tag (last writer
wins), then give up. No field-level merge is attempted.

Results fetched with a ``cache_key`` are mirrored into the LocalCache and
served from it only when the network call fails outright.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Iterator, Optional, Sequence

from tourcal.core.exceptions import ConflictError, RecordStoreError, TransientTransportError
from tourcal.core.models import Database, Record, ZoneRef
from tourcal.sync.cache import LocalCache
from tourcal.sync.transport import TransportClient

logger = logging.getLogger(__name__)

CONFLICT_CODES = {"CONFLICT", "SERVER_RECORD_CHANGED"}
NOT_FOUND_CODES = {"NOT_FOUND", "UNKNOWN_ITEM"}

DEFAULT_MAX_PAGES = 20


class ConflictPolicy(str, Enum):
    """What save() does when the store reports a stale change tag."""

    FORCE = "force"  # one forced overwrite with the server's tag
    RAISE = "raise"  # surface ConflictError immediately


# =============================================================================
# Query helpers
# =============================================================================

def equals_filter(field_name: str, value: Any, value_type: Optional[str] = None) -> dict[str, Any]:
    field_value: dict[str, Any] = {"value": value}
    if value_type:
        field_value["type"] = value_type
    return {"comparator": "EQUALS", "fieldName": field_name, "fieldValue": field_value}


def reference_filter(field_name: str, record_name: str) -> dict[str, Any]:
    return {
        "comparator": "EQUALS",
        "fieldName": field_name,
        "fieldValue": {"value": {"recordName": record_name, "action": "NONE"}},
    }


def tour_filter(tour_record_name: str) -> dict[str, Any]:
    """Records that reference their tour through a tourID reference field."""
    return reference_filter("tourID", tour_record_name)


def sort_by(field_name: str, ascending: bool = True) -> dict[str, Any]:
    return {"fieldName": field_name, "ascending": ascending}


@dataclass
class RecordPage:
    """
    One page of query results.

    Iterable and finite. ``continuation_marker`` is set when the store has
    more; pass it back to query() to fetch the next page.
    """

    records: list[Record] = field(default_factory=list)
    continuation_marker: Optional[str] = None
    from_cache: bool = False

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    @property
    def has_more(self) -> bool:
        return self.continuation_marker is not None


# =============================================================================
# Client
# =============================================================================

class RecordSyncClient:
    """Query, lookup, save and delete records through a TransportClient."""

    def __init__(
        self,
        transport: TransportClient,
        cache: Optional[LocalCache] = None,
        cache_ttl: Optional[float] = None,
    ):
        self.transport = transport
        self.cache = cache
        self.cache_ttl = cache_ttl

    @staticmethod
    def _path(zone: ZoneRef, operation: str) -> str:
        return f"/{zone.database.value}/records/{operation}"

    @staticmethod
    def _zone_body(zone: ZoneRef) -> dict[str, Any]:
        # The public database only has its default zone; CloudKit infers it
        if zone.database == Database.PUBLIC:
            return {}
        return {"zoneID": zone.to_wire()}

    # ------------------------------------------------------------------
    # Cache mirroring
    # ------------------------------------------------------------------

    def _mirror(self, cache_key: Optional[str], records: Sequence[Record]) -> None:
        if self.cache is None or cache_key is None:
            return
        self.cache.put(cache_key, [r.model_dump(mode="json") for r in records], self.cache_ttl)

    def _cached(self, cache_key: Optional[str]) -> Optional[list[Record]]:
        if self.cache is None or cache_key is None:
            return None
        cached = self.cache.get(cache_key, ignore_expiry=True)
        if cached is None:
            return None
        return [Record.model_validate(item) for item in cached]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query(
        self,
        record_type: str,
        zone: ZoneRef,
        filters: Iterable[dict[str, Any]] = (),
        sort: Iterable[dict[str, Any]] = (),
        *,
        cache_key: Optional[str] = None,
        continuation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> RecordPage:
        """
        Fetch one page of records of ``record_type`` in ``zone``.

        Records that come back carrying a serverErrorCode are skipped.

        Raises:
            TransientTransportError: network failure with nothing cached under cache_key
            SessionExpired: credential rejected (never served from cache)
        """
        query: dict[str, Any] = {"recordType": record_type}
        filters = list(filters)
        sort = list(sort)
        if filters:
            query["filterBy"] = filters
        if sort:
            query["sortBy"] = sort

        body: dict[str, Any] = {**self._zone_body(zone), "query": query}
        if continuation:
            body["continuationMarker"] = continuation
        if limit:
            body["resultsLimit"] = limit

        try:
            data = await self.transport.send_json(self._path(zone, "query"), body)
        except TransientTransportError as e:
            cached = self._cached(cache_key) if continuation is None else None
            if cached is None:
                raise
            logger.warning(f"[Records] Query {record_type} failed ({e.message}), serving cache {cache_key}")
            return RecordPage(records=cached, from_cache=True)

        records = []
        for item in data.get("records") or []:
            if item.get("serverErrorCode"):
                logger.warning(
                    f"[Records] Skipping {record_type} {item.get('recordName')}: {item['serverErrorCode']}"
                )
                continue
            records.append(Record.from_wire(item, zone))

        page = RecordPage(records=records, continuation_marker=data.get("continuationMarker"))
        if continuation is None:
            self._mirror(cache_key, records)
        return page

    async def iter_pages(
        self,
        record_type: str,
        zone: ZoneRef,
        filters: Iterable[dict[str, Any]] = (),
        sort: Iterable[dict[str, Any]] = (),
        *,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> AsyncIterator[RecordPage]:
        """Follow continuation markers lazily, stopping after ``max_pages``."""
        filters = list(filters)
        sort = list(sort)
        marker: Optional[str] = None
        for _ in range(max_pages):
            page = await self.query(record_type, zone, filters, sort, continuation=marker)
            yield page
            if not page.has_more:
                return
            marker = page.continuation_marker
        logger.warning(f"[Records] {record_type} query stopped after {max_pages} pages")

    async def lookup(self, zone: ZoneRef, name: str) -> Optional[Record]:
        """Fetch one record by name. Absent records return None."""
        body = {**self._zone_body(zone), "records": [{"recordName": name}]}
        data = await self.transport.send_json(self._path(zone, "lookup"), body)

        records = data.get("records") or []
        if not records:
            return None
        item = records[0]
        code = item.get("serverErrorCode")
        if code in NOT_FOUND_CODES:
            return None
        if code:
            raise RecordStoreError(
                f"Lookup of {name} failed: {code} {item.get('reason', '')}".strip(),
                server_error_code=code,
                context={"zone": zone.name, "record": name},
            )
        return Record.from_wire(item, zone)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _modify(self, zone: ZoneRef, operation: dict[str, Any]) -> dict[str, Any]:
        body = {**self._zone_body(zone), "operations": [operation]}
        data = await self.transport.send_json(self._path(zone, "modify"), body)
        records = data.get("records") or []
        if not records:
            raise RecordStoreError(f"Modify returned no records: {str(data)[:200]}")
        return records[0]

    async def save(
        self,
        record: Record,
        *,
        force: bool = False,
        cache_key: Optional[str] = None,
        on_conflict: ConflictPolicy = ConflictPolicy.FORCE,
    ) -> Record:
        """
        Create or update ``record``.

        Args:
            record: A record with change_tag None is created; otherwise updated
                carrying its tag.
            force: Write as forceUpdate, ignoring the tag.
            cache_key: Mirror the saved record into the cache under this key.
            on_conflict: FORCE retries once with the server's tag; RAISE does not.

        Returns:
            The saved record with its new change tag.

        Raises:
            ConflictError: conflict under RAISE, or a second conflict after the forced retry
            RecordStoreError: any other per-record failure
        """
        if force:
            operation_type = "forceUpdate"
        else:
            operation_type = "create" if record.is_new else "update"
        operation = {"operationType": operation_type, "record": record.to_wire()}

        result = await self._modify(record.zone, operation)
        code = result.get("serverErrorCode")

        if code in CONFLICT_CODES:
            server_tag = (result.get("serverRecord") or {}).get("recordChangeTag")
            if force or on_conflict == ConflictPolicy.RAISE:
                raise ConflictError(
                    f"Save of {record.name} conflicted",
                    server_change_tag=server_tag,
                    server_error_code=code,
                    context={"record": record.name},
                )

            logger.warning(f"[Records] Conflict saving {record.record_type} {record.name}, retrying with forceUpdate")
            operation["operationType"] = "forceUpdate"
            if server_tag:
                operation["record"]["recordChangeTag"] = server_tag
            result = await self._modify(record.zone, operation)
            code = result.get("serverErrorCode")
            if code in CONFLICT_CODES:
                raise ConflictError(
                    f"Save of {record.name} still conflicted after forced retry",
                    server_change_tag=(result.get("serverRecord") or {}).get("recordChangeTag"),
                    server_error_code=code,
                    context={"record": record.name},
                )

        if code:
            raise RecordStoreError(
                f"Save failed: {code} {result.get('reason', '')}".strip(),
                server_error_code=code,
                context={"record": record.name, "type": record.record_type},
            )

        saved = Record.from_wire(result, record.zone)
        self._mirror(cache_key, [saved])
        return saved

    async def delete(self, zone: ZoneRef, name: str, change_tag: Optional[str] = None) -> None:
        """Delete once. A conflict is surfaced, not retried."""
        wire: dict[str, Any] = {"recordName": name}
        if change_tag:
            wire["recordChangeTag"] = change_tag
        result = await self._modify(zone, {"operationType": "delete", "record": wire})

        code = result.get("serverErrorCode")
        if code in CONFLICT_CODES:
            raise ConflictError(
                f"Delete of {name} conflicted",
                server_change_tag=(result.get("serverRecord") or {}).get("recordChangeTag"),
                server_error_code=code,
                context={"record": name},
            )
        if code:
            raise RecordStoreError(f"Delete failed: {code}", server_error_code=code, context={"record": name})

    # ------------------------------------------------------------------
    # Zones and shares
    # ------------------------------------------------------------------

    async def list_shared_zones(self) -> list[ZoneRef]:
        """Every shared zone the caller has been granted."""
        data = await self.transport.send_json("/shared/zones/list", {})
        zones = []
        for item in data.get("zones") or []:
            zone_id = item.get("zoneID")
            if zone_id and zone_id.get("zoneName"):
                zones.append(ZoneRef.from_wire(zone_id, Database.SHARED))
        return zones

    async def accept_shares(self, short_guids: Sequence[str]) -> list[dict[str, Any]]:
        """
        Accept share invitations by short GUID.

        Returns the per-share results; entries with a serverErrorCode are
        logged, since an already-accepted share reports one too.
        """
        body = {"shortGUIDs": [{"value": guid} for guid in short_guids]}
        data = await self.transport.send_json("/public/records/accept", body)
        results = data.get("results") or data.get("records") or []
        for item in results:
            if item.get("serverErrorCode"):
                logger.info(f"[Records] Share accept reported {item['serverErrorCode']} (may already be accepted)")
        return results
