"""
Pytest fixtures for sync layer tests.

FakeCloudKit stands in for CloudKit Web Services behind httpx.MockTransport,
so the real TransportClient / RecordSyncClient code paths run end to end.
Sleeps are recorded instead of awaited.
"""

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tourcal.core.config import CloudKitSettings, Settings  # noqa: E402
from tourcal.sync.records import RecordSyncClient  # noqa: E402
from tourcal.sync.session_store import SessionStore  # noqa: E402
from tourcal.sync.storage import MemoryKeyValueStore  # noqa: E402
from tourcal.sync.transport import TransportClient  # noqa: E402

CALLER = "_user_me"


class RecordingSleep:
    """Async sleep replacement that only records the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeCloudKit:
    """In-memory CloudKit: records keyed by (database, zone, recordName)."""

    def __init__(self):
        self.caller = CALLER
        self.caller_status = 200
        self.records: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.shared_zones: list[dict[str, str]] = []
        # Listings that come back empty before shared zones become visible
        self.hidden_zone_listings = 0
        self.requests: list[tuple[str, dict[str, Any], dict[str, str]]] = []
        self.writes: list[tuple[str, str]] = []
        self.accepted: list[str] = []
        # path -> queued httpx.Response or exception, consumed before normal routing
        self.scripted: dict[str, list[Any]] = {}
        self._tag = 0

    # --- seeding -------------------------------------------------------

    def _next_tag(self) -> str:
        self._tag += 1
        return f"tag-{self._tag}"

    def add_record(
        self,
        database: str,
        zone: str,
        record_type: str,
        name: str,
        fields: dict[str, Any],
        **attributes: Any,
    ) -> dict[str, Any]:
        wire = {
            "recordName": name,
            "recordType": record_type,
            "recordChangeTag": self._next_tag(),
            "fields": {key: {"value": value} for key, value in fields.items()},
            **attributes,
        }
        self.records[(database, zone, name)] = wire
        return wire

    def add_shared_zone(self, zone: str, owner: str = "_owner") -> None:
        self.shared_zones.append({"zoneName": zone, "ownerRecordName": owner})

    def field(self, database: str, zone: str, name: str, field_name: str) -> Any:
        wrapped = self.records[(database, zone, name)]["fields"].get(field_name)
        return wrapped["value"] if wrapped else None

    def calls(self, path: str) -> list[dict[str, Any]]:
        return [body for p, body, _ in self.requests if p == path]

    def script(self, path: str, *items: Any) -> None:
        self.scripted.setdefault(path, []).extend(items)

    # --- transport -----------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        # /database/1/<container>/<environment>/<db>/...
        parts = request.url.path.split("/")
        path = "/" + "/".join(parts[5:])
        body = json.loads(request.content or b"{}")
        self.requests.append((path, body, dict(request.url.params)))

        queued = self.scripted.get(path)
        if queued:
            item = queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        if path == "/public/users/caller":
            if self.caller_status != 200:
                return httpx.Response(self.caller_status, json={"serverErrorCode": "BAD_REQUEST"})
            return httpx.Response(200, json={"userRecordName": self.caller})
        if path == "/shared/zones/list":
            if self.hidden_zone_listings > 0:
                self.hidden_zone_listings -= 1
                return httpx.Response(200, json={"zones": []})
            return httpx.Response(200, json={"zones": [{"zoneID": dict(z)} for z in self.shared_zones]})
        if path == "/public/records/accept":
            guids = [item["value"] for item in body.get("shortGUIDs", [])]
            self.accepted.extend(guids)
            return httpx.Response(200, json={"results": [{"shortGUID": g} for g in guids]})

        database, _, operation = parts[5], parts[6], parts[7]
        zone = (body.get("zoneID") or {}).get("zoneName", "_defaultZone")
        if operation == "query":
            return httpx.Response(200, json=self._query(database, zone, body["query"]))
        if operation == "lookup":
            return httpx.Response(200, json=self._lookup(database, zone, body["records"]))
        if operation == "modify":
            return httpx.Response(200, json=self._modify(database, zone, body["operations"]))
        return httpx.Response(404, json={"serverErrorCode": "NOT_FOUND"})

    def _query(self, database: str, zone: str, query: dict[str, Any]) -> dict[str, Any]:
        matches = []
        for (db, z, _), wire in self.records.items():
            if db != database or z != zone or wire["recordType"] != query["recordType"]:
                continue
            ok = True
            for f in query.get("filterBy", []):
                wrapped = wire["fields"].get(f["fieldName"])
                if (wrapped or {}).get("value") != f["fieldValue"]["value"]:
                    ok = False
            if ok:
                matches.append(wire)
        return {"records": matches}

    def _lookup(self, database: str, zone: str, wanted: list[dict[str, Any]]) -> dict[str, Any]:
        found = []
        for item in wanted:
            wire = self.records.get((database, zone, item["recordName"]))
            found.append(wire or {"recordName": item["recordName"], "serverErrorCode": "NOT_FOUND"})
        return {"records": found}

    def _modify(self, database: str, zone: str, operations: list[dict[str, Any]]) -> dict[str, Any]:
        results = []
        for op in operations:
            kind = op["operationType"]
            wire = op["record"]
            name = wire.get("recordName") or f"rec-{len(self.records) + 1}"
            key = (database, zone, name)
            stored = self.records.get(key)
            self.writes.append((kind, name))

            if kind == "delete":
                self.records.pop(key, None)
                results.append({"recordName": name, "deleted": True})
                continue

            if kind == "update" and stored and stored["recordChangeTag"] != wire.get("recordChangeTag"):
                results.append({"recordName": name, "serverErrorCode": "CONFLICT", "serverRecord": stored})
                continue

            merged = dict(stored or {"recordName": name, "recordType": wire["recordType"], "fields": {}})
            merged["fields"] = {**merged.get("fields", {}), **wire.get("fields", {})}
            merged["recordChangeTag"] = self._next_tag()
            self.records[key] = merged
            results.append(merged)
        return {"records": results}


@dataclass
class SyncStack:
    store: FakeCloudKit
    sleep: RecordingSleep
    storage: MemoryKeyValueStore
    session: SessionStore
    transport: TransportClient
    records: RecordSyncClient
    settings: Settings


@pytest.fixture
def settings():
    """Settings pointed at a test container."""
    return Settings(
        cloudkit=CloudKitSettings(
            container="iCloud.com.example.tourcal",
            environment="development",
            api_token="test-api-token",
        )
    )


@pytest.fixture
def fake_store():
    return FakeCloudKit()


@pytest.fixture
def fake_sleep():
    return RecordingSleep()


@pytest.fixture
def make_stack(fake_store, fake_sleep, settings):
    """Factory for a session/transport/records chain over the fake store."""

    def _make(credential: Optional[str] = "cred-1", identity: Optional[str] = None, cache=None) -> SyncStack:
        storage = MemoryKeyValueStore()
        session = SessionStore(storage)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_store.handler))
        transport = TransportClient(session, settings, http_client=http_client, sleep=fake_sleep)
        if credential:
            session.adopt_credential(credential)
        if identity:
            session.confirm_identity(identity)
        records = RecordSyncClient(transport, cache)
        return SyncStack(fake_store, fake_sleep, storage, session, transport, records, settings)

    return _make
