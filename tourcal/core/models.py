"""Pydantic models for TourCal sync."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Identity value written by older clients before the caller was confirmed.
# Treated as a tombstone: never written by us, repaired when found.
PENDING_IDENTITY = "_pending_"

PUBLIC_ZONE_NAME = "_defaultZone"

_WIRE_KEYS = {"recordType", "recordName", "recordChangeTag", "fields", "zoneID"}


# =============================================================================
# Enums
# =============================================================================

class Database(str, Enum):
    """CloudKit database scopes."""

    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"


class SessionState(str, Enum):
    """Whether we can currently authenticate, and how sure we are of who we are."""

    NONE = "none"
    PENDING = "pending"
    CONFIRMED = "confirmed"


class ClaimState(str, Enum):
    """Claim protocol progress and terminal states."""

    LOOKING_UP_INVITATION = "looking_up_invitation"
    ACCEPTING_SHARE = "accepting_share"
    LOCATING_RESOURCE = "locating_resource"
    CHECKING_OWNERSHIP = "checking_ownership"
    CLAIMING = "claiming"
    DONE = "done"
    NOT_FOUND = "not_found"
    ALREADY_CLAIMED_BY_OTHER = "already_claimed_by_other"
    IDENTITY_UNRESOLVED = "identity_unresolved"


# =============================================================================
# Session
# =============================================================================

class Session(BaseModel):
    """Snapshot of the single client session."""

    identity: Optional[str] = None
    credential: Optional[str] = None
    persisted_at: Optional[datetime] = None

    @property
    def state(self) -> SessionState:
        if self.credential is None:
            return SessionState.NONE
        if self.identity is None or self.identity == PENDING_IDENTITY:
            return SessionState.PENDING
        return SessionState.CONFIRMED


# =============================================================================
# Records
# =============================================================================

class ZoneRef(BaseModel):
    """A partition of the store: private (owner implicit), shared (owner explicit) or public."""

    model_config = ConfigDict(frozen=True)

    name: str
    owner: Optional[str] = None
    database: Database = Database.PRIVATE

    @classmethod
    def private(cls, name: str) -> "ZoneRef":
        return cls(name=name, database=Database.PRIVATE)

    @classmethod
    def shared(cls, name: str, owner: str) -> "ZoneRef":
        return cls(name=name, owner=owner, database=Database.SHARED)

    @classmethod
    def public(cls) -> "ZoneRef":
        return cls(name=PUBLIC_ZONE_NAME, database=Database.PUBLIC)

    @classmethod
    def from_wire(cls, data: dict[str, Any], database: Database = Database.SHARED) -> "ZoneRef":
        return cls(name=data["zoneName"], owner=data.get("ownerRecordName"), database=database)

    def to_wire(self) -> dict[str, Any]:
        zone = {"zoneName": self.name}
        if self.owner:
            zone["ownerRecordName"] = self.owner
        return zone


class Record(BaseModel):
    """
    A store record with plain field values.

    ``change_tag`` is the concurrency token; None means the record has not
    been created yet. ``field_types`` keeps any CloudKit type hints
    (TIMESTAMP, REFERENCE, ...) so they survive a read-modify-write.
    """

    record_type: str
    name: Optional[str] = None
    fields: dict[str, Any] = Field(default_factory=dict)
    field_types: dict[str, str] = Field(default_factory=dict)
    change_tag: Optional[str] = None
    zone: ZoneRef
    # Top-level wire keys other than the above (share permissions, timestamps)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_new(self) -> bool:
        return self.change_tag is None

    def get(self, field: str, default: Any = None) -> Any:
        value = self.fields.get(field)
        return default if value is None else value

    @classmethod
    def from_wire(cls, data: dict[str, Any], zone: ZoneRef) -> "Record":
        fields: dict[str, Any] = {}
        field_types: dict[str, str] = {}
        for key, wrapped in (data.get("fields") or {}).items():
            if isinstance(wrapped, dict):
                fields[key] = wrapped.get("value")
                if wrapped.get("type"):
                    field_types[key] = wrapped["type"]
            else:
                fields[key] = wrapped
        return cls(
            record_type=data.get("recordType", ""),
            name=data.get("recordName"),
            fields=fields,
            field_types=field_types,
            change_tag=data.get("recordChangeTag"),
            zone=zone,
            attributes={k: v for k, v in data.items() if k not in _WIRE_KEYS},
        )

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "recordType": self.record_type,
            "fields": {},
        }
        for key, value in self.fields.items():
            wrapped = {"value": value}
            if key in self.field_types:
                wrapped["type"] = self.field_types[key]
            wire["fields"][key] = wrapped
        if self.name:
            wire["recordName"] = self.name
        if self.change_tag:
            wire["recordChangeTag"] = self.change_tag
        return wire


class Invitation(BaseModel):
    """Public TourInvite record. Read-only here."""

    token: str
    record_name: Optional[str] = None
    tour_name: Optional[str] = None
    role_name: Optional[str] = None
    share_url: Optional[str] = None
    resource_record_name: Optional[str] = None

    @classmethod
    def from_record(cls, record: Record, token: str) -> "Invitation":
        return cls(
            token=token,
            record_name=record.name,
            tour_name=record.get("tourName"),
            role_name=record.get("roleName"),
            share_url=record.get("shareURL"),
            resource_record_name=record.get("crewMemberRecordName"),
        )

    @property
    def display_tour(self) -> str:
        return self.tour_name or "this tour"

    @property
    def display_role(self) -> str:
        return self.role_name or "Crew"


class Tour(BaseModel):
    """A tour visible to the caller, owned or shared."""

    record_name: str
    name: str = "Untitled Tour"
    color_hex: str = "#007AFF"
    zone: ZoneRef
    is_shared: bool = False
    role: str = "Owner"
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: Record, is_shared: bool) -> "Tour":
        created = record.get("createdAt")
        return cls(
            record_name=record.name or "",
            name=record.get("name", "Untitled Tour"),
            color_hex=record.get("colorHex", "#007AFF"),
            zone=record.zone,
            is_shared=is_shared,
            role="Crew" if is_shared else "Owner",
            created_at=datetime.fromtimestamp(created / 1000, tz=timezone.utc) if created else None,
        )


class ClaimResult(BaseModel):
    """Successful outcome of redeeming an invitation."""

    state: ClaimState = ClaimState.DONE
    tour_name: str
    role_name: str
    already_member: bool = False
    resource_record_name: Optional[str] = None

    @property
    def message(self) -> str:
        if self.already_member:
            return f"You're already in {self.tour_name}."
        return f"Joined {self.tour_name} as {self.role_name}."


# =============================================================================
# Lock schedule
# =============================================================================

def _parse_clock(value: Any) -> Optional[tuple[int, int]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        hour, _, minute = value.partition(":")
        return int(hour), int(minute or 0)
    hour, minute = value
    return int(hour), int(minute)


class LockSchedule(BaseModel):
    """
    Recurring lock window.

    Weekdays use Sunday=0 .. Saturday=6, the numbering stored in
    ``lockScheduleJSON``. An empty ``days_active`` means every day.
    """

    model_config = ConfigDict(frozen=True)

    lock_time: tuple[int, int]
    unlock_time: Optional[tuple[int, int]] = None
    days_active: frozenset[int] = frozenset()

    @field_validator("lock_time", "unlock_time", mode="before")
    @classmethod
    def _coerce_clock(cls, value: Any) -> Optional[tuple[int, int]]:
        return _parse_clock(value)

    @field_validator("lock_time", "unlock_time")
    @classmethod
    def _check_clock(cls, value: Optional[tuple[int, int]]) -> Optional[tuple[int, int]]:
        if value is not None:
            hour, minute = value
            if not (0 <= hour <= 23 and 0 <= minute <= 59):
                raise ValueError(f"Invalid time of day: {hour:02d}:{minute:02d}")
        return value

    @field_validator("days_active")
    @classmethod
    def _check_days(cls, value: frozenset[int]) -> frozenset[int]:
        bad = [d for d in value if not 0 <= d <= 6]
        if bad:
            raise ValueError(f"Weekdays must be 0 (Sunday) to 6 (Saturday), got {sorted(bad)}")
        return value

    @classmethod
    def from_json(cls, raw: str | dict[str, Any] | None) -> Optional["LockSchedule"]:
        """Parse a stored schedule; a missing lockTime means no schedule."""
        if raw is None:
            return None
        data = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(data, dict) or not data.get("lockTime"):
            return None
        return cls(
            lock_time=data["lockTime"],
            unlock_time=data.get("unlockTime"),
            days_active=frozenset(data.get("daysToLock") or []),
        )

    def to_json(self) -> str:
        data: dict[str, Any] = {"lockTime": f"{self.lock_time[0]:02d}:{self.lock_time[1]:02d}"}
        if self.unlock_time is not None:
            data["unlockTime"] = f"{self.unlock_time[0]:02d}:{self.unlock_time[1]:02d}"
        if self.days_active:
            data["daysToLock"] = sorted(self.days_active)
        return json.dumps(data)
