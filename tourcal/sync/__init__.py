"""Sync and identity-claim layer for TourCal."""

from tourcal.sync.cache import LocalCache
from tourcal.sync.claim import ClaimProtocol
from tourcal.sync.context import SyncContext, get_sync_context
from tourcal.sync.lock_window import is_locked, is_locked_now, is_sheet_locked
from tourcal.sync.records import ConflictPolicy, RecordPage, RecordSyncClient, equals_filter, sort_by, tour_filter
from tourcal.sync.session_store import SessionStore, extract_redirect_credential
from tourcal.sync.storage import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from tourcal.sync.tours import TourDirectory
from tourcal.sync.transport import TransportClient, backoff_schedule

__all__ = [
    # Session
    "SessionStore",
    "extract_redirect_credential",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "JsonFileKeyValueStore",
    # Transport
    "TransportClient",
    "backoff_schedule",
    # Records
    "RecordSyncClient",
    "RecordPage",
    "ConflictPolicy",
    "equals_filter",
    "sort_by",
    "tour_filter",
    "LocalCache",
    # Tours / claims
    "TourDirectory",
    "ClaimProtocol",
    # Lock windows
    "is_locked",
    "is_locked_now",
    "is_sheet_locked",
    # Wiring
    "SyncContext",
    "get_sync_context",
]
