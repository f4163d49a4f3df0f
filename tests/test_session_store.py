"""
Unit tests for the Session Store.

Tests tourcal/sync/session_store.py
"""

import asyncio

import httpx
import pytest

from tourcal.core.exceptions import IdentityConfirmationError
from tourcal.core.models import SessionState
from tourcal.sync.session_store import (
    CREDENTIAL_KEY,
    SESSION_ID_KEY,
    SessionStore,
    extract_redirect_credential,
)
from tourcal.sync.storage import JsonFileKeyValueStore, MemoryKeyValueStore

CALLER = "_user_me"


class TestRedirectCredential:
    """Test one-time credential extraction."""

    def test_query_string(self):
        token, cleaned = extract_redirect_credential("https://app.example/tours?ckWebAuthToken=XYZ&view=list")
        assert token == "XYZ"
        assert cleaned == "https://app.example/tours?view=list"

    def test_fragment_route(self):
        token, cleaned = extract_redirect_credential("https://app.example/#/invite?token=abc&ckWebAuthToken=XYZ")
        assert token == "XYZ"
        assert cleaned == "https://app.example/#/invite?token=abc"

    def test_no_token(self):
        token, cleaned = extract_redirect_credential("https://app.example/#/tours")
        assert token is None
        assert cleaned == "https://app.example/#/tours"


class TestInitialize:
    """Test startup state."""

    def test_redirect_credential_adopted_and_stripped(self):
        storage = MemoryKeyValueStore()
        store = SessionStore(storage)

        cleaned = store.initialize("https://app.example/?ckWebAuthToken=fresh")

        assert store.state == SessionState.PENDING
        assert store.credential == "fresh"
        assert storage.get(CREDENTIAL_KEY) == "fresh"
        assert "ckWebAuthToken" not in cleaned

    def test_persisted_credential_restored_as_pending(self):
        storage = MemoryKeyValueStore({CREDENTIAL_KEY: "saved"})
        store = SessionStore(storage)

        store.initialize()

        assert store.state == SessionState.PENDING
        assert store.credential == "saved"
        assert store.identity is None

    def test_redirect_wins_over_persisted(self):
        storage = MemoryKeyValueStore({CREDENTIAL_KEY: "saved"})
        store = SessionStore(storage)

        store.initialize("https://app.example/?ckWebAuthToken=fresh")

        assert store.credential == "fresh"
        assert storage.get(CREDENTIAL_KEY) == "fresh"

    def test_nothing_available(self):
        store = SessionStore(MemoryKeyValueStore())
        store.initialize()
        assert store.state == SessionState.NONE

    def test_session_id_created_once(self):
        storage = MemoryKeyValueStore()
        store = SessionStore(storage)
        store.initialize()

        first = store.session_id
        assert storage.get(SESSION_ID_KEY) == first
        assert store.session_id == first


class TestInvalidate:
    """Test the transition to NONE."""

    def test_invalidate_clears_persisted_credential(self):
        storage = MemoryKeyValueStore({CREDENTIAL_KEY: "saved"})
        store = SessionStore(storage)
        store.initialize()
        store.confirm_identity(CALLER)
        seen = []
        store.subscribe(seen.append)

        store.invalidate()

        assert store.state == SessionState.NONE
        assert store.credential is None
        assert store.identity is None
        assert CREDENTIAL_KEY not in storage.snapshot()
        assert [s.state for s in seen] == [SessionState.NONE]

    def test_invalidate_when_signed_out_does_not_notify(self):
        store = SessionStore(MemoryKeyValueStore())
        seen = []
        store.subscribe(seen.append)

        store.invalidate()

        assert seen == []

    def test_sign_out_on_file_store(self, tmp_path):
        path = tmp_path / "session.json"
        store = SessionStore(JsonFileKeyValueStore(path))
        store.adopt_credential("cred")
        store.sign_out()

        reloaded = JsonFileKeyValueStore(path)
        assert reloaded.get(CREDENTIAL_KEY) is None


class TestListeners:
    """Test pub/sub."""

    def test_unsubscribe(self):
        store = SessionStore(MemoryKeyValueStore())
        seen = []
        unsubscribe = store.subscribe(seen.append)

        store.adopt_credential("a")
        unsubscribe()
        unsubscribe()
        store.adopt_credential("b")

        assert len(seen) == 1

    def test_listener_transition_is_not_nested(self):
        store = SessionStore(MemoryKeyValueStore())
        states = []

        def listener(snapshot):
            states.append(snapshot.state)
            if snapshot.state == SessionState.PENDING:
                store.invalidate()

        store.subscribe(listener)
        store.adopt_credential("a")

        assert states == [SessionState.PENDING, SessionState.NONE]

    def test_failing_listener_does_not_block_others(self):
        store = SessionStore(MemoryKeyValueStore())
        seen = []

        def broken(_snapshot):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(seen.append)
        store.adopt_credential("a")

        assert len(seen) == 1


class TestResolveIdentity:
    """Test confirmation PENDING -> CONFIRMED."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_request(self, make_stack):
        stack = make_stack()

        results = await asyncio.gather(*[stack.session.resolve_identity_now() for _ in range(5)])

        assert results == [CALLER] * 5
        assert len(stack.store.calls("/public/users/caller")) == 1
        assert stack.session.state == SessionState.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirmation_failure_stays_pending(self, make_stack):
        stack = make_stack()
        stack.store.caller_status = 400

        identity = await stack.session.resolve_identity_now()

        assert identity is None
        assert stack.session.state == SessionState.PENDING
        assert stack.session.credential == "cred-1"

    @pytest.mark.asyncio
    async def test_confirmed_returns_without_request(self, make_stack):
        stack = make_stack(identity=CALLER)

        assert await stack.session.resolve_identity_now() == CALLER
        assert stack.store.calls("/public/users/caller") == []

    @pytest.mark.asyncio
    async def test_signed_out_returns_none(self):
        store = SessionStore(MemoryKeyValueStore())
        assert await store.resolve_identity_now() is None

    @pytest.mark.asyncio
    async def test_credential_swap_discards_stale_result(self):
        store = SessionStore(MemoryKeyValueStore())
        store.adopt_credential("old")

        async def confirmer():
            store.adopt_credential("new")
            return "_someone"

        store.bind_confirmer(confirmer)
        assert await store.resolve_identity_now() is None
        assert store.state == SessionState.PENDING

    @pytest.mark.asyncio
    async def test_confirmer_errors_are_swallowed(self):
        store = SessionStore(MemoryKeyValueStore())
        store.adopt_credential("cred")

        async def confirmer():
            raise IdentityConfirmationError("caller lookup 400", status_code=400)

        store.bind_confirmer(confirmer)
        assert await store.resolve_identity_now() is None
        assert store.state == SessionState.PENDING

    @pytest.mark.asyncio
    async def test_wait_for_identity_is_bounded(self, fake_sleep):
        store = SessionStore(MemoryKeyValueStore())
        store.adopt_credential("cred")

        identity = await store.wait_for_identity(5.0, 0.5, sleep=fake_sleep)

        assert identity is None
        assert fake_sleep.delays == [0.5] * 10

    @pytest.mark.asyncio
    async def test_wait_for_identity_retries_confirmation(self, make_stack):
        stack = make_stack()
        stack.store.script(
            "/public/users/caller",
            httpx.Response(400, json={"serverErrorCode": "BAD_REQUEST"}),
            httpx.Response(400, json={"serverErrorCode": "BAD_REQUEST"}),
        )

        identity = await stack.session.wait_for_identity(5.0, 0.5, sleep=stack.sleep)

        assert identity == CALLER
        assert len(stack.store.calls("/public/users/caller")) == 3
        assert stack.sleep.delays == [0.5] * 3

    @pytest.mark.asyncio
    async def test_non_json_caller_body_stays_pending(self, make_stack):
        stack = make_stack()
        stack.store.script("/public/users/caller", httpx.Response(200, text="<html>maintenance</html>"))

        assert await stack.session.resolve_identity_now() is None
        assert stack.session.state == SessionState.PENDING
