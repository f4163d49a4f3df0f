"""
Session Store - the single source of truth for "can we authenticate right now".

State machine:
    NONE ──adopt credential──▶ PENDING ──confirmation ok──▶ CONFIRMED
      ▲                          │  ▲                          │
      └──────── invalidate() ────┘  └── confirmation failed ───┘ (stays PENDING)

Confirmation is deferred and best-effort: the caller-identity endpoint rejects
some brand-new accounts with a 4xx even though their credential is fine, so a
failed confirmation never drops us to NONE. Only an authoritative 401 seen by
the transport (or an explicit sign-out) does.
"""

import asyncio
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from tourcal.core.exceptions import TourCalError
from tourcal.core.models import PENDING_IDENTITY, Session, SessionState
from tourcal.sync.storage import KeyValueStore

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "tourcal_ckWebAuthToken"
SESSION_ID_KEY = "tourcal_sessionID"

# Query parameter the identity provider appends to the redirect URL
REDIRECT_TOKEN_PARAM = "ckWebAuthToken"

IdentityConfirmer = Callable[[], Awaitable[str]]
SessionListener = Callable[[Session], None]


def extract_redirect_credential(url: str) -> tuple[Optional[str], str]:
    """
    Pull a one-time credential out of a redirect URL.

    Looks in the query string and in a query-style fragment
    (``#/tours?ckWebAuthToken=...``). Returns the token (or None) and the URL
    with the parameter removed.
    """
    parts = urlsplit(url)
    token = None

    query = parse_qsl(parts.query, keep_blank_values=True)
    kept_query = []
    for key, value in query:
        if key == REDIRECT_TOKEN_PARAM and value:
            token = token or value
        elif key != REDIRECT_TOKEN_PARAM:
            kept_query.append((key, value))

    fragment = parts.fragment
    if "?" in fragment:
        route, _, frag_query = fragment.partition("?")
        kept_frag = []
        for key, value in parse_qsl(frag_query, keep_blank_values=True):
            if key == REDIRECT_TOKEN_PARAM and value:
                token = token or value
            elif key != REDIRECT_TOKEN_PARAM:
                kept_frag.append((key, value))
        fragment = f"{route}?{urlencode(kept_frag)}" if kept_frag else route

    cleaned = urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(kept_query), fragment))
    return token, cleaned


class SessionStore:
    """
    Owns the one session of a running client.

    All mutation goes through adopt_credential(), confirm_identity(),
    invalidate() and sign_out(). Other components read the state and
    subscribe() to hear about transitions.
    """

    def __init__(self, storage: KeyValueStore, confirmer: Optional[IdentityConfirmer] = None):
        self._storage = storage
        self._confirmer = confirmer
        self._identity: Optional[str] = None
        self._credential: Optional[str] = None
        self._persisted_at: Optional[datetime] = None
        self._listeners: list[SessionListener] = []
        self._confirm_task: Optional[asyncio.Task] = None
        self._notifying = False
        self._renotify = False

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return Session(
            identity=self._identity,
            credential=self._credential,
            persisted_at=self._persisted_at,
        )

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    @property
    def identity(self) -> Optional[str]:
        """Confirmed caller id, or None while pending or signed out."""
        if self.state == SessionState.CONFIRMED:
            return self._identity
        return None

    @property
    def session_id(self) -> str:
        """Auxiliary id for this install, created on first use and persisted."""
        value = self._storage.get(SESSION_ID_KEY)
        if not value:
            value = uuid.uuid4().hex
            self._storage.set(SESSION_ID_KEY, value)
        return value

    def bind_confirmer(self, confirmer: IdentityConfirmer) -> None:
        """Install the coroutine that asks the store who owns our credential."""
        self._confirmer = confirmer

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def initialize(self, navigation_url: Optional[str] = None) -> Optional[str]:
        """
        Establish the starting state.

        A credential delivered on the redirect URL wins over a persisted one.
        Either way the session starts PENDING and confirmation is scheduled in
        the background.

        Returns:
            The navigation URL with the one-time credential stripped, so a
            reload does not process it again. None if no URL was given.
        """
        cleaned = navigation_url
        token = None
        if navigation_url:
            token, cleaned = extract_redirect_credential(navigation_url)

        # Touch once so the id exists before any claim can reference it
        _ = self.session_id

        if token:
            logger.info("[Session] Adopting credential delivered on redirect")
            self.adopt_credential(token)
        else:
            persisted = self._storage.get(CREDENTIAL_KEY)
            if persisted:
                logger.info("[Session] Restored persisted credential (pending confirmation)")
                self.adopt_credential(persisted, persist=False)
            else:
                logger.info("[Session] No credential available, signed out")

        if self.state == SessionState.PENDING:
            self.schedule_confirmation()
        return cleaned

    def adopt_credential(self, credential: str, persist: bool = True) -> None:
        """Trust a credential provisionally. Identity is unknown until confirmed."""
        self._credential = credential
        self._identity = None
        if persist:
            self._storage.set(CREDENTIAL_KEY, credential)
        self._persisted_at = datetime.now(timezone.utc)
        self._notify()

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def schedule_confirmation(self) -> Optional[asyncio.Task]:
        """Start resolve_identity_now() in the background if a loop is running."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("[Session] No running loop, confirmation deferred to first call")
            return None
        if self._confirm_task is not None and not self._confirm_task.done():
            return self._confirm_task
        self._confirm_task = loop.create_task(self._confirm())
        return self._confirm_task

    async def resolve_identity_now(self) -> Optional[str]:
        """
        Confirm PENDING → CONFIRMED. Idempotent; concurrent callers share one request.

        Returns:
            The confirmed identity, or None if signed out or confirmation failed.
        """
        if self.state == SessionState.NONE:
            return None
        if self.state == SessionState.CONFIRMED:
            return self._identity

        if self._confirm_task is None or self._confirm_task.done():
            self._confirm_task = asyncio.get_running_loop().create_task(self._confirm())
        # shield: one caller being cancelled must not cancel the shared request
        return await asyncio.shield(self._confirm_task)

    async def _confirm(self) -> Optional[str]:
        if self._confirmer is None:
            logger.warning("[Session] No identity confirmer bound, staying pending")
            return None

        credential = self._credential
        try:
            identity = await self._confirmer()
        except TourCalError as e:
            logger.info(f"[Session] Identity confirmation failed, staying pending: {e.message}")
            return None

        if self._credential != credential or credential is None:
            logger.info("[Session] Credential changed during confirmation, discarding result")
            return None
        if not identity or identity == PENDING_IDENTITY:
            logger.info("[Session] Confirmation returned no usable identity, staying pending")
            return None

        self.confirm_identity(identity)
        return identity

    def confirm_identity(self, identity: str) -> None:
        """Record the caller's confirmed identity."""
        if self._credential is None:
            logger.warning("[Session] Ignoring identity confirmation while signed out")
            return
        if identity == self._identity:
            return
        self._identity = identity
        logger.info(f"[Session] Identity confirmed: {identity}")
        self._notify()

    async def wait_for_identity(
        self,
        timeout: float,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Optional[str]:
        """
        Keep confirming until the identity is known or ``timeout`` elapses.

        Each poll retries resolve_identity_now(), which shares any request
        already in flight.

        Returns:
            Confirmed identity, or None if still pending (or signed out).
        """
        polls = max(0, math.ceil(timeout / poll_interval)) if poll_interval > 0 else 0
        for _ in range(polls):
            if self.state != SessionState.PENDING:
                break
            await sleep(poll_interval)
            if self.state == SessionState.PENDING:
                await self.resolve_identity_now()
        return self.identity

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def invalidate(self, reason: str = "unauthenticated") -> None:
        """Drop to NONE and forget the persisted credential."""
        had_session = self._credential is not None
        self._credential = None
        self._identity = None
        self._persisted_at = None
        self._storage.remove(CREDENTIAL_KEY)
        if had_session:
            logger.warning(f"[Session] Session invalidated ({reason})")
            self._notify()

    def sign_out(self) -> None:
        self.invalidate(reason="sign-out")

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register for state transitions.

        Returns:
            A function that removes the listener; calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        # A listener that changes state mid fan-out gets a fresh fan-out
        # after the current one finishes, never a nested one.
        if self._notifying:
            self._renotify = True
            return

        self._notifying = True
        try:
            while True:
                self._renotify = False
                snapshot = self.session
                for listener in list(self._listeners):
                    try:
                        listener(snapshot)
                    except Exception:
                        logger.exception("[Session] Listener failed")
                if not self._renotify:
                    break
        finally:
            self._notifying = False
