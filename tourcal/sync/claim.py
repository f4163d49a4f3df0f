"""
Invitation Claim Protocol

Redeems a publicly readable invite token into ownership of exactly one
CrewMember record in the inviter's shared zone.

Flow:
    LOOKING_UP_INVITATION  public TourInvite by inviteToken
    ACCEPTING_SHARE        accept the zone share (already accepted is fine)
    LOCATING_RESOURCE      shared zones: direct lookup, then query; 5 attempts
    CHECKING_OWNERSHIP     confirmed identity required before reading the owner slot
    CLAIMING               forced write of our identity + timestamps
    DONE                   refresh tours

Terminal failures raise ProtocolError subclasses (NOT_FOUND,
ALREADY_CLAIMED_BY_OTHER, IDENTITY_UNRESOLVED). SessionExpired from the
transport propagates untouched.

Known race: two callers redeeming the same invite concurrently can both pass
CHECKING_OWNERSHIP; the later forced write wins. Accepted for a single
low-contention record at human timescales.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from tourcal.core.config import ClaimSettings
from tourcal.core.exceptions import (
    AlreadyClaimedByOther,
    IdentityUnresolved,
    InvitationNotFound,
    ResourceNotFound,
    SessionExpired,
    TourCalError,
)
from tourcal.core.models import (
    PENDING_IDENTITY,
    ClaimResult,
    ClaimState,
    Invitation,
    Record,
    Session,
    SessionState,
    ZoneRef,
)
from tourcal.sync.records import RecordSyncClient, equals_filter
from tourcal.sync.session_store import SessionStore
from tourcal.sync.tours import TourDirectory

logger = logging.getLogger(__name__)

INVITE_RECORD_TYPE = "TourInvite"
RESOURCE_RECORD_TYPE = "CrewMember"
OWNER_FIELD = "userRecordName"
SESSION_FIELD = "claimSessionID"

ProgressCallback = Callable[[ClaimState, str], None]


def share_short_guid(share_url: str) -> Optional[str]:
    """Last path segment of a share URL, e.g. https://www.icloud.com/share/0abC#Zone -> 0abC."""
    try:
        path = urlsplit(share_url).path
    except ValueError:
        return None
    parts = [p for p in path.split("/") if p]
    return parts[-1] if parts else None


def is_placeholder_owner(owner: Optional[str]) -> bool:
    return not owner or owner == PENDING_IDENTITY


def _now_ms() -> int:
    return int(time.time() * 1000)


class ClaimProtocol:
    """
    Redeems invitations for the signed-in caller.

    Redemptions on one instance run one at a time, so ``state`` is always the
    progress of the current one.
    """

    def __init__(
        self,
        records: RecordSyncClient,
        session: SessionStore,
        tours: Optional[TourDirectory] = None,
        settings: Optional[ClaimSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = _now_ms,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.records = records
        self.session = session
        self.tours = tours
        self.settings = settings or ClaimSettings()
        self._sleep = sleep
        self._clock = clock
        self._on_progress = on_progress
        self.state = ClaimState.LOOKING_UP_INVITATION
        self._reconciled_for: Optional[str] = None
        self._background: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    def _enter(self, state: ClaimState, message: str = "") -> None:
        self.state = state
        logger.info(f"[Claim] {state.value}{': ' + message if message else ''}")
        if self._on_progress is not None:
            self._on_progress(state, message)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(self, token: str) -> ClaimResult:
        """
        Redeem ``token`` into ownership of its CrewMember record.

        Returns:
            ClaimResult; ``already_member`` is True when the slot was already ours.

        Raises:
            InvitationNotFound, ResourceNotFound, AlreadyClaimedByOther,
            IdentityUnresolved, SessionExpired
        """
        async with self._lock:
            return await self._redeem(token)

    async def _redeem(self, token: str) -> ClaimResult:
        if not token:
            self._enter(ClaimState.NOT_FOUND, "empty token")
            raise InvitationNotFound("No invite token was found in the URL.")

        # Start confirming now; we only block on it right before the owner check
        if self.session.state == SessionState.PENDING:
            self.session.schedule_confirmation()

        self._enter(ClaimState.LOOKING_UP_INVITATION, "Looking up your invite...")
        invitation = await self.lookup_invitation(token)
        if invitation is None:
            self._enter(ClaimState.NOT_FOUND, f"no invite for token {token[:6]}...")
            raise InvitationNotFound(context={"token": token})

        self._enter(ClaimState.ACCEPTING_SHARE, f"Joining {invitation.display_tour}...")
        if invitation.share_url:
            await self.accept_share(invitation.share_url)

        self._enter(ClaimState.LOCATING_RESOURCE)
        resource = await self.locate_resource(invitation)
        if resource is None:
            self._enter(ClaimState.NOT_FOUND, "crew member record not visible")
            raise ResourceNotFound(context={"token": token})

        self._enter(ClaimState.CHECKING_OWNERSHIP)
        identity = await self._require_identity()

        owner = resource.get(OWNER_FIELD)
        result = ClaimResult(
            tour_name=invitation.display_tour,
            role_name=invitation.display_role,
            resource_record_name=resource.name,
        )

        if not is_placeholder_owner(owner):
            if owner == identity:
                self._enter(ClaimState.DONE, "already claimed by caller")
                result.already_member = True
                await self._refresh_tours()
                return result
            self._enter(ClaimState.ALREADY_CLAIMED_BY_OTHER)
            raise AlreadyClaimedByOther(context={"record": resource.name})

        self._enter(ClaimState.CLAIMING)
        await self.write_claim(resource, identity)

        self._enter(ClaimState.DONE, result.message)
        await self._refresh_tours()
        return result

    async def lookup_invitation(self, token: str) -> Optional[Invitation]:
        page = await self.records.query(
            INVITE_RECORD_TYPE,
            ZoneRef.public(),
            [equals_filter("inviteToken", token, "STRING")],
        )
        for record in page:
            return Invitation.from_record(record, token)
        return None

    async def accept_share(self, share_url: str) -> bool:
        """
        Accept the zone share behind ``share_url``.

        Failures are logged, not raised: the caller may already be a
        participant, or the share may be publicly writable.
        """
        guid = share_short_guid(share_url)
        if not guid:
            logger.warning(f"[Claim] No short GUID in share URL {share_url!r}")
            return False

        try:
            await self.records.accept_shares([guid])
        except SessionExpired:
            raise
        except TourCalError as e:
            logger.warning(f"[Claim] Share acceptance error (may be OK if already accepted): {e.message}")
            await self._sleep(min(0.5, self.settings.share_propagation_delay))
            return False

        # Zone access propagates asynchronously on the store side
        await self._sleep(self.settings.share_propagation_delay)
        return True

    async def locate_resource(self, invitation: Invitation) -> Optional[Record]:
        attempts = self.settings.locate_attempts
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info(f"[Claim] Retrying shared zone search (attempt {attempt}/{attempts})")
                await self._sleep(self.settings.locate_delay)

            try:
                zones = await self.records.list_shared_zones()
            except SessionExpired:
                raise
            except TourCalError as e:
                logger.warning(f"[Claim] Error listing shared zones: {e.message}")
                continue

            if not zones:
                logger.info(f"[Claim] No shared zones yet (attempt {attempt}/{attempts})")
                continue

            for zone in zones:
                record = await self._find_in_zone(zone, invitation)
                if record is not None:
                    return record

        logger.warning(f"[Claim] Crew member not found after {attempts} attempts")
        return None

    async def _find_in_zone(self, zone: ZoneRef, invitation: Invitation) -> Optional[Record]:
        # Direct lookup first: it does not depend on inviteToken being indexed
        if invitation.resource_record_name:
            try:
                record = await self.records.lookup(zone, invitation.resource_record_name)
            except SessionExpired:
                raise
            except TourCalError as e:
                logger.warning(f"[Claim] Direct lookup in {zone.name} failed: {e.message}")
                record = None
            if record is not None:
                logger.info(f"[Claim] Found crew member via direct lookup in zone {zone.name}")
                return record

        try:
            page = await self.records.query(
                RESOURCE_RECORD_TYPE,
                zone,
                [equals_filter("inviteToken", invitation.token, "STRING")],
            )
        except SessionExpired:
            raise
        except TourCalError as e:
            logger.warning(f"[Claim] Error searching zone {zone.name}: {e.message}")
            return None

        for record in page:
            logger.info(f"[Claim] Found crew member via query in zone {zone.name}")
            return record
        return None

    async def _require_identity(self) -> str:
        if self.session.state == SessionState.NONE:
            raise SessionExpired("Not signed in")

        identity = await self.session.resolve_identity_now()
        if identity is None:
            identity = await self.session.wait_for_identity(
                self.settings.identity_timeout,
                self.settings.identity_poll_interval,
                sleep=self._sleep,
            )
        if is_placeholder_owner(identity):
            self._enter(ClaimState.IDENTITY_UNRESOLVED)
            raise IdentityUnresolved()
        return identity

    async def write_claim(self, resource: Record, identity: str) -> Record:
        """Force our identity into the owner slot. Never called with a placeholder."""
        if is_placeholder_owner(identity):
            raise IdentityUnresolved()

        now = self._clock()
        claim = Record(
            record_type=resource.record_type or RESOURCE_RECORD_TYPE,
            name=resource.name,
            fields={
                OWNER_FIELD: identity,
                "claimedAt": now,
                "updatedAt": now,
                SESSION_FIELD: self.session.session_id,
            },
            field_types={"claimedAt": "TIMESTAMP", "updatedAt": "TIMESTAMP"},
            change_tag=resource.change_tag,
            zone=resource.zone,
        )
        return await self.records.save(claim, force=True)

    async def _refresh_tours(self) -> None:
        if self.tours is None:
            return
        try:
            await self.tours.fetch_tours()
        except TourCalError as e:
            logger.warning(f"[Claim] Error refreshing tours: {e.message}")

    # ------------------------------------------------------------------
    # Placeholder reconciliation
    # ------------------------------------------------------------------

    async def reconcile_placeholder_claims(self) -> int:
        """
        Repair crew members left owned by the pending placeholder.

        Only records whose claimSessionID matches this install's session id
        are touched, so we never adopt someone else's half-finished claim.

        Returns:
            Number of records repaired.
        """
        identity = self.session.identity
        if not identity:
            return 0
        session_id = self.session.session_id

        repaired = 0
        for zone in await self.records.list_shared_zones():
            try:
                page = await self.records.query(
                    RESOURCE_RECORD_TYPE,
                    zone,
                    [
                        equals_filter(OWNER_FIELD, PENDING_IDENTITY, "STRING"),
                        equals_filter(SESSION_FIELD, session_id, "STRING"),
                    ],
                )
            except SessionExpired:
                raise
            except TourCalError as e:
                logger.warning(f"[Claim] Reconcile query in {zone.name} failed: {e.message}")
                continue

            for record in page:
                if record.get(OWNER_FIELD) != PENDING_IDENTITY or record.get(SESSION_FIELD) != session_id:
                    continue
                await self.write_claim(record, identity)
                repaired += 1
                logger.info(f"[Claim] Repaired placeholder owner on {record.name} in {zone.name}")

        return repaired

    def watch_for_confirmation(self) -> Callable[[], None]:
        """
        Run reconciliation once per confirmed identity.

        Returns:
            Unsubscribe handle.
        """

        def on_change(snapshot: Session) -> None:
            if snapshot.state != SessionState.CONFIRMED or snapshot.identity == self._reconciled_for:
                return
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            self._reconciled_for = snapshot.identity
            task = loop.create_task(self._reconcile_quietly())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return self.session.subscribe(on_change)

    async def _reconcile_quietly(self) -> None:
        try:
            count = await self.reconcile_placeholder_claims()
        except TourCalError as e:
            logger.warning(f"[Claim] Placeholder reconciliation failed: {e.message}")
            return
        if count:
            logger.info(f"[Claim] Reconciled {count} placeholder claim(s)")
