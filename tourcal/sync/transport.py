"""
Authenticated HTTP transport to CloudKit Web Services.

The one place that knows about retry policy:
- 421 Misdirected Request is transient (the store occasionally routes a
  request to the wrong partition). Retried with doubling backoff, bounded.
- 401 is authoritative: the session is invalidated and SessionExpired raised.
- Everything else goes back to the caller untouched.

Higher layers must not add their own retries for these classes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from tourcal.core.config import CloudKitSettings, RetrySettings, Settings, get_settings
from tourcal.core.exceptions import (
    IdentityConfirmationError,
    NetworkUnavailableError,
    RecordStoreError,
    SessionExpired,
    TransientTransportError,
)
from tourcal.core.models import SessionState
from tourcal.sync.session_store import SessionStore

logger = logging.getLogger(__name__)

STATUS_MISDIRECTED = 421
STATUS_UNAUTHENTICATED = 401

CALLER_IDENTITY_PATH = "/public/users/caller"

Sleep = Callable[[float], Awaitable[None]]


def backoff_schedule(retry: RetrySettings) -> list[float]:
    """Delays slept between attempts: initial, doubling, capped. One fewer than attempts."""
    delays = []
    delay = retry.initial_delay
    for _ in range(max(0, retry.max_attempts - 1)):
        delays.append(min(delay, retry.max_delay))
        delay *= 2
    return delays


class TransportClient:
    """Async client for one CloudKit container, bound to a SessionStore."""

    def __init__(
        self,
        session: SessionStore,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.session = session
        self._sleep = sleep
        self._client = http_client
        self._owns_client = http_client is None
        self._confirmation_scheduled = False
        self._background: set[asyncio.Task] = set()

        session.bind_confirmer(self.fetch_caller_identity)
        session.subscribe(self._on_session_change)

    @property
    def cloudkit(self) -> CloudKitSettings:
        return self.settings.cloudkit

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.cloudkit.timeout, connect=10.0),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client if we created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "TransportClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _on_session_change(self, snapshot) -> None:
        # A new pending period gets its own one-shot opportunistic confirmation
        if snapshot.state != SessionState.CONFIRMED:
            self._confirmation_scheduled = False

    def _params(self) -> dict[str, str]:
        params = {"ckAPIToken": self.cloudkit.api_token}
        credential = self.session.credential
        if credential:
            params["ckWebAuthToken"] = credential
        return params

    async def send(
        self,
        path: str,
        body: Optional[dict[str, Any]] = None,
        *,
        authenticated: bool = True,
    ) -> httpx.Response:
        """
        POST one JSON request, retrying only misdirected responses.

        Args:
            path: Path below the container root, e.g. "/private/records/query"
            body: JSON body (an empty object if None)
            authenticated: If False a 401 is returned to the caller instead of
                invalidating the session. Only the identity confirmation call
                uses this.

        Returns:
            The response for any status other than 421/401.

        Raises:
            TransientTransportError: 421 on every attempt
            NetworkUnavailableError: the request could not be delivered
            SessionExpired: 401 on an authenticated call
        """
        client = await self._get_client()
        url = f"{self.cloudkit.database_url}{path}"
        delays = backoff_schedule(self.settings.retry)
        attempts = len(delays) + 1

        for attempt in range(1, attempts + 1):
            try:
                response = await client.post(url, params=self._params(), json=body or {})
            except httpx.RequestError as e:
                logger.warning(f"[Transport] {path} failed to send: {e!r}")
                raise NetworkUnavailableError(
                    f"Request to {path} failed: {e}",
                    attempts=attempt,
                    context={"path": path},
                ) from e

            if response.status_code == STATUS_MISDIRECTED:
                if attempt < attempts:
                    delay = delays[attempt - 1]
                    logger.info(
                        f"[Transport] {path} misdirected (attempt {attempt}/{attempts}), "
                        f"retrying in {delay:.2f}s"
                    )
                    await self._sleep(delay)
                    continue
                logger.error(f"[Transport] {path} still misdirected after {attempts} attempts")
                raise TransientTransportError(
                    f"{path} misdirected after {attempts} attempts",
                    attempts=attempts,
                    context={"path": path, "status": response.status_code},
                )

            if response.status_code == STATUS_UNAUTHENTICATED and authenticated:
                logger.warning(f"[Transport] {path} returned 401, invalidating session")
                self.session.invalidate(reason=f"401 from {path}")
                raise SessionExpired(context={"path": path})

            if response.is_success and authenticated:
                self._after_success()
            return response

        # Loop always returns or raises; kept for type checkers
        raise TransientTransportError(f"{path} exhausted retries", attempts=attempts)

    async def send_json(self, path: str, body: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """send() for callers that only handle 2xx; other statuses become RecordStoreError."""
        response = await self.send(path, body)
        if not response.is_success:
            try:
                detail = response.json()
            except ValueError:
                detail = {}
            code = detail.get("serverErrorCode") if isinstance(detail, dict) else None
            reason = detail.get("reason") if isinstance(detail, dict) else None
            raise RecordStoreError(
                f"{path} returned HTTP {response.status_code}: {reason or code or response.text[:200]}",
                server_error_code=code,
                context={"path": path, "status": response.status_code},
            )
        return response.json()

    def _after_success(self) -> None:
        if self.session.state != SessionState.PENDING or self._confirmation_scheduled:
            return
        self._confirmation_scheduled = True
        logger.debug("[Transport] Credential works, confirming identity in background")
        task = asyncio.get_running_loop().create_task(self._confirm_in_background())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _confirm_in_background(self) -> None:
        identity = await self.session.resolve_identity_now()
        if identity is None and self.session.state == SessionState.PENDING:
            # Failed; the next working call tries again
            self._confirmation_scheduled = False

    async def fetch_caller_identity(self) -> str:
        """
        Ask the store who owns the current credential.

        Raises:
            IdentityConfirmationError: any non-2xx, including the 400 returned
                for accounts that have never written to their private database,
                and a 2xx whose body is not JSON
        """
        response = await self.send(CALLER_IDENTITY_PATH, authenticated=False)
        if not response.is_success:
            raise IdentityConfirmationError(
                f"Caller lookup returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise IdentityConfirmationError(
                "Caller lookup response was not JSON",
                status_code=response.status_code,
            ) from e
        identity = data.get("userRecordName") if isinstance(data, dict) else None
        if not identity:
            raise IdentityConfirmationError("Caller lookup response had no userRecordName")
        return identity
