"""
Coves session management

The Coves backend runs the atProto OAuth flow on the client's behalf. The
client opens ``/oauth/mobile/login`` in a browser, the backend completes the
authorization with the user's PDS, and finally redirects to the client's
custom scheme with a sealed session token:

    social.coves:/callback?token=...&did=...&session_id=...&handle=...

From then on the client only deals with that sealed token:

1. Sign-in (`build_login_url`, `complete_sign_in`): validate the handle, then
   turn the callback URL into a session and persist it
2. Restore (`restore_session`): load the persisted session at startup,
   discarding anything that cannot be decrypted or parsed
3. Refresh (`refresh_token`): exchange the sealed token for a new one.
   Refreshes are single-flight: every caller that arrives while a refresh is
   running awaits the same request and sees the same result or error
4. Sign-out (`sign_out`): tell the backend, then always drop local state

Sessions are stored under an environment-qualified key so production and
local builds never read each other's tokens.
"""

import asyncio
import logging
import re
from typing import Optional
from urllib.parse import urlencode

import aiohttp
from aiohttp import ClientSession, hdrs

from social.coves.client.app.config import Settings
from social.coves.client.app.metrics import MetricsClient, NoOpMetricsClient
from social.coves.client.atproto.chain import (
    REFRESH_PATH,
    ChainMiddlewareClient,
    StatsdMiddleware,
)
from social.coves.client.atproto.errors import RefreshFailed, ValidationError
from social.coves.client.model.session import CovesSession
from social.coves.client.storage.secure import CorruptedValueError, SecureStorage

logger = logging.getLogger(__name__)

LOGIN_PATH = "/oauth/mobile/login"
LOGOUT_PATH = "/oauth/logout"

MAX_HANDLE_LENGTH = 253
MAX_SEGMENT_LENGTH = 63

_BSKY_PROFILE_URL = re.compile(
    r"^https?://(?:www\.)?bsky\.app/profile/([^/?#]+)", re.IGNORECASE
)
_DID_PATTERN = re.compile(r"^did:[a-z0-9]+:[a-zA-Z0-9._:%-]+$")
_HANDLE_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*$"
)
_TOKEN_PARAM = re.compile(r"token=([^&\s]+)")


class InvalidHandleError(ValidationError, ValueError):
    """The user typed something that is neither a handle nor a DID."""


def redact_tokens(text: str) -> str:
    """Replace every ``token=...`` query value with a placeholder."""
    return _TOKEN_PARAM.sub("token=[REDACTED]", text)


def validate_and_normalize_handle(value: str) -> str:
    """
    Validate user input for sign-in and normalise it.

    Accepts a handle (``alice.bsky.social``), a handle with a leading ``@``,
    a bsky.app profile URL, or a DID. Handles are lower-cased; DIDs are
    returned unchanged.

    Raises:
        InvalidHandleError: If the input is empty or malformed
    """
    normalized = value.strip()

    if len(normalized) == 0:
        raise InvalidHandleError("Handle cannot be empty")

    url_match = _BSKY_PROFILE_URL.match(normalized)
    if url_match is not None:
        normalized = url_match.group(1)

    normalized = normalized.removeprefix("@")

    if len(normalized) > MAX_HANDLE_LENGTH:
        raise InvalidHandleError(
            f"Handle too long (max {MAX_HANDLE_LENGTH} characters, got {len(normalized)})"
        )

    if normalized.startswith("did:"):
        if _DID_PATTERN.match(normalized) is None:
            raise InvalidHandleError(
                "Invalid DID format. Expected format: did:method:identifier"
            )
        return normalized

    if "." not in normalized:
        raise InvalidHandleError(
            "Invalid handle format. Handles must be in domain format (e.g., alice.bsky.social)"
        )

    if _HANDLE_PATTERN.match(normalized) is None:
        raise InvalidHandleError(
            "Invalid handle format. Handles can only contain letters, numbers, hyphens, "
            "and periods. Each segment must start and end with a letter or number."
        )

    segments = normalized.split(".")
    for segment in segments:
        if len(segment) > MAX_SEGMENT_LENGTH:
            raise InvalidHandleError(
                f"Invalid handle segment: '{segment}' exceeds {MAX_SEGMENT_LENGTH} characters"
            )

    if segments[-1][0].isdigit():
        raise InvalidHandleError(
            "Invalid handle format. The top-level domain cannot start with a digit"
        )

    return normalized.lower()


class CovesAuthService:
    """
    Owns the current session and everything that changes it.

    Construct one per process and pass it to whatever needs a token. Call
    ``initialize`` before use and ``close`` when done.
    """

    def __init__(
        self,
        settings: Settings,
        storage: SecureStorage,
        http_session: Optional[ClientSession] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._settings = settings
        self._environment = settings.environment_config()
        self._storage = storage
        self._storage_key = settings.session_storage_key
        self._metrics_client = metrics_client or NoOpMetricsClient()

        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._chain_client: Optional[ChainMiddlewareClient] = None

        self._session: Optional[CovesSession] = None
        self._refresh_task: Optional[asyncio.Task[CovesSession]] = None

    @property
    def api_url(self) -> str:
        return self._environment.api_url

    @property
    def storage_key(self) -> str:
        return self._storage_key

    @property
    def session(self) -> Optional[CovesSession]:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    async def initialize(self) -> None:
        if self._chain_client is not None:
            return

        if self._http_session is None:
            self._http_session = ClientSession(timeout=self._settings.client_timeout())

        self._chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=[StatsdMiddleware(self._metrics_client, self._settings.statsd_prefix)],
            attempt_max=1,
        )

    async def close(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None
        self._chain_client = None

    def _client(self) -> ChainMiddlewareClient:
        if self._chain_client is None:
            raise RuntimeError("CovesAuthService.initialize() has not been called")
        return self._chain_client

    def build_login_url(self, handle: str) -> str:
        normalized = validate_and_normalize_handle(handle)
        query = urlencode({"handle": normalized, "redirect_uri": self._settings.redirect_uri})
        return f"{self.api_url}{LOGIN_PATH}?{query}"

    async def complete_sign_in(self, callback_url: str) -> CovesSession:
        """
        Finish sign-in from the URL the backend redirected to.

        Raises:
            ValueError: If the callback is missing session parameters
        """
        logger.debug(f"Received callback URL: {redact_tokens(callback_url)}")

        session = CovesSession.from_callback_url(callback_url)
        await self._storage.write(self._storage_key, session.to_storage())
        self._session = session

        logger.info(f"Signed in as {session.handle or session.did}")
        return session

    async def restore_session(self) -> Optional[CovesSession]:
        try:
            stored = await self._storage.read(self._storage_key)
        except CorruptedValueError:
            logger.warning("Stored session could not be decrypted, discarding it")
            await self._storage.delete(self._storage_key)
            return None

        if stored is None:
            logger.debug("No stored session found")
            return None

        try:
            session = CovesSession.from_storage(stored)
        except ValueError:
            logger.warning("Stored session is corrupted, discarding it")
            await self._storage.delete(self._storage_key)
            return None

        self._session = session
        logger.info(f"Restored session for {session.handle or session.did}")
        return session

    async def get_access_token(self) -> Optional[str]:
        if self._session is None:
            return None
        return self._session.token

    async def refresh_token(self) -> CovesSession:
        """
        Exchange the current sealed token for a new one.

        Concurrent callers share one request. The in-flight slot is cleared as
        soon as that request finishes, so a later call always starts a new
        attempt even if the previous one failed.

        Raises:
            NoSessionError: If there is no session to refresh
            SessionExpired: If the backend rejected the session (401)
            RefreshFailed: On any other failure
        """
        if self._refresh_task is None or self._refresh_task.done():
            session = self._session
            if session is None:
                raise RefreshFailed.no_session()

            task = asyncio.create_task(self._do_refresh(session))
            task.add_done_callback(self._refresh_finished)
            self._refresh_task = task
        else:
            logger.debug("Token refresh already in progress, waiting for it")

        return await asyncio.shield(self._refresh_task)

    def _refresh_finished(self, task: "asyncio.Task[CovesSession]") -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Token refresh failed: {task.exception()}")

    async def _do_refresh(self, session: CovesSession) -> CovesSession:
        url = f"{self.api_url}{REFRESH_PATH}"
        body = {
            "did": session.did,
            "session_id": session.session_id,
            "sealed_token": session.token,
        }

        try:
            async with self._client().post(url, json=body) as (
                _,
                chain_response,
            ):
                status = chain_response.status
                payload = chain_response.body
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RefreshFailed.transport(e) from e

        if status == 401:
            raise RefreshFailed.session_expired()

        if status != 200:
            raise RefreshFailed.unexpected_status(status)

        new_token = payload.get("sealed_token") if isinstance(payload, dict) else None
        if not isinstance(new_token, str) or len(new_token) == 0:
            raise RefreshFailed.missing_token()

        current = self._session
        if current is None or current.session_id != session.session_id:
            raise RefreshFailed("error-coves-client-1005 Session changed during refresh")

        refreshed = current.with_token(new_token)
        await self._storage.write(self._storage_key, refreshed.to_storage())
        self._session = refreshed

        logger.info("Token refreshed")
        return refreshed

    async def sign_out(self) -> None:
        """Revoke the session on the backend if possible, then always clear it locally."""
        session = self._session

        try:
            if session is not None and self._chain_client is not None:
                await self._revoke(session)
        finally:
            self._session = None
            await self._storage.delete(self._storage_key)
            logger.info("Signed out")

    async def _revoke(self, session: CovesSession) -> None:
        try:
            async with self._client().post(
                f"{self.api_url}{LOGOUT_PATH}",
                headers={hdrs.AUTHORIZATION: f"Bearer {session.token}"},
            ) as (_, chain_response):
                if not chain_response.ok:
                    logger.warning(f"Server logout returned {chain_response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Server logout failed, clearing local session anyway: {e}")
