import logging
from typing import Optional

import sentry_sdk

from social.coves.client.atproto.auth import CovesAuthService
from social.coves.client.model.session import CovesSession
from social.coves.client.state.notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class AuthStore(ChangeNotifier):
    """
    Observable authentication state.

    The session itself lives in ``CovesAuthService``; this store adds loading
    and error state and tells listeners whenever any of it changes. Other
    stores watch ``is_authenticated`` to clear per-user data on sign-out.
    """

    def __init__(self, auth_service: CovesAuthService) -> None:
        super().__init__()
        self._auth_service = auth_service
        self._is_loading = True
        self._error: Optional[str] = None

    @property
    def auth_service(self) -> CovesAuthService:
        return self._auth_service

    @property
    def session(self) -> Optional[CovesSession]:
        return self._auth_service.session

    @property
    def is_authenticated(self) -> bool:
        return self._auth_service.is_authenticated

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def did(self) -> Optional[str]:
        session = self.session
        return session.did if session is not None else None

    @property
    def handle(self) -> Optional[str]:
        session = self.session
        return session.handle if session is not None else None

    async def get_access_token(self) -> Optional[str]:
        return await self._auth_service.get_access_token()

    async def initialize(self) -> None:
        """Prepare the auth service and restore a saved session if there is one."""
        self._is_loading = True
        self._error = None
        self.notify_listeners()

        try:
            await self._auth_service.initialize()
            await self._auth_service.restore_session()
        except Exception as e:
            logger.exception("Failed to initialize authentication")
            sentry_sdk.capture_exception(e)
            self._error = str(e)
        finally:
            self._is_loading = False
            self.notify_listeners()

    def login_url(self, handle: str) -> str:
        """
        URL to open in a browser to start sign-in.

        Raises:
            InvalidHandleError: If the handle is malformed
        """
        return self._auth_service.build_login_url(handle)

    async def sign_in(self, callback_url: str) -> CovesSession:
        """
        Complete sign-in from the backend's redirect.

        Raises:
            ValueError: If the callback URL lacks session parameters
        """
        self._is_loading = True
        self._error = None
        self.notify_listeners()

        try:
            return await self._auth_service.complete_sign_in(callback_url)
        except Exception as e:
            self._error = str(e)
            logger.warning(f"Sign in failed: {e}")
            raise
        finally:
            self._is_loading = False
            self.notify_listeners()

    async def sign_out(self) -> None:
        """Sign out. Local state is always cleared, even if the backend cannot be reached."""
        self._is_loading = True
        self.notify_listeners()

        try:
            await self._auth_service.sign_out()
            self._error = None
        except Exception as e:
            logger.warning(f"Sign out failed: {e}")
            self._error = str(e)
        finally:
            self._is_loading = False
            self.notify_listeners()

    async def refresh_token(self) -> bool:
        """
        Refresh the session token.

        Returns:
            True if a new token is in place. On any failure the user is
            signed out and False is returned.
        """
        if self.session is None:
            return False

        try:
            await self._auth_service.refresh_token()
        except Exception as e:
            logger.warning(f"Token refresh failed, signing out: {e}")
            await self.sign_out()
            return False

        self.notify_listeners()
        return True

    def clear_error(self) -> None:
        self._error = None
        self.notify_listeners()
