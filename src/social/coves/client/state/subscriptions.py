import asyncio
import logging
from typing import Dict, Optional, Set

import sentry_sdk

from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.errors import ApiError, UnknownError
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.notifier import ChangeNotifier

logger = logging.getLogger(__name__)


class SubscriptionStore(ChangeNotifier):
    """
    Optimistic community subscription state, keyed by community DID.

    The list of subscribed communities is loaded in the background when the
    user signs in and dropped when they sign out.
    """

    def __init__(self, api_client: CovesApiClient, auth_store: AuthStore) -> None:
        super().__init__()
        self._api_client = api_client
        self._auth_store = auth_store

        self._subscriptions: Dict[str, bool] = {}
        # last committed flag of each community with a call in flight
        self._pending: Dict[str, Optional[bool]] = {}
        self._is_loading = False
        self._error: Optional[str] = None

        self._background_tasks: Set[asyncio.Task[None]] = set()
        self._was_authenticated = auth_store.is_authenticated

        self._auth_store.add_listener(self._on_auth_changed)

    def dispose(self) -> list[asyncio.Task[None]]:
        """Stop listening and cancel background loads; returns the cancelled tasks."""
        self._auth_store.remove_listener(self._on_auth_changed)
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        return tasks

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    def _on_auth_changed(self) -> None:
        is_authenticated = self._auth_store.is_authenticated
        was_authenticated = self._was_authenticated
        self._was_authenticated = is_authenticated

        if not is_authenticated:
            if len(self._subscriptions) > 0 or self._error is not None:
                logger.debug("Signed out, clearing subscription state")
                self.clear()
        elif not was_authenticated and len(self._subscriptions) == 0 and not self._is_loading:
            task = asyncio.get_running_loop().create_task(self.load_subscribed_communities())
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

    def is_subscribed(self, community_did: str) -> bool:
        return self._subscriptions.get(community_did, False)

    def is_pending(self, community_did: str) -> bool:
        return community_did in self._pending

    async def toggle_subscription(self, community_did: str) -> bool:
        """
        Subscribe to or unsubscribe from a community.

        Returns:
            True if subscribed afterwards. For a toggle ignored because a
            previous one is still in flight, the last committed flag.

        Raises:
            ApiError: If the backend call failed; local state is rolled back
        """
        if community_did in self._pending:
            logger.debug(f"Subscription change for {community_did} already in flight")
            return self._pending[community_did] or False

        previous: Optional[bool] = self._subscriptions.get(community_did)
        subscribed = not (previous or False)

        self._subscriptions[community_did] = subscribed
        self.notify_listeners()

        self._pending[community_did] = previous
        did = self._auth_store.did

        try:
            if subscribed:
                await self._api_client.subscribe_to_community(community_did)
            else:
                await self._api_client.unsubscribe_from_community(community_did)
        except ApiError as e:
            logger.warning(f"Subscription change for {community_did} failed: {e}")
            self._rollback(community_did, previous, did)
            raise
        except Exception as e:
            self._rollback(community_did, previous, did)
            sentry_sdk.capture_exception(e)
            raise UnknownError(f"Unexpected error: {e}", 500, e) from e
        finally:
            self._pending.pop(community_did, None)

        return subscribed

    def _rollback(self, community_did: str, previous: Optional[bool], did: Optional[str]) -> None:
        if self._auth_store.did != did:
            return
        if previous is None:
            self._subscriptions.pop(community_did, None)
        else:
            self._subscriptions[community_did] = previous
        self.notify_listeners()

    def set_initial_subscription_state(self, community_did: str, is_subscribed: bool) -> None:
        """Record server-reported state without notifying listeners."""
        self._subscriptions[community_did] = is_subscribed

    async def load_subscribed_communities(self) -> None:
        if not self._auth_store.is_authenticated or self._is_loading:
            return

        self._is_loading = True
        self._error = None
        self.notify_listeners()

        did = self._auth_store.did

        try:
            response = await self._api_client.list_communities(subscribed=True)
            if self._auth_store.did != did:
                return
            for community in response.communities:
                self._subscriptions[community.did] = True
            logger.debug(f"Loaded {len(response.communities)} subscribed communities")
        except ApiError as e:
            logger.warning(f"Failed to load subscribed communities: {e}")
            sentry_sdk.capture_exception(e)
            self._error = e.message
        finally:
            self._is_loading = False
            self.notify_listeners()

    def clear(self) -> None:
        self._subscriptions.clear()
        self._pending.clear()
        self._error = None
        self.notify_listeners()
