import asyncio
import logging
from datetime import datetime, timezone
from enum import StrEnum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.errors import ApiError, friendly_message
from social.coves.client.model.feed_state import FeedState
from social.coves.client.model.post import FeedViewPost, TimelineResponse
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.notifier import ChangeNotifier
from social.coves.client.state.subscriptions import SubscriptionStore
from social.coves.client.state.votes import VoteStore

logger = logging.getLogger(__name__)

FeedFetcher = Callable[..., Awaitable[TimelineResponse]]


class FeedType(StrEnum):
    discover = "discover"
    for_you = "for_you"


class MultiFeedStore(ChangeNotifier):
    """
    Independent paginated state for the Discover and For You feeds.

    For You is the signed-in user's timeline. Its responses are dropped if
    the session changed while they were in flight, so one account's feed can
    never appear under another.
    """

    def __init__(
        self,
        api_client: CovesApiClient,
        auth_store: AuthStore,
        vote_store: Optional[VoteStore] = None,
        subscription_store: Optional[SubscriptionStore] = None,
    ) -> None:
        super().__init__()
        self._api_client = api_client
        self._auth_store = auth_store
        self._vote_store = vote_store
        self._subscription_store = subscription_store

        self._feeds: Dict[FeedType, FeedState] = {}
        self._generations: Dict[FeedType, int] = {}
        self._pending_refresh: Set[FeedType] = set()
        self._refresh_waiters: Dict[FeedType, List["asyncio.Future[None]"]] = {}
        self._current_feed = FeedType.discover
        self._sort = "hot"
        self._timeframe: Optional[str] = None
        self._was_authenticated = auth_store.is_authenticated

        self._auth_store.add_listener(self._on_auth_changed)

    def dispose(self) -> None:
        self._auth_store.remove_listener(self._on_auth_changed)

    @property
    def current_feed(self) -> FeedType:
        return self._current_feed

    @property
    def sort(self) -> str:
        return self._sort

    @property
    def timeframe(self) -> Optional[str]:
        return self._timeframe

    @property
    def is_authenticated(self) -> bool:
        return self._auth_store.is_authenticated

    def get_state(self, feed_type: FeedType) -> FeedState:
        return self._feeds.get(feed_type) or FeedState()

    def _on_auth_changed(self) -> None:
        is_authenticated = self._auth_store.is_authenticated
        was_authenticated = self._was_authenticated
        self._was_authenticated = is_authenticated

        if was_authenticated and not is_authenticated:
            logger.debug("Signed out, dropping For You feed")
            self._discard(FeedType.for_you)
            self._current_feed = FeedType.discover
            self.notify_listeners()

    async def load_feed(self, feed_type: FeedType, refresh: bool = False) -> None:
        """
        Load the first page (``refresh=True``) or the next page of a feed.

        While the feed is loading, a refresh is deferred until the running
        load finishes and any other request is ignored. Refreshes deferred
        during the same load run once.
        """
        if self.get_state(feed_type).is_busy:
            if refresh:
                logger.debug(f"{feed_type} feed is loading, deferring refresh")
                self._pending_refresh.add(feed_type)
                waiter = asyncio.get_running_loop().create_future()
                self._refresh_waiters.setdefault(feed_type, []).append(waiter)
                await waiter
            return

        generation = self._generations.get(feed_type, 0)

        try:
            await self._fetch_feed(feed_type, refresh)

            while (
                feed_type in self._pending_refresh
                and self._generations.get(feed_type, 0) == generation
            ):
                self._pending_refresh.discard(feed_type)
                waiters = self._refresh_waiters.pop(feed_type, [])
                try:
                    await self._fetch_feed(feed_type, refresh=True)
                finally:
                    _release(waiters)
        finally:
            if self._generations.get(feed_type, 0) == generation:
                self._pending_refresh.discard(feed_type)
                _release(self._refresh_waiters.pop(feed_type, []))

    async def load_more(self, feed_type: FeedType) -> None:
        state = self.get_state(feed_type)
        if not state.has_more or state.is_busy:
            return
        await self.load_feed(feed_type, refresh=False)

    def _fetcher(self, feed_type: FeedType) -> FeedFetcher:
        if feed_type == FeedType.for_you and self._auth_store.is_authenticated:
            return self._api_client.get_timeline
        return self._api_client.get_discover

    async def _fetch_feed(self, feed_type: FeedType, refresh: bool) -> None:
        current = self.get_state(feed_type)
        fetcher = self._fetcher(feed_type)
        did = self._auth_store.did
        generation = self._generations.get(feed_type, 0)

        if refresh:
            self._feeds[feed_type] = current.copy(is_loading=True, error=None)
        else:
            self._feeds[feed_type] = current.copy(is_loading_more=True)
        self.notify_listeners()

        try:
            response = await fetcher(
                sort=self._sort,
                timeframe=self._timeframe,
                cursor=None if refresh else current.cursor,
            )
        except ApiError as e:
            if self._is_stale(feed_type, did, generation):
                return
            logger.warning(f"Failed to load {feed_type} feed: {e}")
            self._feeds[feed_type] = self.get_state(feed_type).copy(
                is_loading=False,
                is_loading_more=False,
                error=friendly_message(e),
            )
            self.notify_listeners()
            return

        if self._is_stale(feed_type, did, generation):
            return

        state = self.get_state(feed_type)
        if refresh:
            posts = list(response.feed)
        else:
            posts = state.posts + response.feed

        self._feeds[feed_type] = state.copy(
            items=posts,
            cursor=response.cursor,
            has_more=response.cursor is not None,
            is_loading=False,
            is_loading_more=False,
            error=None,
            last_refresh_time=datetime.now(timezone.utc) if refresh else state.last_refresh_time,
        )

        self._initialize_viewer_state(response.feed)
        self.notify_listeners()

    def _discard(self, feed_type: FeedType) -> None:
        """Drop a feed's state and any response still in flight for it."""
        self._feeds.pop(feed_type, None)
        self._generations[feed_type] = self._generations.get(feed_type, 0) + 1
        self._pending_refresh.discard(feed_type)
        _release(self._refresh_waiters.pop(feed_type, []))

    def _is_stale(self, feed_type: FeedType, did: Optional[str], generation: int) -> bool:
        if self._generations.get(feed_type, 0) != generation:
            logger.debug(f"{feed_type} feed was reset while loading, discarding response")
            return True
        if feed_type == FeedType.for_you and self._auth_store.did != did:
            logger.debug("Session changed while For You was loading, discarding response")
            self._discard(feed_type)
            self.notify_listeners()
            return True
        return False

    def _initialize_viewer_state(self, items: list[FeedViewPost]) -> None:
        if not self._auth_store.is_authenticated:
            return

        if self._vote_store is not None:
            for item in items:
                self._vote_store.set_initial_vote_state(
                    post_uri=item.post.uri,
                    vote_direction=item.post.viewer_vote,
                    vote_uri=item.post.viewer_vote_uri,
                )
            self._vote_store.notify_listeners()

        if self._subscription_store is not None:
            for item in items:
                viewer = item.post.community.viewer
                if viewer is not None and viewer.subscribed is not None:
                    self._subscription_store.set_initial_subscription_state(
                        item.post.community.did, viewer.subscribed
                    )

    def set_current_feed(self, feed_type: FeedType) -> None:
        if feed_type == FeedType.for_you and not self._auth_store.is_authenticated:
            return
        if feed_type == self._current_feed:
            return
        self._current_feed = feed_type
        self.notify_listeners()

    def save_scroll_position(self, feed_type: FeedType, position: float) -> None:
        self._feeds[feed_type] = self.get_state(feed_type).copy(scroll_position=position)

    async def set_sort(self, sort: str, timeframe: Optional[str] = None) -> None:
        """Change ordering for every feed, then reload the one being shown."""
        if sort == self._sort and timeframe == self._timeframe:
            return

        self._sort = sort
        self._timeframe = timeframe
        for feed_type in FeedType:
            self._discard(feed_type)
        self.notify_listeners()

        await self.load_feed(self._current_feed, refresh=True)

    async def retry(self, feed_type: FeedType) -> None:
        self._feeds[feed_type] = self.get_state(feed_type).copy(error=None)
        await self.load_feed(feed_type, refresh=True)

    def clear_error(self, feed_type: FeedType) -> None:
        self._feeds[feed_type] = self.get_state(feed_type).copy(error=None)
        self.notify_listeners()

    def reset_feed(self, feed_type: FeedType) -> None:
        self._discard(feed_type)
        self.notify_listeners()

    def reset_all(self) -> None:
        for feed_type in FeedType:
            self._discard(feed_type)
        self.notify_listeners()


def _release(waiters: List["asyncio.Future[None]"]) -> None:
    for waiter in waiters:
        if not waiter.done():
            waiter.set_result(None)
