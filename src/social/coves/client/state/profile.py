import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from social.coves.client.app.metrics import MetricsClient, NoOpMetricsClient
from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.errors import (
    ApiError,
    AuthenticationError,
    NetworkError,
    NotFoundError,
    UnknownError,
    ValidationError,
)
from social.coves.client.model.comment import CommentView
from social.coves.client.model.feed_state import ActorCommentsState, FeedState
from social.coves.client.model.profile import UserProfile
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.notifier import ChangeNotifier
from social.coves.client.state.votes import VoteStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 50


class ProfileCache:
    """
    Least-recently-used cache of profiles keyed by DID.

    Handles are indexed as aliases of the DID they belong to, so a profile
    fetched by handle is found again by either identifier. Reads count as
    uses.
    """

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._profiles: "OrderedDict[str, UserProfile]" = OrderedDict()
        self._aliases: Dict[str, str] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, actor: object) -> bool:
        return isinstance(actor, str) and self._resolve(actor) is not None

    def keys(self) -> list[str]:
        """DIDs from least to most recently used."""
        return list(self._profiles.keys())

    def _resolve(self, actor: str) -> Optional[str]:
        if actor in self._profiles:
            return actor
        return self._aliases.get(actor.lower())

    def get(self, actor: str) -> Optional[UserProfile]:
        did = self._resolve(actor)
        if did is None:
            return None
        self._profiles.move_to_end(did)
        return self._profiles[did]

    def put(self, profile: UserProfile) -> None:
        did = profile.did
        self._profiles[did] = profile
        self._profiles.move_to_end(did)
        if profile.handle:
            self._aliases[profile.handle.lower()] = did

        while len(self._profiles) > self._capacity:
            evicted, _ = self._profiles.popitem(last=False)
            self._drop_aliases(evicted)
            logger.debug(f"Evicted profile {evicted} from cache")

    def remove(self, actor: str) -> None:
        did = self._resolve(actor)
        if did is None:
            return
        self._profiles.pop(did, None)
        self._drop_aliases(did)

    def _drop_aliases(self, did: str) -> None:
        for alias in [alias for alias, target in self._aliases.items() if target == did]:
            del self._aliases[alias]

    def clear(self) -> None:
        self._profiles.clear()
        self._aliases.clear()


def _load_error_message(error: ApiError, noun: str) -> str:
    """User-facing text for a failed profile, posts or comments load."""
    if isinstance(error, NotFoundError):
        return "User not found"
    if isinstance(error, AuthenticationError):
        return f"Please sign in to view {'this profile' if noun == 'profile' else noun}"
    if isinstance(error, NetworkError):
        return "Network error. Check your connection."
    if isinstance(error, UnknownError):
        if isinstance(error.original_error, (PydanticValidationError, ValueError)):
            return "Invalid data received from server"
        return f"Failed to load {noun}. Please try again."
    return error.message


class UserProfileStore(ChangeNotifier):
    """
    The profile currently on screen, with the actor's posts and comments.

    Profiles are served from a ``ProfileCache`` unless a refresh is forced.
    Everything is dropped when the user signs out, since viewer state in a
    profile belongs to the account that fetched it.
    """

    def __init__(
        self,
        api_client: CovesApiClient,
        auth_store: AuthStore,
        vote_store: Optional[VoteStore] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
        metrics_client: Optional[MetricsClient] = None,
        metrics_prefix: str = "coves.client",
    ) -> None:
        super().__init__()
        self._api_client = api_client
        self._auth_store = auth_store
        self._vote_store = vote_store
        self._cache = ProfileCache(cache_size)
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._metrics_prefix = metrics_prefix

        self._profile: Optional[UserProfile] = None
        self._is_loading_profile = False
        self._profile_error: Optional[str] = None
        self._current_profile_did: Optional[str] = None
        self._posts_state = FeedState()
        self._comments_state = ActorCommentsState()

        self._generation = 0
        self._was_authenticated = auth_store.is_authenticated

        self._auth_store.add_listener(self._on_auth_changed)

    def dispose(self) -> None:
        self._auth_store.remove_listener(self._on_auth_changed)

    @property
    def cache(self) -> ProfileCache:
        return self._cache

    @property
    def profile(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def is_loading_profile(self) -> bool:
        return self._is_loading_profile

    @property
    def profile_error(self) -> Optional[str]:
        return self._profile_error

    @property
    def current_profile_did(self) -> Optional[str]:
        return self._current_profile_did

    @property
    def posts_state(self) -> FeedState:
        return self._posts_state

    @property
    def comments_state(self) -> ActorCommentsState:
        return self._comments_state

    @property
    def is_own_profile(self) -> bool:
        if self._current_profile_did is None:
            return False
        return self._current_profile_did == self._auth_store.did

    def _on_auth_changed(self) -> None:
        is_authenticated = self._auth_store.is_authenticated
        was_authenticated = self._was_authenticated
        self._was_authenticated = is_authenticated

        if was_authenticated and not is_authenticated:
            logger.debug("Signed out, clearing profile cache")
            self._cache.clear()
            self._record_cache_size()
            self.reset()

    def _show(self, profile: UserProfile) -> None:
        if profile.did != self._current_profile_did:
            self._posts_state = FeedState()
            self._comments_state = ActorCommentsState()
        self._profile = profile
        self._current_profile_did = profile.did
        self._profile_error = None

    async def load_profile(self, actor: str, force_refresh: bool = False) -> None:
        """Show the profile of ``actor`` (DID or handle), from cache when possible."""
        cached = self._cache.get(actor)
        if cached is not None and not force_refresh:
            self._show(cached)
            self.notify_listeners()
            return

        if self._is_loading_profile:
            return

        generation = self._generation
        self._is_loading_profile = True
        self._profile_error = None
        self.notify_listeners()

        try:
            profile = await self._api_client.get_profile(actor)
        except ApiError as e:
            if generation != self._generation:
                return
            logger.warning(f"Failed to load profile {actor}: {e}")
            self._profile_error = _load_error_message(e, "profile")
            if isinstance(e, NotFoundError):
                self._profile = None
        else:
            if generation != self._generation:
                logger.debug(f"Profile store was reset while loading {actor}, discarding")
                return
            self._cache.put(profile)
            self._record_cache_size()
            self._show(profile)
        finally:
            if generation == self._generation:
                self._is_loading_profile = False
                self.notify_listeners()

    async def _load_page(self, kind: str, refresh: bool) -> None:
        state: Any = self._posts_state if kind == "posts" else self._comments_state

        if self._current_profile_did is None:
            self._set_page_state(
                kind, state.copy(error="No profile loaded", is_loading=False, is_loading_more=False)
            )
            self.notify_listeners()
            return

        if state.is_busy:
            return
        if not refresh and not state.has_more:
            return

        actor = self._current_profile_did
        generation = self._generation

        if refresh:
            self._set_page_state(kind, state.copy(is_loading=True, error=None))
        else:
            self._set_page_state(kind, state.copy(is_loading_more=True))
        self.notify_listeners()

        cursor = None if refresh else state.cursor

        try:
            if kind == "posts":
                response = await self._api_client.get_actor_posts(actor, cursor=cursor)
                page = response.feed
            else:
                response = await self._api_client.get_actor_comments(actor, cursor=cursor)
                page = response.comments
        except ApiError as e:
            if generation != self._generation or actor != self._current_profile_did:
                return
            logger.warning(f"Failed to load {kind} for {actor}: {e}")
            self._set_page_state(
                kind,
                state.copy(
                    error=_load_error_message(e, kind),
                    is_loading=False,
                    is_loading_more=False,
                ),
            )
            self.notify_listeners()
            return

        if generation != self._generation or actor != self._current_profile_did:
            logger.debug(f"Profile changed while loading {kind} for {actor}, discarding")
            return

        items = list(page) if refresh else state.items + page
        changes: Dict[str, Any] = dict(
            items=items,
            cursor=response.cursor,
            has_more=response.cursor is not None,
            error=None,
            is_loading=False,
            is_loading_more=False,
        )
        if kind == "posts" and refresh:
            changes["last_refresh_time"] = datetime.now(timezone.utc)

        self._set_page_state(kind, state.copy(**changes))

        if kind == "posts":
            self._initialize_vote_state(
                (p.post.uri, p.post.viewer_vote, p.post.viewer_vote_uri)
                for p in (items if refresh else page)
            )
        else:
            self._initialize_vote_state(
                _comment_vote(c) for c in (items if refresh else page)
            )

        self.notify_listeners()

    def _set_page_state(self, kind: str, state: Any) -> None:
        if kind == "posts":
            self._posts_state = state
        else:
            self._comments_state = state

    def _initialize_vote_state(
        self, entries: Iterable[Tuple[str, Optional[str], Optional[str]]]
    ) -> None:
        if self._vote_store is None or not self._auth_store.is_authenticated:
            return
        for uri, direction, vote_uri in entries:
            self._vote_store.set_initial_vote_state(uri, direction, vote_uri)
        self._vote_store.notify_listeners()

    async def load_posts(self, refresh: bool = False) -> None:
        await self._load_page("posts", refresh)

    async def load_more_posts(self) -> None:
        await self._load_page("posts", refresh=False)

    async def load_comments(self, refresh: bool = False) -> None:
        await self._load_page("comments", refresh)

    async def load_more_comments(self) -> None:
        await self._load_page("comments", refresh=False)

    async def update_profile(
        self,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[dict[str, Any]] = None,
        banner: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Update the signed-in user's own profile, then reload it from the server.

        Raises:
            ValidationError: If the profile on screen is not the user's own
            ApiError: If the update failed
        """
        if not self.is_own_profile or self._profile is None:
            raise ValidationError("Can only update own profile")

        did = self._profile.did
        await self._api_client.update_profile(
            display_name=display_name, bio=bio, avatar=avatar, banner=banner
        )
        await self.load_profile(did, force_refresh=True)

    def evict(self, actor: str) -> None:
        self._cache.remove(actor)
        self._record_cache_size()

    def _record_cache_size(self) -> None:
        self._metrics_client.gauge(
            f"{self._metrics_prefix}.profile_cache.size", len(self._cache)
        )

    def set_error(self, message: str) -> None:
        self._profile_error = message
        self._is_loading_profile = False
        self.notify_listeners()

    def clear_error(self) -> None:
        self._profile_error = None
        self.notify_listeners()

    def reset(self) -> None:
        self._generation += 1
        self._profile = None
        self._current_profile_did = None
        self._posts_state = FeedState()
        self._comments_state = ActorCommentsState()
        self._profile_error = None
        self._is_loading_profile = False
        self.notify_listeners()


def _comment_vote(comment: CommentView) -> Tuple[str, Optional[str], Optional[str]]:
    viewer = comment.viewer
    if viewer is None:
        return comment.uri, None, None
    return comment.uri, viewer.vote, viewer.vote_uri
