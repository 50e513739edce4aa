"""
Comment thread state for one post at a time.

Loading is serialised: a refresh requested while a page is still loading is
remembered and started as soon as that load finishes. Callers that asked for
the deferred refresh are resumed once it has run.
"""

import asyncio
import logging
from typing import Optional

from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.comments import CommentService
from social.coves.client.atproto.errors import (
    ApiError,
    AuthenticationError,
    ValidationError,
    friendly_message,
)
from social.coves.client.model.comment import (
    CommentView,
    CreateCommentResponse,
    ThreadViewComment,
    walk_threads,
)
from social.coves.client.model.feed_state import CommentsState
from social.coves.client.model.vote import VoteDirection
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.notifier import ChangeNotifier
from social.coves.client.state.votes import VoteStore

logger = logging.getLogger(__name__)


class CommentsStore(ChangeNotifier):
    def __init__(
        self,
        api_client: CovesApiClient,
        auth_store: AuthStore,
        vote_store: Optional[VoteStore] = None,
        comment_service: Optional[CommentService] = None,
    ) -> None:
        super().__init__()
        self._api_client = api_client
        self._auth_store = auth_store
        self._vote_store = vote_store
        self._comment_service = comment_service or CommentService(api_client)

        self._state = CommentsState()
        self._post_uri: Optional[str] = None
        self._post_cid: Optional[str] = None
        self._sort = "hot"
        self._timeframe: Optional[str] = None

        self._generation = 0
        self._pending_refresh = False
        self._refresh_waiters: list[asyncio.Future[None]] = []
        self._was_authenticated = auth_store.is_authenticated

        self._auth_store.add_listener(self._on_auth_changed)

    def dispose(self) -> None:
        self._auth_store.remove_listener(self._on_auth_changed)
        self._release_waiters()

    @property
    def state(self) -> CommentsState:
        return self._state

    @property
    def comments(self) -> list[ThreadViewComment]:
        return self._state.comments

    @property
    def post_uri(self) -> Optional[str]:
        return self._post_uri

    @property
    def sort(self) -> str:
        return self._sort

    @property
    def timeframe(self) -> Optional[str]:
        return self._timeframe

    @property
    def has_pending_refresh(self) -> bool:
        return self._pending_refresh

    def _on_auth_changed(self) -> None:
        is_authenticated = self._auth_store.is_authenticated
        was_authenticated = self._was_authenticated
        self._was_authenticated = is_authenticated

        if was_authenticated and not is_authenticated:
            logger.debug("Signed out, clearing comments")
            self.reset()

    async def load_comments(
        self,
        post_uri: str,
        post_cid: Optional[str] = None,
        refresh: bool = False,
    ) -> None:
        """
        Load the first page (``refresh=True``) or the next page of comments.

        Switching to another post discards everything loaded for the
        previous one. While a load is running, a refresh is deferred until it
        finishes and any other request is ignored.
        """
        if post_uri != self._post_uri:
            self._clear()
            self._post_uri = post_uri
            refresh = True

        if post_cid is not None:
            self._post_cid = post_cid

        if self._state.is_busy:
            if refresh:
                logger.debug(f"Comments for {post_uri} are loading, deferring refresh")
                self._pending_refresh = True
                waiter = asyncio.get_running_loop().create_future()
                self._refresh_waiters.append(waiter)
                await waiter
            return

        generation = self._generation

        try:
            await self._fetch(refresh)

            while self._pending_refresh and self._generation == generation:
                self._pending_refresh = False
                waiters, self._refresh_waiters = self._refresh_waiters, []
                try:
                    await self._fetch(refresh=True)
                finally:
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_result(None)
        finally:
            if self._generation == generation and len(self._refresh_waiters) > 0:
                self._pending_refresh = False
                self._release_waiters()

    async def _fetch(self, refresh: bool) -> None:
        post_uri = self._post_uri
        if post_uri is None:
            return

        generation = self._generation
        current = self._state

        if refresh:
            self._state = current.copy(is_loading=True, error=None)
        else:
            self._state = current.copy(is_loading_more=True)
        self.notify_listeners()

        try:
            response = await self._api_client.get_comments(
                post_uri,
                sort=self._sort,
                timeframe=self._timeframe,
                cursor=None if refresh else current.cursor,
            )
        except ApiError as e:
            if generation == self._generation:
                logger.warning(f"Failed to load comments for {post_uri}: {e}")
                self._state = self._state.copy(error=friendly_message(e))
            return
        else:
            if generation != self._generation:
                logger.debug(f"Comments for {post_uri} were reset while loading, discarding")
                return

            if refresh:
                comments = list(response.comments)
            else:
                comments = self._state.comments + response.comments

            self._state = self._state.copy(
                items=comments,
                cursor=response.cursor,
                has_more=response.cursor is not None,
                error=None,
            )
            self._initialize_vote_state(comments if refresh else response.comments)
        finally:
            if generation == self._generation:
                self._state = self._state.copy(is_loading=False, is_loading_more=False)
                self.notify_listeners()

    def _initialize_vote_state(self, threads: list[ThreadViewComment]) -> None:
        if self._vote_store is None or not self._auth_store.is_authenticated:
            return

        # every comment, so votes removed elsewhere are cleared locally too
        for comment in walk_threads(threads):
            self._vote_store.set_initial_vote_state(
                post_uri=comment.uri,
                vote_direction=comment.viewer.vote if comment.viewer else None,
                vote_uri=comment.viewer.vote_uri if comment.viewer else None,
            )
        self._vote_store.notify_listeners()

    async def refresh_comments(self) -> None:
        if self._post_uri is None:
            return
        await self.load_comments(self._post_uri, refresh=True)

    async def load_more_comments(self) -> None:
        if not self._state.has_more or self._state.is_loading_more or self._post_uri is None:
            return
        await self.load_comments(self._post_uri)

    async def set_sort_option(self, sort: str, timeframe: Optional[str] = None) -> bool:
        """
        Change the comment ordering and reload.

        Returns:
            False if the reload failed, in which case the previous ordering is
            restored
        """
        if sort == self._sort and timeframe == self._timeframe:
            return True

        previous_sort, previous_timeframe = self._sort, self._timeframe
        self._sort = sort
        self._timeframe = timeframe
        self.notify_listeners()

        if self._post_uri is None:
            return True

        await self.load_comments(self._post_uri, refresh=True)

        if self._state.error is not None:
            logger.warning(f"Reload with sort {sort} failed, restoring {previous_sort}")
            self._sort = previous_sort
            self._timeframe = previous_timeframe
            self.notify_listeners()
            return False

        return True

    async def vote_on_comment(
        self,
        comment_uri: str,
        comment_cid: str,
        direction: str = VoteDirection.up,
    ) -> bool:
        """
        Toggle a vote on a comment.

        Returns:
            True if the vote is active afterwards, False if it was removed
        """
        if self._vote_store is None:
            raise RuntimeError("CommentsStore has no VoteStore")
        return await self._vote_store.toggle_vote(comment_uri, comment_cid, direction)

    async def create_comment(
        self,
        content: str,
        parent_uri: Optional[str] = None,
        parent_cid: Optional[str] = None,
    ) -> CreateCommentResponse:
        """
        Reply to the loaded post, or to one of its comments, then refresh.

        Raises:
            AuthenticationError: If nobody is signed in
            ValidationError: If no post is loaded or the content is invalid
        """
        if not self._auth_store.is_authenticated:
            raise AuthenticationError("Sign in to comment")
        if self._post_uri is None or self._post_cid is None:
            raise ValidationError("No post loaded")

        post_uri = self._post_uri
        response = await self._comment_service.create_comment(
            root_uri=post_uri,
            root_cid=self._post_cid,
            parent_uri=parent_uri or post_uri,
            parent_cid=parent_cid or self._post_cid,
            content=content,
        )

        await self.load_comments(post_uri, refresh=True)
        return response

    async def delete_comment(self, comment_uri: str) -> None:
        await self._comment_service.delete_comment(comment_uri)
        if self._post_uri is not None:
            await self.load_comments(self._post_uri, refresh=True)

    def find_comment(self, comment_uri: str) -> Optional[CommentView]:
        for comment in walk_threads(self._state.comments):
            if comment.uri == comment_uri:
                return comment
        return None

    async def retry(self) -> None:
        self._state = self._state.copy(error=None)
        await self.refresh_comments()

    def clear_error(self) -> None:
        self._state = self._state.copy(error=None)
        self.notify_listeners()

    def _clear(self) -> None:
        self._generation += 1
        self._state = CommentsState()
        self._post_uri = None
        self._post_cid = None
        self._pending_refresh = False
        self._release_waiters()

    def _release_waiters(self) -> None:
        waiters, self._refresh_waiters = self._refresh_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def reset(self) -> None:
        self._clear()
        self.notify_listeners()
