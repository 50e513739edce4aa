"""
Optimistic vote state.

A toggle is applied locally and announced to listeners before the backend
answers. The backend's answer then replaces the local guess, or, when the
call fails, the previous state is put back and the error is raised to the
caller.

Scores shown to the user are ``server score + adjustment``. The adjustment
is the sum of local changes the server has not reported yet, so it is reset
to zero as soon as fresh server data for the subject is applied.
"""

import logging
from typing import Dict, Optional

import sentry_sdk

from social.coves.client.atproto.errors import ApiError, UnknownError
from social.coves.client.atproto.votes import VoteService
from social.coves.client.model.vote import VoteDirection, VoteState, rkey_from_uri
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.notifier import ChangeNotifier

logger = logging.getLogger(__name__)


def _effect(state: Optional[VoteState]) -> int:
    return state.score_effect if state is not None else 0


class VoteStore(ChangeNotifier):
    def __init__(self, vote_service: VoteService, auth_store: AuthStore) -> None:
        super().__init__()
        self._vote_service = vote_service
        self._auth_store = auth_store

        self._votes: Dict[str, VoteState] = {}
        self._adjustments: Dict[str, int] = {}
        # last committed state of each subject with a call in flight
        self._pending: Dict[str, Optional[VoteState]] = {}

        self._auth_store.add_listener(self._on_auth_changed)

    def dispose(self) -> None:
        self._auth_store.remove_listener(self._on_auth_changed)

    def _on_auth_changed(self) -> None:
        if not self._auth_store.is_authenticated and (
            len(self._votes) > 0 or len(self._adjustments) > 0
        ):
            logger.debug("Signed out, clearing vote state")
            self.clear()

    def get_vote_state(self, post_uri: str) -> Optional[VoteState]:
        return self._votes.get(post_uri)

    def is_liked(self, post_uri: str) -> bool:
        state = self._votes.get(post_uri)
        return state is not None and state.is_active and state.direction == VoteDirection.up

    def is_pending(self, post_uri: str) -> bool:
        return post_uri in self._pending

    def get_adjustment(self, post_uri: str) -> int:
        return self._adjustments.get(post_uri, 0)

    def get_adjusted_score(self, post_uri: str, server_score: int) -> int:
        return server_score + self._adjustments.get(post_uri, 0)

    def _set_adjustment(self, post_uri: str, value: int) -> None:
        if value == 0:
            self._adjustments.pop(post_uri, None)
        else:
            self._adjustments[post_uri] = value

    async def toggle_vote(
        self,
        post_uri: str,
        post_cid: str,
        direction: str = VoteDirection.up,
    ) -> bool:
        """
        Toggle the user's vote on a post or comment.

        Voting again in the same direction removes the vote, voting in the
        other direction switches it. A toggle on a subject whose previous
        toggle is still in flight is ignored.

        Returns:
            True if the subject has an active vote in ``direction`` afterwards.
            For an ignored toggle, whether the last committed vote is active
            in ``direction``.

        Raises:
            ApiError: If the backend call failed; local state is rolled back
            UnknownError: If anything else went wrong; local state is rolled back
        """
        direction = VoteDirection(direction)

        if post_uri in self._pending:
            logger.debug(f"Vote on {post_uri} already in flight, ignoring")
            committed = self._pending[post_uri]
            return committed is not None and committed.is_active and committed.direction == direction

        previous = self._votes.get(post_uri)

        if previous is not None and previous.is_active and previous.direction == direction:
            optimistic = VoteState(
                direction=direction,
                uri=previous.uri,
                rkey=previous.rkey,
                deleted=True,
            )
        else:
            optimistic = VoteState(direction=direction)

        self._replace(post_uri, previous, optimistic)
        self.notify_listeners()

        self._pending[post_uri] = previous
        did = self._auth_store.did

        try:
            response = await self._vote_service.create_vote(
                post_uri=post_uri,
                post_cid=post_cid,
                direction=direction,
                existing_direction=(
                    previous.direction
                    if previous is not None and previous.is_active
                    else None
                ),
            )
        except ApiError as e:
            logger.warning(f"Vote on {post_uri} failed, rolling back: {e}")
            self._rollback(post_uri, optimistic, previous)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error voting on {post_uri}, rolling back")
            self._rollback(post_uri, optimistic, previous)
            sentry_sdk.capture_exception(e)
            raise UnknownError(f"Unexpected error: {e}", 500, e) from e
        finally:
            self._pending.pop(post_uri, None)

        if self._auth_store.did != did:
            logger.debug(f"Session changed while voting on {post_uri}, dropping response")
            return not response.deleted

        if response.deleted:
            confirmed = VoteState(direction=direction, deleted=True)
        else:
            confirmed = VoteState(direction=direction, uri=response.uri, rkey=response.rkey)

        if self._votes.get(post_uri) is optimistic:
            self._replace(post_uri, optimistic, confirmed)
            self.notify_listeners()
        else:
            logger.debug(f"Server state for {post_uri} arrived while voting, keeping it")
        return not response.deleted

    def _replace(
        self, post_uri: str, old: Optional[VoteState], new: Optional[VoteState]
    ) -> None:
        """Swap one local vote for another, moving the adjustment by the difference."""
        if new is None:
            self._votes.pop(post_uri, None)
        else:
            self._votes[post_uri] = new
        self._set_adjustment(
            post_uri, self._adjustments.get(post_uri, 0) + _effect(new) - _effect(old)
        )

    def _rollback(
        self, post_uri: str, optimistic: VoteState, previous: Optional[VoteState]
    ) -> None:
        # a sign-out or fresh server data already replaced the optimistic vote
        if self._votes.get(post_uri) is not optimistic:
            return
        self._replace(post_uri, optimistic, previous)
        self.notify_listeners()

    def set_initial_vote_state(
        self,
        post_uri: str,
        vote_direction: Optional[str] = None,
        vote_uri: Optional[str] = None,
    ) -> None:
        """
        Replace local state with what the server reported for a subject.

        An absent direction means the user has no vote, which also clears a
        vote that was removed on another device. Listeners are not notified;
        callers apply this while handling a fetch and notify once afterwards.
        """
        if vote_direction is not None:
            self._votes[post_uri] = VoteState(
                direction=vote_direction,
                uri=vote_uri,
                rkey=rkey_from_uri(vote_uri),
            )
        else:
            self._votes.pop(post_uri, None)
        self._adjustments.pop(post_uri, None)

    def clear(self) -> None:
        self._votes.clear()
        self._adjustments.clear()
        self._pending.clear()
        self.notify_listeners()
