import logging
from typing import Optional

from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.errors import UnknownError
from social.coves.client.model.vote import VoteDirection, VoteResponse, rkey_from_uri

logger = logging.getLogger(__name__)

VOTE_CREATE = "social.coves.feed.vote.create"
VOTE_DELETE = "social.coves.feed.vote.delete"


class VoteService:
    """
    Writes vote records through the backend.

    A subject has at most one vote per user. Voting in the direction of the
    existing vote removes it; voting the other way replaces it.
    """

    def __init__(self, api_client: CovesApiClient) -> None:
        self._api_client = api_client

    async def create_vote(
        self,
        post_uri: str,
        post_cid: str,
        direction: str = VoteDirection.up,
        existing_direction: Optional[str] = None,
    ) -> VoteResponse:
        """
        Toggle a vote on a post or comment.

        Args:
            post_uri: AT-URI of the subject
            post_cid: CID of the subject
            direction: ``up`` or ``down``
            existing_direction: Direction of the user's current active vote, if any

        Returns:
            ``VoteResponse(deleted=True)`` when the vote was removed, otherwise
            the new vote record's uri, cid and rkey
        """
        direction = VoteDirection(direction)
        subject = {"uri": post_uri, "cid": post_cid}

        if existing_direction is not None:
            await self._api_client.procedure(VOTE_DELETE, {"subject": subject})
            if existing_direction == direction:
                logger.debug(f"Removed {direction} vote on {post_uri}")
                return VoteResponse(deleted=True)

        payload = await self._api_client.procedure(
            VOTE_CREATE, {"subject": subject, "direction": str(direction)}
        )

        uri = payload.get("uri") if isinstance(payload, dict) else None
        if not isinstance(uri, str) or len(uri) == 0:
            raise UnknownError("Invalid response from server - missing vote uri")

        logger.debug(f"Created {direction} vote on {post_uri}")
        return VoteResponse(uri=uri, cid=payload.get("cid"), rkey=rkey_from_uri(uri))
