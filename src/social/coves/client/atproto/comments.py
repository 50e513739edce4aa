import logging

from pydantic import ValidationError as PydanticValidationError

from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.errors import UnknownError, ValidationError
from social.coves.client.model.comment import CreateCommentResponse

logger = logging.getLogger(__name__)

COMMENT_CREATE = "social.coves.community.comment.create"
COMMENT_DELETE = "social.coves.community.comment.delete"

MAX_COMMENT_LENGTH = 10000


class CommentService:
    """Creates and deletes comments through the backend, which writes them to the user's PDS."""

    def __init__(self, api_client: CovesApiClient) -> None:
        self._api_client = api_client

    async def create_comment(
        self,
        root_uri: str,
        root_cid: str,
        parent_uri: str,
        parent_cid: str,
        content: str,
    ) -> CreateCommentResponse:
        """
        Reply to a post or to another comment.

        The root is always the post; the parent is the post itself for a
        top-level comment or the comment being replied to.

        Raises:
            ValidationError: If the content is empty or too long
            UnknownError: If the server response lacks uri or cid
        """
        content = content.strip()
        if len(content) == 0:
            raise ValidationError("Comment cannot be empty")
        if len(content) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"Comment too long (max {MAX_COMMENT_LENGTH} characters)"
            )

        payload = await self._api_client.procedure(
            COMMENT_CREATE,
            {
                "reply": {
                    "root": {"uri": root_uri, "cid": root_cid},
                    "parent": {"uri": parent_uri, "cid": parent_cid},
                },
                "content": content,
            },
        )

        try:
            response = CreateCommentResponse.model_validate(payload)
        except PydanticValidationError as e:
            raise UnknownError(
                "Invalid response from server - missing uri or cid", original_error=e
            ) from e

        if len(response.uri) == 0 or len(response.cid) == 0:
            raise UnknownError("Invalid response from server - missing uri or cid")

        logger.debug(f"Created comment {response.uri}")
        return response

    async def delete_comment(self, uri: str) -> None:
        await self._api_client.procedure(COMMENT_DELETE, {"uri": uri})
        logger.debug(f"Deleted comment {uri}")
