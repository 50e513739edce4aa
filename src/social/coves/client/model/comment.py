from datetime import datetime
from typing import Any, Iterator, Optional

from pydantic import field_validator

from social.coves.client.model.base import CovesModel, empty_if_none
from social.coves.client.model.post import AuthorView, ViewerVoteState


class CommentRef(CovesModel):
    """Strong reference to a record: its URI and content hash."""

    uri: str
    cid: str


class CommentStats(CovesModel):
    upvotes: int = 0
    downvotes: int = 0
    score: int = 0


class CommentView(CovesModel):
    uri: str
    cid: str
    content: str
    content_facets: list[dict[str, Any]] = []
    created_at: datetime
    indexed_at: Optional[datetime] = None
    author: AuthorView
    post: CommentRef
    parent: Optional[CommentRef] = None
    stats: CommentStats = CommentStats()
    viewer: Optional[ViewerVoteState] = None
    embed: Optional[dict[str, Any]] = None

    @field_validator("content_facets", mode="before")
    @classmethod
    def facets_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)

    @field_validator("stats", mode="before")
    @classmethod
    def stats_default(cls, v: Any) -> Any:
        return {} if v is None else v


class ThreadViewComment(CovesModel):
    """A comment with its loaded replies."""

    comment: CommentView
    replies: list["ThreadViewComment"] = []
    has_more: bool = False

    @field_validator("replies", mode="before")
    @classmethod
    def replies_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)

    def walk(self) -> Iterator[CommentView]:
        """Depth-first iteration over this comment and every loaded reply."""
        yield self.comment
        for reply in self.replies:
            yield from reply.walk()


class CommentsResponse(CovesModel):
    comments: list[ThreadViewComment] = []
    post: Optional[Any] = None
    cursor: Optional[str] = None

    @field_validator("comments", mode="before")
    @classmethod
    def comments_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)


class ActorCommentsResponse(CovesModel):
    comments: list[CommentView] = []
    cursor: Optional[str] = None

    @field_validator("comments", mode="before")
    @classmethod
    def comments_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)


class CreateCommentResponse(CovesModel):
    uri: str
    cid: str


def walk_threads(threads: list[ThreadViewComment]) -> Iterator[CommentView]:
    for thread in threads:
        yield from thread.walk()
