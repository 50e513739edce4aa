from datetime import datetime
from typing import Any, Optional

from pydantic import field_validator

from social.coves.client.model.base import CovesModel, empty_if_none


class AuthorView(CovesModel):
    did: str
    handle: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None


class CommunityViewerState(CovesModel):
    subscribed: Optional[bool] = None
    member: Optional[bool] = None


class CommunityRef(CovesModel):
    """The community a post was made in, as embedded in a post view."""

    did: str
    name: str
    handle: Optional[str] = None
    avatar: Optional[str] = None
    viewer: Optional[CommunityViewerState] = None


class PostStats(CovesModel):
    upvotes: int = 0
    downvotes: int = 0
    score: int = 0
    comment_count: int = 0


class ViewerVoteState(CovesModel):
    """The signed-in user's relationship to a post or comment."""

    vote: Optional[str] = None
    vote_uri: Optional[str] = None


class PostView(CovesModel):
    uri: str
    cid: str
    rkey: Optional[str] = None
    author: AuthorView
    community: CommunityRef
    created_at: datetime
    indexed_at: Optional[datetime] = None
    text: str = ""
    title: Optional[str] = None
    stats: PostStats = PostStats()
    embed: Optional[dict[str, Any]] = None
    facets: list[dict[str, Any]] = []
    viewer: Optional[ViewerVoteState] = None

    @field_validator("facets", mode="before")
    @classmethod
    def facets_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)

    @property
    def viewer_vote(self) -> Optional[str]:
        return self.viewer.vote if self.viewer is not None else None

    @property
    def viewer_vote_uri(self) -> Optional[str]:
        return self.viewer.vote_uri if self.viewer is not None else None


class FeedViewPost(CovesModel):
    post: PostView
    reason: Optional[dict[str, Any]] = None


class TimelineResponse(CovesModel):
    """One page of a feed."""

    feed: list[FeedViewPost] = []
    cursor: Optional[str] = None

    @field_validator("feed", mode="before")
    @classmethod
    def feed_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)


class ActorPostsResponse(TimelineResponse):
    pass


class CreatePostResponse(CovesModel):
    uri: str
    cid: str
