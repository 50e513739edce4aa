from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from social.coves.client.model.comment import CommentView, ThreadViewComment
from social.coves.client.model.post import FeedViewPost

T = TypeVar("T")


@dataclass(frozen=True)
class PageState(Generic[T]):
    """
    Cursor-paginated list state.

    Refresh replaces ``items`` and ``cursor``; loading more appends. When the
    backend stops returning a cursor, ``has_more`` turns False.
    """

    items: list[T] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = True
    is_loading: bool = False
    is_loading_more: bool = False
    error: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self.is_loading or self.is_loading_more

    def copy(self, **changes: Any) -> "PageState[T]":
        return replace(self, **changes)


@dataclass(frozen=True)
class FeedState(PageState[FeedViewPost]):
    scroll_position: float = 0.0
    last_refresh_time: Optional[datetime] = None

    @property
    def posts(self) -> list[FeedViewPost]:
        return self.items

    def copy(self, **changes: Any) -> "FeedState":
        return replace(self, **changes)


@dataclass(frozen=True)
class CommentsState(PageState[ThreadViewComment]):
    @property
    def comments(self) -> list[ThreadViewComment]:
        return self.items

    def copy(self, **changes: Any) -> "CommentsState":
        return replace(self, **changes)


@dataclass(frozen=True)
class ActorCommentsState(PageState[CommentView]):
    @property
    def comments(self) -> list[CommentView]:
        return self.items

    def copy(self, **changes: Any) -> "ActorCommentsState":
        return replace(self, **changes)
