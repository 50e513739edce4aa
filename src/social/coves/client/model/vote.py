from dataclasses import dataclass
from enum import StrEnum
from typing import Optional


class VoteDirection(StrEnum):
    up = "up"
    down = "down"


def rkey_from_uri(uri: Optional[str]) -> Optional[str]:
    """Record key of an AT-URI, its last path segment."""
    if not uri:
        return None
    return uri.rstrip("/").split("/")[-1] or None


@dataclass(frozen=True)
class VoteState:
    """
    The local view of the user's vote on one post or comment.

    ``uri`` and ``rkey`` stay None until the server confirms the vote record.
    A deleted state remembers the direction it used to have.
    """

    direction: str
    uri: Optional[str] = None
    rkey: Optional[str] = None
    deleted: bool = False

    @property
    def is_active(self) -> bool:
        return not self.deleted

    @property
    def score_effect(self) -> int:
        """Contribution of this vote to the subject's score."""
        if self.deleted:
            return 0
        if self.direction == VoteDirection.up:
            return 1
        if self.direction == VoteDirection.down:
            return -1
        return 0


@dataclass(frozen=True)
class VoteResponse:
    uri: Optional[str] = None
    cid: Optional[str] = None
    rkey: Optional[str] = None
    deleted: bool = False
