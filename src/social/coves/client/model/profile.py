from datetime import datetime
from typing import Any, Optional

from pydantic import field_validator, model_validator

from social.coves.client.model.base import CovesModel


class ProfileStats(CovesModel):
    post_count: int = 0
    comment_count: int = 0
    community_count: int = 0
    reputation: Optional[int] = None
    membership_count: int = 0

    @field_validator(
        "post_count", "comment_count", "community_count", "membership_count",
        mode="before",
    )
    @classmethod
    def clamp_count(cls, v: Any) -> int:
        if v is None:
            return 0
        return max(0, int(v))


class ProfileViewerState(CovesModel):
    blocked: bool = False
    blocked_by: bool = False
    block_uri: Optional[str] = None

    @model_validator(mode="after")
    def blocked_requires_uri(self) -> "ProfileViewerState":
        # a block without a record cannot be undone, so it is not shown as one
        if self.blocked and self.block_uri is None:
            self.blocked = False
        return self


class UserProfile(CovesModel):
    """
    A user's public profile.

    Older backends nest ``handle`` and ``createdAt`` under a ``profile``
    object; both layouts are accepted.
    """

    did: str
    handle: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar: Optional[str] = None
    banner: Optional[str] = None
    created_at: Optional[datetime] = None
    stats: ProfileStats = ProfileStats()
    viewer: Optional[ProfileViewerState] = None

    @model_validator(mode="before")
    @classmethod
    def lift_nested_profile(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        nested = data.get("profile")
        if isinstance(nested, dict):
            data = dict(data)
            for key in ("handle", "createdAt"):
                if data.get(key) is None and nested.get(key) is not None:
                    data[key] = nested[key]
        return data

    @field_validator("did")
    @classmethod
    def did_prefix(cls, v: str) -> str:
        if not v.startswith("did:"):
            raise ValueError(f"Invalid DID format: {v}")
        return v

    @field_validator("stats", mode="before")
    @classmethod
    def stats_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def display_label(self) -> str:
        return self.display_name or self.handle or self.did
