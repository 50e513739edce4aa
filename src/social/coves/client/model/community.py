from typing import Any, Optional

from pydantic import field_validator

from social.coves.client.model.base import CovesModel, empty_if_none
from social.coves.client.model.post import CommunityViewerState


class CommunityView(CovesModel):
    did: str
    name: str
    handle: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[str] = None
    visibility: Optional[str] = None
    subscriber_count: Optional[int] = None
    member_count: Optional[int] = None
    post_count: Optional[int] = None
    viewer: Optional[CommunityViewerState] = None

    @property
    def display_handle(self) -> Optional[str]:
        return format_handle_for_display(self.handle)


class CommunitiesResponse(CovesModel):
    communities: list[CommunityView] = []
    cursor: Optional[str] = None

    @field_validator("communities", mode="before")
    @classmethod
    def communities_none_to_empty(cls, v: Any) -> Any:
        return empty_if_none(v)


class SubscribeResponse(CovesModel):
    uri: str
    cid: Optional[str] = None


def format_handle_for_display(handle: Optional[str]) -> Optional[str]:
    """
    Convert a DNS community handle to the display form.

    ``gaming.community.coves.social`` becomes ``!gaming@coves.social``.
    Returns None for anything that is not a community handle.
    """
    if not handle:
        return None

    parts = handle.split(".")
    if len(parts) < 4 or parts[1] != "community":
        return None

    return f"!{parts[0]}@{'.'.join(parts[2:])}"


def format_handle_for_dns(display_handle: Optional[str]) -> Optional[str]:
    """Inverse of ``format_handle_for_display``."""
    if not display_handle:
        return None

    cleaned = display_handle.removeprefix("!")
    parts = cleaned.split("@")
    if len(parts) != 2:
        return None

    return f"{parts[0]}.community.{parts[1]}"
