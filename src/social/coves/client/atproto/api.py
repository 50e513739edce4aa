"""
Typed client for the Coves XRPC backend.

Every call goes through a ``ChainMiddlewareClient`` built from three
middlewares, outermost first:

1. ``StatsdMiddleware`` times and counts each attempt
2. ``RefreshOnUnauthorizedMiddleware`` turns a 401 into one refresh and one
   retry, and signs out when that is not enough
3. ``BearerTokenMiddleware`` reads the current token on every attempt, so the
   retry carries the refreshed one

Failures leave this module as ``ApiError`` subclasses only.
"""

import asyncio
import logging
from typing import Any, Mapping, Optional, Type, TypeVar

import aiohttp
from aiohttp import ClientSession, hdrs
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from social.coves.client.app.config import Settings
from social.coves.client.app.metrics import MetricsClient, NoOpMetricsClient
from social.coves.client.atproto.chain import (
    BearerTokenMiddleware,
    ChainMiddlewareClient,
    RefreshOnUnauthorizedMiddleware,
    SignOutHandler,
    StatsdMiddleware,
    TokenGetter,
    TokenRefresher,
)
from social.coves.client.atproto.errors import (
    UnknownError,
    error_for_exception,
    error_for_status,
)
from social.coves.client.model.comment import ActorCommentsResponse, CommentsResponse
from social.coves.client.model.community import CommunitiesResponse
from social.coves.client.model.post import (
    ActorPostsResponse,
    CreatePostResponse,
    TimelineResponse,
)
from social.coves.client.model.profile import UserProfile

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _query(params: Mapping[str, Any]) -> dict[str, str]:
    """Drop unset parameters and render the rest the way XRPC expects."""
    query: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            query[key] = "true" if value else "false"
        else:
            query[key] = str(value)
    return query


class CovesApiClient:
    """
    Backend API for feeds, comments, communities and profiles.

    ``token_refresher`` must return True when a new token is available and
    False otherwise; it must not raise.
    """

    def __init__(
        self,
        settings: Settings,
        token_getter: TokenGetter,
        token_refresher: TokenRefresher,
        sign_out_handler: SignOutHandler,
        http_session: Optional[ClientSession] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._settings = settings
        self._api_url = settings.environment_config().api_url
        self._token_getter = token_getter
        self._token_refresher = token_refresher
        self._sign_out_handler = sign_out_handler
        self._metrics_client = metrics_client or NoOpMetricsClient()

        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._chain_client: Optional[ChainMiddlewareClient] = None

    @property
    def api_url(self) -> str:
        return self._api_url

    async def initialize(self) -> None:
        if self._chain_client is not None:
            return

        if self._http_session is None:
            self._http_session = ClientSession(timeout=self._settings.client_timeout())

        self._chain_client = ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=[
                StatsdMiddleware(self._metrics_client, self._settings.statsd_prefix),
                RefreshOnUnauthorizedMiddleware(
                    self._token_refresher, self._sign_out_handler
                ),
                BearerTokenMiddleware(self._token_getter),
            ],
            attempt_max=2,
        )

    async def close(self) -> None:
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None
        self._chain_client = None

    def _client(self) -> ChainMiddlewareClient:
        if self._chain_client is None:
            raise RuntimeError("CovesApiClient.initialize() has not been called")
        return self._chain_client

    async def _request(
        self,
        method: str,
        nsid: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._api_url}/xrpc/{nsid}"
        kwargs: dict[str, Any] = {}
        if params is not None:
            kwargs["params"] = _query(params)
        if body is not None:
            kwargs["json"] = body

        try:
            async with self._client().request(method, url, **kwargs) as (
                _,
                chain_response,
            ):
                status = chain_response.status
                payload = chain_response.body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"{method} {nsid} failed: {e}")
            raise error_for_exception(e) from e
        except ValueError as e:
            raise UnknownError(
                "Invalid data received from server", original_error=e
            ) from e

        if not 200 <= status < 300:
            logger.debug(f"{method} {nsid} returned {status}")
            raise error_for_status(status, payload)

        return payload

    async def query(self, nsid: str, **params: Any) -> Any:
        """GET an XRPC query; None-valued parameters are left out."""
        return await self._request(hdrs.METH_GET, nsid, params=params)

    async def procedure(self, nsid: str, body: dict[str, Any]) -> Any:
        """POST an XRPC procedure with a JSON body."""
        return await self._request(hdrs.METH_POST, nsid, body=body)

    @staticmethod
    def _parse(model: Type[M], payload: Any) -> M:
        try:
            return model.model_validate(payload)
        except PydanticValidationError as e:
            logger.warning(f"Could not parse {model.__name__}: {e}")
            raise UnknownError(
                "Invalid data received from server", original_error=e
            ) from e

    async def get_timeline(
        self,
        sort: str = "hot",
        timeframe: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> TimelineResponse:
        """The signed-in user's feed of posts from subscribed communities."""
        payload = await self.query(
            "social.coves.feed.getTimeline",
            sort=sort,
            limit=limit or self._settings.feed_page_size,
            timeframe=timeframe,
            cursor=cursor,
        )
        return self._parse(TimelineResponse, payload)

    async def get_discover(
        self,
        sort: str = "hot",
        timeframe: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> TimelineResponse:
        """The public feed. Works without a session."""
        payload = await self.query(
            "social.coves.feed.getDiscover",
            sort=sort,
            limit=limit or self._settings.feed_page_size,
            timeframe=timeframe,
            cursor=cursor,
        )
        return self._parse(TimelineResponse, payload)

    async def get_comments(
        self,
        post_uri: str,
        sort: str = "hot",
        timeframe: Optional[str] = None,
        depth: int = 10,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> CommentsResponse:
        payload = await self.query(
            "social.coves.community.comment.getComments",
            post=post_uri,
            sort=sort,
            depth=depth,
            limit=limit or self._settings.comments_page_size,
            timeframe=timeframe,
            cursor=cursor,
        )
        return self._parse(CommentsResponse, payload)

    async def list_communities(
        self,
        limit: int = 50,
        cursor: Optional[str] = None,
        sort: str = "popular",
        subscribed: Optional[bool] = None,
    ) -> CommunitiesResponse:
        payload = await self.query(
            "social.coves.community.list",
            limit=limit,
            sort=sort,
            cursor=cursor,
            subscribed=subscribed,
        )
        return self._parse(CommunitiesResponse, payload)

    async def create_post(
        self,
        community: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        embed: Optional[dict[str, Any]] = None,
        langs: Optional[list[str]] = None,
        labels: Optional[dict[str, Any]] = None,
    ) -> CreatePostResponse:
        body: dict[str, Any] = {"community": community}
        if title is not None:
            body["title"] = title
        if content is not None:
            body["content"] = content
        if embed is not None:
            body["embed"] = embed
        if langs:
            body["langs"] = langs
        if labels is not None:
            body["labels"] = labels

        payload = await self.procedure("social.coves.community.post.create", body)
        return self._parse(CreatePostResponse, payload)

    async def subscribe_to_community(self, community: str) -> str:
        """
        Subscribe the signed-in user to a community (DID or handle).

        Returns:
            The URI of the subscription record
        """
        payload = await self.procedure(
            "social.coves.community.subscribe", {"community": community}
        )
        uri = payload.get("uri") if isinstance(payload, dict) else None
        if not isinstance(uri, str) or len(uri) == 0:
            raise UnknownError("Server returned invalid subscription response")
        return uri

    async def unsubscribe_from_community(self, community: str) -> None:
        await self.procedure("social.coves.community.unsubscribe", {"community": community})

    async def get_profile(self, actor: str) -> UserProfile:
        payload = await self.query("social.coves.actor.getprofile", actor=actor)
        return self._parse(UserProfile, payload)

    async def get_actor_posts(
        self,
        actor: str,
        filter: Optional[str] = None,
        community: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> ActorPostsResponse:
        payload = await self.query(
            "social.coves.actor.getPosts",
            actor=actor,
            filter=filter,
            community=community,
            limit=limit or self._settings.feed_page_size,
            cursor=cursor,
        )
        return self._parse(ActorPostsResponse, payload)

    async def get_actor_comments(
        self,
        actor: str,
        community: Optional[str] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> ActorCommentsResponse:
        payload = await self.query(
            "social.coves.actor.getComments",
            actor=actor,
            community=community,
            limit=limit or self._settings.comments_page_size,
            cursor=cursor,
        )
        return self._parse(ActorCommentsResponse, payload)

    async def update_profile(
        self,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[dict[str, Any]] = None,
        banner: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Update the signed-in user's profile.

        ``avatar`` and ``banner`` are blob references of images that were
        uploaded beforehand; fields left as None are not sent.
        """
        body: dict[str, Any] = {}
        if display_name is not None:
            body["displayName"] = display_name
        if bio is not None:
            body["bio"] = bio
        if avatar is not None:
            body["avatar"] = avatar
        if banner is not None:
            body["banner"] = banner

        await self.procedure("social.coves.actor.updateProfile", body)
