import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Optional

import aiohttp

from social.coves.client.app.config import Settings
from social.coves.client.app.metrics import MetricsClient, create_metrics_client
from social.coves.client.atproto.api import CovesApiClient
from social.coves.client.atproto.auth import CovesAuthService
from social.coves.client.atproto.comments import CommentService
from social.coves.client.atproto.votes import VoteService
from social.coves.client.state.auth import AuthStore
from social.coves.client.state.comments import CommentsStore
from social.coves.client.state.feed import MultiFeedStore
from social.coves.client.state.profile import UserProfileStore
from social.coves.client.state.subscriptions import SubscriptionStore
from social.coves.client.state.votes import VoteStore
from social.coves.client.storage import SecureStorage, create_secure_storage

logger = logging.getLogger(__name__)


def _trace_config(debug: bool) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logger.debug("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logger.debug(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


@dataclass
class CovesClient:
    """Every long-lived object of a client process, wired together."""

    settings: Settings
    http_session: aiohttp.ClientSession
    metrics_client: MetricsClient
    storage: SecureStorage
    auth_service: CovesAuthService
    auth_store: AuthStore
    api_client: CovesApiClient
    vote_store: VoteStore
    subscription_store: SubscriptionStore
    feed_store: MultiFeedStore
    comments_store: CommentsStore
    profile_store: UserProfileStore

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        storage: Optional[SecureStorage] = None,
    ) -> "CovesClient":
        """
        Build and initialize the client, restoring any saved session.

        Stores are created before the session is restored so that they see
        the sign-in transition and load per-user data.
        """
        if settings is None:
            settings = Settings()  # type: ignore

        logger.info(f"Starting Coves client for {settings.environment}")

        http_session = aiohttp.ClientSession(
            timeout=settings.client_timeout(),
            trace_configs=[_trace_config(settings.debug)],
        )
        metrics_client = await create_metrics_client(
            settings.metrics_backend,
            settings.statsd_host,
            settings.statsd_port,
            debug=settings.debug,
        )
        if storage is None:
            storage = create_secure_storage(settings)

        auth_service = CovesAuthService(
            settings, storage, http_session=http_session, metrics_client=metrics_client
        )
        auth_store = AuthStore(auth_service)

        api_client = CovesApiClient(
            settings,
            token_getter=auth_store.get_access_token,
            token_refresher=auth_store.refresh_token,
            sign_out_handler=auth_store.sign_out,
            http_session=http_session,
            metrics_client=metrics_client,
        )
        await api_client.initialize()

        vote_store = VoteStore(VoteService(api_client), auth_store)
        subscription_store = SubscriptionStore(api_client, auth_store)

        client = cls(
            settings=settings,
            http_session=http_session,
            metrics_client=metrics_client,
            storage=storage,
            auth_service=auth_service,
            auth_store=auth_store,
            api_client=api_client,
            vote_store=vote_store,
            subscription_store=subscription_store,
            feed_store=MultiFeedStore(
                api_client, auth_store, vote_store, subscription_store
            ),
            comments_store=CommentsStore(
                api_client, auth_store, vote_store, CommentService(api_client)
            ),
            profile_store=UserProfileStore(
                api_client,
                auth_store,
                vote_store,
                cache_size=settings.profile_cache_size,
                metrics_client=metrics_client,
                metrics_prefix=settings.statsd_prefix,
            ),
        )

        await auth_store.initialize()

        logger.info("Startup complete")
        return client

    async def close(self) -> None:
        logger.info("Shutting down")

        for store in (
            self.profile_store,
            self.comments_store,
            self.feed_store,
            self.vote_store,
        ):
            store.dispose()

        tasks = self.subscription_store.dispose()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self.auth_service.close()
        await self.api_client.close()
        await self.http_session.close()
        await self.storage.close()
        await self.metrics_client.close()
