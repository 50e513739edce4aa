import argparse
import asyncio
import base64
import json
import logging
import os
from logging.config import dictConfig
from typing import Optional, Sequence

import sentry_sdk
from cryptography.fernet import Fernet

from social.coves.client.app.config import Settings
from social.coves.client.app.container import CovesClient
from social.coves.client.atproto.errors import ApiError, friendly_message
from social.coves.client.state.feed import FeedType

logger = logging.getLogger(__name__)


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    logging.getLogger().setLevel(logging.DEBUG)


async def gen_crypto_key() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def login_url(settings: Settings, handle: str) -> int:
    client = await CovesClient.create(settings)
    try:
        print(client.auth_store.login_url(handle))
    finally:
        await client.close()
    return 0


async def complete_sign_in(settings: Settings, callback_url: str) -> int:
    client = await CovesClient.create(settings)
    try:
        session = await client.auth_store.sign_in(callback_url)
        print(f"Signed in as {session.handle or session.did}")
    finally:
        await client.close()
    return 0


async def whoami(settings: Settings) -> int:
    client = await CovesClient.create(settings)
    try:
        session = client.auth_store.session
        if session is None:
            print("Not signed in")
            return 1
        print(f"{session.handle or '-'} {session.did} ({settings.environment})")
    finally:
        await client.close()
    return 0


async def refresh(settings: Settings) -> int:
    client = await CovesClient.create(settings)
    try:
        if not client.auth_store.is_authenticated:
            print("Not signed in")
            return 1
        if not await client.auth_store.refresh_token():
            print("Session expired, signed out")
            return 1
        print("Token refreshed")
    finally:
        await client.close()
    return 0


async def feed(
    settings: Settings, feed_type: FeedType, sort: str, timeframe: Optional[str]
) -> int:
    client = await CovesClient.create(settings)
    try:
        store = client.feed_store
        store.set_current_feed(feed_type)
        if sort != store.sort or timeframe != store.timeframe:
            await store.set_sort(sort, timeframe)
        else:
            await store.load_feed(store.current_feed, refresh=True)

        state = store.get_state(store.current_feed)
        if state.error is not None:
            print(state.error)
            return 1

        for item in state.posts:
            post = item.post
            score = client.vote_store.get_adjusted_score(post.uri, post.stats.score)
            title = post.title or post.text[:80]
            print(f"[{score:>4}] {post.community.name}: {title}")
            print(f"       {post.uri}")
    finally:
        await client.close()
    return 0


async def profile(settings: Settings, actor: str) -> int:
    client = await CovesClient.create(settings)
    try:
        store = client.profile_store
        await store.load_profile(actor)
        if store.profile is None:
            print(store.profile_error or "Profile not found")
            return 1

        user = store.profile
        stats = user.stats
        print(f"{user.display_label} ({user.handle or user.did})")
        if user.bio:
            print(user.bio)
        print(
            f"posts: {stats.post_count}  comments: {stats.comment_count}  "
            f"communities: {stats.community_count}"
        )
    finally:
        await client.close()
    return 0


async def logout(settings: Settings) -> int:
    client = await CovesClient.create(settings)
    try:
        await client.auth_store.sign_out()
        print("Signed out")
    finally:
        await client.close()
    return 0


async def realMain(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="coves-client", description="Coves client")

    subparsers = parser.add_subparsers(dest="command", required=True)

    login_url_parser = subparsers.add_parser(
        "login-url", help="Print the URL that starts sign-in"
    )
    login_url_parser.add_argument("handle", help="Handle or DID to sign in as.")

    complete_parser = subparsers.add_parser(
        "complete", help="Finish sign-in from the callback URL"
    )
    complete_parser.add_argument("callback_url", help="The URL the browser was redirected to.")

    _ = subparsers.add_parser("whoami", help="Show the signed-in account")
    _ = subparsers.add_parser("refresh", help="Refresh the session token")

    feed_parser = subparsers.add_parser("feed", help="Print the first page of a feed")
    feed_parser.add_argument(
        "--type",
        dest="feed_type",
        choices=[t.value for t in FeedType],
        default=FeedType.discover.value,
    )
    feed_parser.add_argument("--sort", default="hot", choices=["hot", "top", "new"])
    feed_parser.add_argument("--timeframe", default=None)

    profile_parser = subparsers.add_parser("profile", help="Show a user's profile")
    profile_parser.add_argument("actor", help="Handle or DID.")

    _ = subparsers.add_parser("logout", help="Sign out and forget the session")
    _ = subparsers.add_parser("gen-key", help="Generate an encryption key")

    args = vars(parser.parse_args(argv))
    command = args.get("command", None)

    if command == "gen-key":
        await gen_crypto_key()
        return 0

    settings = Settings()  # type: ignore

    if settings.sentry_dsn:
        sentry_sdk.init(dsn=settings.sentry_dsn, send_default_pii=False)

    try:
        if command == "login-url":
            return await login_url(settings, args["handle"])
        elif command == "complete":
            return await complete_sign_in(settings, args["callback_url"])
        elif command == "whoami":
            return await whoami(settings)
        elif command == "refresh":
            return await refresh(settings)
        elif command == "feed":
            return await feed(
                settings, FeedType(args["feed_type"]), args["sort"], args["timeframe"]
            )
        elif command == "profile":
            return await profile(settings, args["actor"])
        elif command == "logout":
            return await logout(settings)
    except ApiError as e:
        logger.debug(f"{command} failed", exc_info=True)
        print(friendly_message(e))
        return 1
    except ValueError as e:
        print(e)
        return 2

    return 0


def invoke():
    configure_logging()
    raise SystemExit(asyncio.run(realMain()))


if __name__ == "__main__":
    invoke()
