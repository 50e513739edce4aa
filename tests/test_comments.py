"""
Tests for CommentService and CommentsStore.

The deferred refresh tests drive a fake ``get_comments`` that blocks until
released and records how many fetches run at once.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from social.coves.client.atproto.comments import (
    COMMENT_CREATE,
    COMMENT_DELETE,
    MAX_COMMENT_LENGTH,
    CommentService,
)
from social.coves.client.atproto.errors import (
    AuthenticationError,
    NetworkError,
    UnknownError,
    ValidationError,
)
from social.coves.client.atproto.votes import VoteService
from social.coves.client.model.comment import CommentsResponse, CreateCommentResponse
from social.coves.client.model.vote import VoteResponse
from social.coves.client.state.comments import CommentsStore
from social.coves.client.state.votes import VoteStore
from tests.test_helpers import comments_json, post_uri, thread_json, vote_uri

P1 = post_uri("p1")
P2 = post_uri("p2")


def page(threads, cursor=None) -> CommentsResponse:
    return CommentsResponse.model_validate(comments_json(threads, cursor=cursor))


class GatedComments:
    """A get_comments stand-in whose calls can be held open."""

    def __init__(self) -> None:
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.gate = asyncio.Event()
        self.gate.set()
        self.pages = {}

    async def __call__(self, post_uri, sort="hot", timeframe=None, cursor=None):
        self.calls.append((post_uri, sort, cursor))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        result = self.pages.get((post_uri, cursor), page([]))
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def gated():
    gated = GatedComments()
    gated.pages[(P1, None)] = page([thread_json("c1"), thread_json("c2")], cursor="k1")
    gated.pages[(P1, "k1")] = page([thread_json("c3")])
    gated.pages[(P2, None)] = page([thread_json("x1", root_rkey="p2")])
    return gated


@pytest.fixture
def api_client(gated):
    api = Mock()
    api.get_comments = gated
    api.procedure = AsyncMock(return_value={"uri": "at://new", "cid": "bafy"})
    return api


@pytest.fixture
def vote_service():
    service = Mock(spec=VoteService)
    service.create_vote = AsyncMock(return_value=VoteResponse(uri=vote_uri("v9"), rkey="v9"))
    return service


@pytest.fixture
def vote_store(vote_service, auth_store):
    store = VoteStore(vote_service, auth_store)
    yield store
    store.dispose()


@pytest.fixture
def store(api_client, auth_store, vote_store):
    store = CommentsStore(api_client, auth_store, vote_store)
    yield store
    store.dispose()


def uris(store):
    return [t.comment.uri.rsplit("/", 1)[-1] for t in store.comments]


class TestCommentService:
    async def test_create_top_level(self):
        api = Mock()
        api.procedure = AsyncMock(return_value={"uri": "at://c", "cid": "bafy"})

        response = await CommentService(api).create_comment(P1, "cid-p1", P1, "cid-p1", "  hi  ")

        api.procedure.assert_awaited_once_with(
            COMMENT_CREATE,
            {
                "reply": {
                    "root": {"uri": P1, "cid": "cid-p1"},
                    "parent": {"uri": P1, "cid": "cid-p1"},
                },
                "content": "hi",
            },
        )
        assert response == CreateCommentResponse(uri="at://c", cid="bafy")

    @pytest.mark.parametrize("content", ["", "   ", "x" * (MAX_COMMENT_LENGTH + 1)])
    async def test_rejects_invalid_content(self, content):
        api = Mock()
        api.procedure = AsyncMock()

        with pytest.raises(ValidationError):
            await CommentService(api).create_comment(P1, "c", P1, "c", content)

        api.procedure.assert_not_called()

    async def test_invalid_response(self):
        api = Mock()
        api.procedure = AsyncMock(return_value={"uri": "at://c"})

        with pytest.raises(UnknownError):
            await CommentService(api).create_comment(P1, "c", P1, "c", "hi")

    async def test_delete(self):
        api = Mock()
        api.procedure = AsyncMock(return_value={})

        await CommentService(api).delete_comment("at://c")

        api.procedure.assert_awaited_once_with(COMMENT_DELETE, {"uri": "at://c"})


class TestLoadComments:
    async def test_first_load_and_more(self, store, gated):
        await store.load_comments(P1, "cid-p1")

        assert uris(store) == ["c1", "c2"]
        assert store.state.has_more

        await store.load_more_comments()

        assert uris(store) == ["c1", "c2", "c3"]
        assert not store.state.has_more
        assert [c[2] for c in gated.calls] == [None, "k1"]

    async def test_nested_replies_initialize_votes(self, store, gated, vote_store):
        gated.pages[(P1, None)] = page(
            [
                thread_json(
                    "c1",
                    replies=[thread_json("r1", parent="c1", vote="down", vote_uri_value=vote_uri("v1"))],
                )
            ]
        )

        await store.load_comments(P1, "cid-p1")

        reply_uri = store.comments[0].replies[0].comment.uri
        assert vote_store.get_vote_state(reply_uri).direction == "down"
        assert store.find_comment(reply_uri) is not None
        assert store.find_comment("at://missing") is None

    async def test_failed_refresh_keeps_comments(self, store, gated):
        await store.load_comments(P1, "cid-p1")
        gated.pages[(P1, None)] = NetworkError("offline")

        await store.refresh_comments()

        assert uris(store) == ["c1", "c2"]
        assert store.state.error == "Please check your internet connection"
        assert not store.state.is_loading

        store.clear_error()
        assert store.state.error is None

    async def test_switching_post_discards_previous(self, store, gated):
        await store.load_comments(P1, "cid-p1")

        await store.load_comments(P2, "cid-p2")

        assert store.post_uri == P2
        assert uris(store) == ["x1"]


class TestDeferredRefresh:
    async def test_refresh_runs_after_pending_load_more(self, store, gated):
        await store.load_comments(P1, "cid-p1")
        gated.gate.clear()

        more = asyncio.create_task(store.load_more_comments())
        await asyncio.sleep(0)
        assert store.state.is_loading_more

        refresh = asyncio.create_task(store.load_comments(P1, refresh=True))
        await asyncio.sleep(0)
        assert store.has_pending_refresh
        assert len(gated.calls) == 2
        assert not refresh.done()

        gated.gate.set()
        await asyncio.gather(more, refresh)

        assert [c[2] for c in gated.calls] == [None, "k1", None]
        assert gated.max_active == 1
        assert not store.has_pending_refresh
        assert uris(store) == ["c1", "c2"]

    async def test_many_refresh_requests_coalesce(self, store, gated):
        gated.gate.clear()

        first = asyncio.create_task(store.load_comments(P1, "cid-p1"))
        await asyncio.sleep(0)
        others = [
            asyncio.create_task(store.load_comments(P1, refresh=True)) for _ in range(3)
        ]
        await asyncio.sleep(0)

        gated.gate.set()
        await asyncio.gather(first, *others)

        assert len(gated.calls) == 2
        assert gated.max_active == 1

    async def test_load_more_while_busy_is_ignored(self, store, gated):
        gated.gate.clear()

        first = asyncio.create_task(store.load_comments(P1, "cid-p1"))
        await asyncio.sleep(0)
        await store.load_comments(P1)

        gated.gate.set()
        await first

        assert len(gated.calls) == 1

    async def test_switching_post_releases_deferred_callers(self, store, gated):
        gated.gate.clear()

        first = asyncio.create_task(store.load_comments(P1, "cid-p1"))
        await asyncio.sleep(0)
        deferred = asyncio.create_task(store.load_comments(P1, refresh=True))
        await asyncio.sleep(0)

        store.reset()
        await asyncio.sleep(0)
        assert deferred.done()

        gated.gate.set()
        await first

        assert store.comments == []
        assert store.post_uri is None
        assert len(gated.calls) == 1


class TestSortOption:
    async def test_change_reloads(self, store, gated):
        await store.load_comments(P1, "cid-p1")

        assert await store.set_sort_option("new") is True

        assert store.sort == "new"
        assert gated.calls[-1] == (P1, "new", None)

    async def test_failed_reload_restores_previous_sort(self, store, gated):
        await store.load_comments(P1, "cid-p1")
        gated.pages[(P1, None)] = NetworkError("offline")

        assert await store.set_sort_option("top", "day") is False

        assert store.sort == "hot"
        assert store.timeframe is None

    async def test_unchanged(self, store, gated):
        assert await store.set_sort_option("hot") is True
        assert gated.calls == []


class TestMutations:
    async def test_create_comment_refreshes(self, store, api_client, gated):
        await store.load_comments(P1, "cid-p1")

        response = await store.create_comment("hello")

        assert response.uri == "at://new"
        body = api_client.procedure.await_args.args[1]
        assert body["reply"]["parent"] == {"uri": P1, "cid": "cid-p1"}
        assert len(gated.calls) == 2

    async def test_reply_to_comment(self, store, api_client):
        await store.load_comments(P1, "cid-p1")

        await store.create_comment("hello", parent_uri="at://c1", parent_cid="cid-c1")

        body = api_client.procedure.await_args.args[1]
        assert body["reply"]["root"] == {"uri": P1, "cid": "cid-p1"}
        assert body["reply"]["parent"] == {"uri": "at://c1", "cid": "cid-c1"}

    async def test_create_comment_requires_sign_in(self, store, auth_store):
        await store.load_comments(P1, "cid-p1")
        await auth_store.sign_out()

        with pytest.raises(AuthenticationError):
            await store.create_comment("hello")

    async def test_create_comment_requires_post(self, store):
        with pytest.raises(ValidationError, match="No post loaded"):
            await store.create_comment("hello")

    async def test_delete_comment_refreshes(self, store, api_client, gated):
        await store.load_comments(P1, "cid-p1")

        await store.delete_comment("at://c1")

        api_client.procedure.assert_awaited_once_with(COMMENT_DELETE, {"uri": "at://c1"})
        assert len(gated.calls) == 2

    async def test_vote_on_comment(self, store, vote_store):
        assert await store.vote_on_comment("at://c1", "cid-c1") is True
        assert vote_store.get_adjustment("at://c1") == 1

    async def test_vote_without_vote_store(self, api_client, auth_store):
        store = CommentsStore(api_client, auth_store)

        with pytest.raises(RuntimeError):
            await store.vote_on_comment("at://c1", "cid-c1")

    async def test_sign_out_clears(self, store, auth_store):
        await store.load_comments(P1, "cid-p1")

        await auth_store.sign_out()

        assert store.comments == []
        assert store.post_uri is None
