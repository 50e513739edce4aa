"""
Tests for the backend document models and the session model.
"""

import pytest
from pydantic import ValidationError

from social.coves.client.model.comment import CommentsResponse, walk_threads
from social.coves.client.model.community import (
    format_handle_for_display,
    format_handle_for_dns,
)
from social.coves.client.model.feed_state import FeedState
from social.coves.client.model.post import TimelineResponse
from social.coves.client.model.profile import UserProfile
from social.coves.client.model.session import CovesSession
from social.coves.client.model.vote import VoteState, rkey_from_uri
from tests.test_helpers import (
    ALICE_CALLBACK,
    comments_json,
    feed_json,
    profile_json,
    thread_json,
    vote_uri,
)


class TestCovesSession:
    def test_from_callback_url(self):
        session = CovesSession.from_callback_url(ALICE_CALLBACK)

        assert session.token == "token-1"
        assert session.did == "did:plc:alice"
        assert session.session_id == "sess-1"
        assert session.handle == "alice.coves.social"

    def test_handle_is_optional(self):
        session = CovesSession.from_callback_url(
            "social.coves:/callback?token=t&did=did:plc:x&session_id=s"
        )

        assert session.handle is None

    @pytest.mark.parametrize("missing", ["token", "did", "session_id"])
    def test_required_parameters(self, missing):
        params = {"token": "t", "did": "did:plc:x", "session_id": "s"}
        params[missing] = ""
        url = "social.coves:/callback?" + "&".join(f"{k}={v}" for k, v in params.items())

        with pytest.raises(ValueError, match=missing):
            CovesSession.from_callback_url(url)

    def test_storage_round_trip_and_repr(self):
        session = CovesSession.from_callback_url(ALICE_CALLBACK)

        assert CovesSession.from_storage(session.to_storage()) == session
        assert "token-1" not in repr(session)

    def test_with_token(self):
        session = CovesSession.from_callback_url(ALICE_CALLBACK)

        updated = session.with_token("token-2")

        assert updated.token == "token-2"
        assert updated.session_id == session.session_id
        assert session.token == "token-1"


class TestPosts:
    def test_null_lists_become_empty(self):
        response = TimelineResponse.model_validate({"feed": None})

        assert response.feed == []

    def test_viewer_vote(self):
        response = TimelineResponse.model_validate(
            feed_json(["p1"], vote="up", vote_uri_value=vote_uri("v1"))
        )

        post = response.feed[0].post
        assert post.viewer_vote == "up"
        assert post.viewer_vote_uri == vote_uri("v1")
        assert post.community.name == "gaming"

    def test_unknown_fields_are_ignored(self):
        payload = feed_json(["p1"])
        payload["feed"][0]["post"]["somethingNew"] = {"x": 1}

        assert len(TimelineResponse.model_validate(payload).feed) == 1


class TestComments:
    def test_walk(self):
        response = CommentsResponse.model_validate(
            comments_json(
                [
                    thread_json("c1", replies=[thread_json("r1", replies=[thread_json("rr1")])]),
                    thread_json("c2"),
                ]
            )
        )

        assert [c.uri.rsplit("/", 1)[-1] for c in walk_threads(response.comments)] == [
            "c1",
            "r1",
            "rr1",
            "c2",
        ]


class TestProfile:
    def test_nested_profile_layout(self):
        payload = profile_json()
        del payload["handle"]
        del payload["createdAt"]
        payload["profile"] = {"handle": "bob.coves.social", "createdAt": "2024-01-01T00:00:00Z"}

        profile = UserProfile.model_validate(payload)

        assert profile.handle == "bob.coves.social"
        assert profile.created_at is not None

    def test_negative_counts_are_clamped(self):
        profile = UserProfile.model_validate(profile_json(stats={"postCount": -4}))

        assert profile.stats.post_count == 0

    def test_invalid_did(self):
        with pytest.raises(ValidationError):
            UserProfile.model_validate(profile_json(did="plc:bob"))

    def test_block_without_record_is_not_blocked(self):
        profile = UserProfile.model_validate(profile_json(viewer={"blocked": True}))

        assert profile.viewer.blocked is False

    def test_display_label(self):
        assert UserProfile(did="did:plc:x").display_label == "did:plc:x"


class TestCommunityHandles:
    def test_display_form(self):
        assert format_handle_for_display("gaming.community.coves.social") == "!gaming@coves.social"
        assert format_handle_for_display("alice.bsky.social") is None
        assert format_handle_for_display(None) is None

    def test_dns_form(self):
        assert format_handle_for_dns("!gaming@coves.social") == "gaming.community.coves.social"
        assert format_handle_for_dns("gaming") is None


class TestVoteState:
    def test_score_effect(self):
        assert VoteState(direction="up").score_effect == 1
        assert VoteState(direction="down").score_effect == -1
        assert VoteState(direction="up", deleted=True).score_effect == 0

    def test_rkey_from_uri(self):
        assert rkey_from_uri(vote_uri("3kabc")) == "3kabc"
        assert rkey_from_uri(None) is None


class TestPageState:
    def test_copy_is_immutable_update(self):
        state = FeedState()

        loading = state.copy(is_loading=True)

        assert loading.is_busy
        assert not state.is_busy
        assert loading.has_more
