"""
Common testing utilities for the Coves client tests.

Provides builders for the JSON documents the backend returns, so tests can
describe a feed page or a comment thread in one line.
"""

from typing import Any, Dict, List, Optional

ALICE_DID = "did:plc:alice"
BOB_DID = "did:plc:bob"

ALICE_CALLBACK = (
    "social.coves:/callback?token=token-1&did=did:plc:alice"
    "&session_id=sess-1&handle=alice.coves.social"
)
BOB_CALLBACK = (
    "social.coves:/callback?token=bob-token&did=did:plc:bob"
    "&session_id=sess-2&handle=bob.coves.social"
)

CREATED_AT = "2025-01-15T12:00:00Z"


def post_uri(rkey: str, author: str = BOB_DID) -> str:
    return f"at://{author}/social.coves.community.post/{rkey}"


def vote_uri(rkey: str, voter: str = ALICE_DID) -> str:
    return f"at://{voter}/social.coves.feed.vote/{rkey}"


def post_json(
    rkey: str,
    score: int = 0,
    vote: Optional[str] = None,
    vote_uri_value: Optional[str] = None,
    community_did: str = "did:plc:gaming",
    subscribed: Optional[bool] = None,
    title: Optional[str] = None,
) -> Dict[str, Any]:
    """A feedViewPost document."""
    post: Dict[str, Any] = {
        "uri": post_uri(rkey),
        "cid": f"cid-{rkey}",
        "author": {"did": BOB_DID, "handle": "bob.coves.social"},
        "community": {
            "did": community_did,
            "name": "gaming",
            "handle": "gaming.community.coves.social",
        },
        "createdAt": CREATED_AT,
        "text": f"post {rkey}",
        "title": title or f"Post {rkey}",
        "stats": {"upvotes": max(score, 0), "downvotes": 0, "score": score, "commentCount": 0},
    }
    if vote is not None:
        post["viewer"] = {"vote": vote, "voteUri": vote_uri_value}
    if subscribed is not None:
        post["community"]["viewer"] = {"subscribed": subscribed}
    return {"post": post}


def feed_json(rkeys: List[str], cursor: Optional[str] = None, **kwargs: Any) -> Dict[str, Any]:
    return {"feed": [post_json(rkey, **kwargs) for rkey in rkeys], "cursor": cursor}


def comment_json(
    rkey: str,
    parent: Optional[str] = None,
    vote: Optional[str] = None,
    vote_uri_value: Optional[str] = None,
    root_rkey: str = "p1",
) -> Dict[str, Any]:
    """A commentView document."""
    comment: Dict[str, Any] = {
        "uri": f"at://{BOB_DID}/social.coves.community.comment/{rkey}",
        "cid": f"cid-{rkey}",
        "content": f"comment {rkey}",
        "createdAt": CREATED_AT,
        "author": {"did": BOB_DID, "handle": "bob.coves.social"},
        "post": {"uri": post_uri(root_rkey), "cid": f"cid-{root_rkey}"},
        "stats": {"upvotes": 1, "downvotes": 0, "score": 1},
    }
    if parent is not None:
        comment["parent"] = {
            "uri": f"at://{BOB_DID}/social.coves.community.comment/{parent}",
            "cid": f"cid-{parent}",
        }
    if vote is not None:
        comment["viewer"] = {"vote": vote, "voteUri": vote_uri_value}
    return comment


def thread_json(rkey: str, replies: Optional[List[Dict[str, Any]]] = None, **kwargs: Any) -> Dict[str, Any]:
    return {"comment": comment_json(rkey, **kwargs), "replies": replies or []}


def comments_json(threads: List[Dict[str, Any]], cursor: Optional[str] = None) -> Dict[str, Any]:
    return {"comments": threads, "cursor": cursor}


def profile_json(did: str = BOB_DID, handle: str = "bob.coves.social", **extra: Any) -> Dict[str, Any]:
    profile: Dict[str, Any] = {
        "did": did,
        "handle": handle,
        "displayName": handle.split(".")[0].title(),
        "createdAt": CREATED_AT,
        "stats": {"postCount": 3, "commentCount": 5, "communityCount": 2},
    }
    profile.update(extra)
    return profile
