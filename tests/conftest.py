"""
Shared test configuration and fixtures for the Coves client tests.

Provides settings, in-memory and Redis-backed secure storage, a signed-in
auth store that never touches the network, and a fake Coves backend served
by aiohttp for end-to-end HTTP flows.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set, Tuple

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import hdrs, web
from aiohttp.test_utils import TestServer
from cryptography.fernet import Fernet

from social.coves.client.app.config import Settings
from social.coves.client.atproto.auth import CovesAuthService
from social.coves.client.state.auth import AuthStore
from social.coves.client.storage.secure import MemorySecureStorage

from tests.test_helpers import ALICE_CALLBACK


class FakeCoves:
    """
    In-process stand-in for the Coves backend.

    Every request is recorded. XRPC responses are configured per NSID in
    ``responses``; a request carrying a bearer token that is not in
    ``valid_tokens`` gets a 401, as does an unauthenticated request to an
    NSID listed in ``auth_required``.
    """

    def __init__(self) -> None:
        self.requests: List[Tuple[str, str, Optional[str], Any]] = []
        self.responses: Dict[str, Tuple[int, Any]] = {}
        self.valid_tokens: Set[str] = {"token-1"}
        self.auth_required: Set[str] = set()

        self.next_token = "token-2"
        self.refresh_status = 200
        self.refresh_body: Optional[Dict[str, Any]] = None
        self.refresh_delay = 0.0
        self.refresh_count = 0
        self.logout_status = 200

    def count(self, method: str, path: str) -> int:
        return len([r for r in self.requests if r[0] == method and r[1] == path])

    def authorizations(self, path: str) -> List[Optional[str]]:
        return [r[2] for r in self.requests if r[1] == path]

    async def _record(self, request: web.Request) -> Any:
        body = None
        if request.method == hdrs.METH_POST and request.can_read_body:
            body = await request.json()
        elif request.method == hdrs.METH_GET:
            body = dict(request.query)
        self.requests.append(
            (request.method, request.path, request.headers.get(hdrs.AUTHORIZATION), body)
        )
        return body

    async def handle_refresh(self, request: web.Request) -> web.Response:
        await self._record(request)
        self.refresh_count += 1
        if self.refresh_delay > 0:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_status != 200:
            return web.json_response({"error": "refresh failed"}, status=self.refresh_status)
        if self.refresh_body is not None:
            return web.json_response(self.refresh_body)
        self.valid_tokens.add(self.next_token)
        return web.json_response({"sealed_token": self.next_token})

    async def handle_logout(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({}, status=self.logout_status)

    async def handle_xrpc(self, request: web.Request) -> web.Response:
        await self._record(request)
        nsid = request.match_info["nsid"]

        authorization = request.headers.get(hdrs.AUTHORIZATION)
        if authorization is not None:
            token = authorization.removeprefix("Bearer ")
            if token not in self.valid_tokens:
                return web.json_response(
                    {"error": "AuthRequired", "message": "Token expired"}, status=401
                )
        elif nsid in self.auth_required:
            return web.json_response({"error": "AuthRequired"}, status=401)

        status, body = self.responses.get(nsid, (404, {"error": "MethodNotImplemented"}))
        return web.json_response(body, status=status)

    def app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.post("/oauth/refresh", self.handle_refresh),
                web.post("/oauth/logout", self.handle_logout),
                web.get("/xrpc/{nsid}", self.handle_xrpc),
                web.post("/xrpc/{nsid}", self.handle_xrpc),
            ]
        )
        return app


@pytest.fixture
def encryption_key() -> Fernet:
    return Fernet(Fernet.generate_key())


@pytest.fixture
def settings(encryption_key) -> Settings:
    """Settings for the local environment with nothing persisted to disk."""
    return Settings(
        environment="local",
        storage_backend="memory",
        metrics_backend="none",
        encryption_key=encryption_key,
    )


@pytest.fixture
def memory_storage(encryption_key) -> MemorySecureStorage:
    return MemorySecureStorage(encryption_key)


@pytest_asyncio.fixture
async def fake_coves():
    """Start the fake backend; yields the FakeCoves instance and its base URL."""
    fake = FakeCoves()
    server = TestServer(fake.app())
    await server.start_server()
    yield fake, str(server.make_url("")).rstrip("/")
    await server.close()


@pytest.fixture
def server_settings(fake_coves, encryption_key) -> Settings:
    _, base_url = fake_coves
    return Settings(
        environment="local",
        api_url=base_url,
        storage_backend="memory",
        metrics_backend="none",
        encryption_key=encryption_key,
        read_timeout=5.0,
    )


@pytest_asyncio.fixture
async def auth_store(settings, memory_storage):
    """An AuthStore signed in as alice, without an HTTP client."""
    service = CovesAuthService(settings, memory_storage)
    store = AuthStore(service)
    await store.sign_in(ALICE_CALLBACK)
    yield store


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
