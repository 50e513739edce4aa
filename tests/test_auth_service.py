"""
Tests for CovesAuthService: sign-in, restore, single-flight refresh and sign-out.

HTTP flows run against the FakeCoves backend from conftest.
"""

import asyncio
from unittest.mock import patch

import pytest
import pytest_asyncio

from social.coves.client.atproto.auth import (
    CovesAuthService,
    InvalidHandleError,
    redact_tokens,
    validate_and_normalize_handle,
)
from social.coves.client.atproto.errors import (
    NoSessionError,
    RefreshFailed,
    SessionExpired,
)
from social.coves.client.model.session import CovesSession
from tests.test_helpers import ALICE_CALLBACK, ALICE_DID


@pytest_asyncio.fixture
async def service(server_settings, memory_storage):
    service = CovesAuthService(server_settings, memory_storage)
    await service.initialize()
    await service.complete_sign_in(ALICE_CALLBACK)
    yield service
    await service.close()


class TestHandleValidation:
    """Test validate_and_normalize_handle."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("alice.bsky.social", "alice.bsky.social"),
            ("  Alice.Bsky.Social ", "alice.bsky.social"),
            ("@alice.bsky.social", "alice.bsky.social"),
            ("https://bsky.app/profile/alice.bsky.social", "alice.bsky.social"),
            ("did:plc:abc123", "did:plc:abc123"),
            ("did:web:Example.com", "did:web:Example.com"),
        ],
    )
    def test_valid(self, value, expected):
        assert validate_and_normalize_handle(value) == expected

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "   ",
            "alice",
            "-alice.bsky.social",
            "alice_.bsky.social",
            "alice.bsky.123",
            "did:plc",
            ("a" * 64) + ".social",
            ("a." * 130) + "social",
        ],
    )
    def test_invalid(self, value):
        with pytest.raises(InvalidHandleError):
            validate_and_normalize_handle(value)

    def test_invalid_handle_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_and_normalize_handle("nope")


class TestSignIn:
    """Test login URL construction and the callback."""

    def test_login_url(self, server_settings, memory_storage):
        service = CovesAuthService(server_settings, memory_storage)

        url = service.build_login_url("@Alice.Bsky.Social")

        assert url == (
            f"{server_settings.api_url}/oauth/mobile/login"
            "?handle=alice.bsky.social&redirect_uri=social.coves%3A%2Fcallback"
        )

    async def test_complete_sign_in_persists_session(self, settings, memory_storage):
        service = CovesAuthService(settings, memory_storage)

        session = await service.complete_sign_in(ALICE_CALLBACK)

        assert session.did == ALICE_DID
        assert session.handle == "alice.coves.social"
        assert service.is_authenticated
        stored = await memory_storage.read("coves_session_local")
        assert CovesSession.from_storage(stored).token == "token-1"  # type: ignore

    async def test_complete_sign_in_rejects_incomplete_callback(self, settings, memory_storage):
        service = CovesAuthService(settings, memory_storage)

        with pytest.raises(ValueError):
            await service.complete_sign_in("social.coves:/callback?token=t&session_id=s")

        assert not service.is_authenticated
        assert await memory_storage.read("coves_session_local") is None

    def test_redact_tokens(self):
        assert redact_tokens(ALICE_CALLBACK).startswith(
            "social.coves:/callback?token=[REDACTED]&did="
        )


class TestRestoreSession:
    """Test loading the persisted session at startup."""

    async def test_restore(self, settings, memory_storage):
        await CovesAuthService(settings, memory_storage).complete_sign_in(ALICE_CALLBACK)

        service = CovesAuthService(settings, memory_storage)
        session = await service.restore_session()

        assert session is not None
        assert session.token == "token-1"
        assert await service.get_access_token() == "token-1"

    async def test_restore_nothing_stored(self, settings, memory_storage):
        service = CovesAuthService(settings, memory_storage)

        assert await service.restore_session() is None
        assert await service.get_access_token() is None

    async def test_restore_undecryptable_value_is_discarded(self, settings, memory_storage):
        memory_storage._values["coves_session_local"] = b"not a fernet token"

        service = CovesAuthService(settings, memory_storage)

        assert await service.restore_session() is None
        assert "coves_session_local" not in memory_storage._values

    async def test_restore_unparseable_session_is_discarded(self, settings, memory_storage):
        await memory_storage.write("coves_session_local", '{"did": "did:plc:alice"}')

        service = CovesAuthService(settings, memory_storage)

        assert await service.restore_session() is None
        assert await memory_storage.read("coves_session_local") is None

    async def test_sessions_are_namespaced_by_environment(self, encryption_key, memory_storage):
        from social.coves.client.app.config import Settings

        local = Settings(environment="local", encryption_key=encryption_key)
        production = Settings(environment="production", encryption_key=encryption_key)

        await CovesAuthService(local, memory_storage).complete_sign_in(ALICE_CALLBACK)

        assert await CovesAuthService(production, memory_storage).restore_session() is None
        assert await CovesAuthService(local, memory_storage).restore_session() is not None


class TestRefreshToken:
    """Test single-flight token refresh."""

    async def test_refresh(self, service, fake_coves, memory_storage):
        fake, _ = fake_coves

        session = await service.refresh_token()

        assert session.token == "token-2"
        assert await service.get_access_token() == "token-2"
        assert fake.requests[-1] == (
            "POST",
            "/oauth/refresh",
            None,
            {"did": ALICE_DID, "session_id": "sess-1", "sealed_token": "token-1"},
        )
        stored = CovesSession.from_storage(await memory_storage.read("coves_session_local"))
        assert stored.token == "token-2"

    async def test_concurrent_callers_share_one_request(self, service, fake_coves, memory_storage):
        fake, _ = fake_coves
        fake.refresh_delay = 0.05

        with patch.object(memory_storage, "write", wraps=memory_storage.write) as write:
            results = await asyncio.gather(
                service.refresh_token(), service.refresh_token(), service.refresh_token()
            )

        assert fake.refresh_count == 1
        assert write.call_count == 1
        assert [r.token for r in results] == ["token-2", "token-2", "token-2"]
        assert not service.is_refreshing

    async def test_concurrent_callers_share_the_failure(self, service, fake_coves):
        fake, _ = fake_coves
        fake.refresh_delay = 0.05
        fake.refresh_status = 500

        results = await asyncio.gather(
            service.refresh_token(), service.refresh_token(), return_exceptions=True
        )

        assert fake.refresh_count == 1
        assert all(isinstance(r, RefreshFailed) for r in results)

    async def test_failure_does_not_block_later_refresh(self, service, fake_coves):
        fake, _ = fake_coves
        fake.refresh_status = 500

        with pytest.raises(RefreshFailed) as exc_info:
            await service.refresh_token()
        assert exc_info.value.status_code == 500

        fake.refresh_status = 200
        session = await service.refresh_token()

        assert session.token == "token-2"
        assert fake.refresh_count == 2

    async def test_sequential_refreshes_each_hit_backend(self, service, fake_coves):
        fake, _ = fake_coves

        await service.refresh_token()
        fake.next_token = "token-3"
        session = await service.refresh_token()

        assert session.token == "token-3"
        assert fake.refresh_count == 2
        assert fake.requests[-1][3]["sealed_token"] == "token-2"

    async def test_unauthorized_means_session_expired(self, service, fake_coves):
        fake, _ = fake_coves
        fake.refresh_status = 401

        with pytest.raises(SessionExpired):
            await service.refresh_token()

        assert await service.get_access_token() == "token-1"

    async def test_missing_token(self, service, fake_coves):
        fake, _ = fake_coves
        fake.refresh_body = {"did": ALICE_DID}

        with pytest.raises(RefreshFailed, match="error-coves-client-1001"):
            await service.refresh_token()

    async def test_no_session(self, server_settings, memory_storage):
        service = CovesAuthService(server_settings, memory_storage)
        await service.initialize()
        try:
            with pytest.raises(NoSessionError):
                await service.refresh_token()
        finally:
            await service.close()

    async def test_sign_out_during_refresh_discards_result(self, service, fake_coves, memory_storage):
        fake, _ = fake_coves
        fake.refresh_delay = 0.1

        task = asyncio.create_task(service.refresh_token())
        await asyncio.sleep(0.02)
        await service.sign_out()

        with pytest.raises(RefreshFailed, match="error-coves-client-1005"):
            await task

        assert service.session is None
        assert await memory_storage.read("coves_session_local") is None

    async def test_requires_initialize(self, settings, memory_storage):
        service = CovesAuthService(settings, memory_storage)
        await service.complete_sign_in(ALICE_CALLBACK)

        with pytest.raises(RuntimeError):
            await service.refresh_token()


class TestSignOut:
    """Test that sign-out always clears local state."""

    async def test_sign_out_revokes_on_backend(self, service, fake_coves, memory_storage):
        fake, _ = fake_coves

        await service.sign_out()

        assert fake.authorizations("/oauth/logout") == ["Bearer token-1"]
        assert not service.is_authenticated
        assert await memory_storage.read("coves_session_local") is None

    async def test_sign_out_when_backend_rejects(self, service, fake_coves, memory_storage):
        fake, _ = fake_coves
        fake.logout_status = 500

        await service.sign_out()

        assert not service.is_authenticated
        assert await memory_storage.read("coves_session_local") is None

    async def test_sign_out_when_backend_unreachable(self, encryption_key, memory_storage):
        from social.coves.client.app.config import Settings

        settings = Settings(
            environment="local",
            api_url="http://127.0.0.1:1",
            encryption_key=encryption_key,
            connect_timeout=1.0,
        )
        service = CovesAuthService(settings, memory_storage)
        await service.initialize()
        await service.complete_sign_in(ALICE_CALLBACK)

        try:
            await service.sign_out()
        finally:
            await service.close()

        assert not service.is_authenticated

    async def test_sign_out_twice(self, service, fake_coves):
        fake, _ = fake_coves

        await service.sign_out()
        await service.sign_out()

        assert fake.count("POST", "/oauth/logout") == 1
