"""End-to-end tests for OIDCSessionClient against the mock identity provider."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import time

import httpx
import pytest

from oidc_session.auth.persistence import (
    DEFAULT_STATE_KEY,
    LoadStatus,
    PersistenceAdapter,
    deserialize_state,
)
from oidc_session.auth.store import MemorySessionStore
from oidc_session.auth.user_agent import LoopbackUserAgent, SystemBrowserUserAgent
from oidc_session.client import OIDCSessionClient, default_user_agent
from oidc_session.config import OIDCSettings
from oidc_session.exceptions import AuthError, AuthFailure
from oidc_session.types import SessionState, TokenSet
from tests.helpers import REDIRECT_URI, FakeUserAgent, MockIdP, make_id_token


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> MemorySessionStore:
    """Create a store shared across client instances (an app restart)."""
    return MemorySessionStore()


@pytest.fixture()
def make_client(
    settings: OIDCSettings,
    store: MemorySessionStore,
    http_client: httpx.AsyncClient,
    user_agent: FakeUserAgent,
):
    """Build clients that share the store, transport and user agent."""

    def _make() -> OIDCSessionClient:
        return OIDCSessionClient(
            settings, store=store, user_agent=user_agent, http_client=http_client
        )

    return _make


async def _persist(store: MemorySessionStore, tokens: TokenSet) -> None:
    await PersistenceAdapter(store).save(SessionState(tokens=tokens))


# ── Tests ────────────────────────────────────────────────────────────


class TestLoginAndRestart:
    """The full lifecycle across a simulated application restart."""

    @pytest.mark.asyncio
    async def test_login_then_restart_restores_session(
        self, idp: MockIdP, make_client, user_agent: FakeUserAgent
    ) -> None:
        """A logged-in session survives a restart and is re-validated."""
        first = make_client()
        assert (await first.start()).status is LoadStatus.EMPTY
        assert not first.is_authorized

        await first.login()

        assert first.is_authorized
        assert first.user_info == {"sub": "user-123", "username": "alice"}
        status = first.status()
        assert status.logged_in
        assert status.username == "alice"
        assert status.subject == "user-123"
        assert status.has_refresh_token
        assert user_agent.presented[0].startswith("https://auth.example.com/oauth/authorize?")

        second = make_client()
        result = await second.start()

        assert result.status is LoadStatus.RESTORED
        assert second.is_authorized
        assert second.session.tokens == first.session.tokens
        assert second.status().username == "alice"
        assert len(idp.userinfo_calls) == 2

    @pytest.mark.asyncio
    async def test_restart_with_revoked_token_marks_session(
        self, idp: MockIdP, store: MemorySessionStore, make_client, valid_tokens: TokenSet
    ) -> None:
        """Re-validation on start flags tokens the server now rejects."""
        await _persist(store, valid_tokens)
        idp.userinfo_status = 401
        idp.userinfo_body = {"error": "invalid_token"}

        client = make_client()
        result = await client.start()

        assert result.status is LoadStatus.RESTORED
        assert client.session.tokens == valid_tokens
        assert not client.is_authorized
        assert client.status().authorization_error == "invalid_token"

    @pytest.mark.asyncio
    async def test_restart_with_expired_token_refreshes(
        self, idp: MockIdP, store: MemorySessionStore, make_client, expired_tokens: TokenSet
    ) -> None:
        """An expired restored token is refreshed by the re-validation call."""
        await _persist(store, expired_tokens)

        client = make_client()
        await client.start()

        assert client.is_authorized
        assert client.session.tokens is not None
        assert client.session.tokens.access_token == "at-1"
        assert len(idp.token_calls) == 1
        persisted = deserialize_state(await store.get(DEFAULT_STATE_KEY))
        assert persisted.tokens == client.session.tokens

    @pytest.mark.asyncio
    async def test_corrupt_state_is_discarded(
        self, store: MemorySessionStore, make_client
    ) -> None:
        """Unreadable persisted state is replaced by a logged-out session."""
        await store.set(DEFAULT_STATE_KEY, b"{broken")

        client = make_client()
        result = await client.start()

        assert result.status is LoadStatus.CORRUPT
        assert not client.is_authorized
        assert deserialize_state(await store.get(DEFAULT_STATE_KEY)) == SessionState()

    @pytest.mark.asyncio
    async def test_restart_with_revoked_refresh_token_logs_out(
        self, idp: MockIdP, store: MemorySessionStore, make_client, expired_tokens: TokenSet
    ) -> None:
        """invalid_grant during re-validation ends the session durably."""
        await _persist(store, expired_tokens)
        idp.token_error = {"error": "invalid_grant"}

        client = make_client()
        await client.start()

        assert client.session.tokens is None
        assert (await make_client().start()).status is LoadStatus.EMPTY


class TestTokensAndLogout:
    """Tests for access tokens and logout through the client."""

    @pytest.mark.asyncio
    async def test_access_token(self, make_client) -> None:
        """A logged-in client hands out its access token."""
        client = make_client()
        await client.login()
        assert await client.access_token() == "at-1"

    @pytest.mark.asyncio
    async def test_access_token_not_logged_in(self, make_client) -> None:
        """A logged-out client refuses to hand out tokens."""
        with pytest.raises(AuthError) as exc_info:
            await make_client().access_token()
        assert exc_info.value.reason is AuthFailure.NOT_LOGGED_IN

    @pytest.mark.asyncio
    async def test_logout(self, make_client, user_agent: FakeUserAgent) -> None:
        """Logout shows the end-session page and clears the persisted session."""
        client = make_client()
        await client.login()

        await client.logout()

        assert "/oauth/logout?" in user_agent.presented[-1]
        assert not client.is_authorized
        assert client.user_info is None
        assert client.status().logged_in is False
        assert (await make_client().start()).status is LoadStatus.EMPTY

    @pytest.mark.asyncio
    async def test_logout_when_provider_unreachable(
        self, idp: MockIdP, store: MemorySessionStore, make_client, valid_tokens: TokenSet
    ) -> None:
        """Logout clears locally even if discovery fails."""
        await _persist(store, valid_tokens)
        idp.discovery_status = 503
        client = make_client()
        await client.start()

        await client.logout()

        assert client.session.tokens is None

    @pytest.mark.asyncio
    async def test_status_without_userinfo_uses_subject(
        self, store: MemorySessionStore, make_client
    ) -> None:
        """Before userinfo is known, status reports the ID token subject."""
        tokens = TokenSet(
            access_token="at", id_token=make_id_token(sub="abc"), expires_at=time.time() + 60
        )
        client = make_client()
        await client.session.set_tokens(tokens)
        status = client.status()
        assert status.logged_in
        assert status.username is None
        assert status.subject == "abc"
        assert not status.has_refresh_token


class TestClientSetup:
    """Tests for component wiring."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self, settings: OIDCSettings) -> None:
        """An HTTP client created by the session client is closed on exit."""
        async with OIDCSessionClient(settings, user_agent=FakeUserAgent()) as client:
            http_client = client.http_client
        assert http_client.is_closed

    @pytest.mark.asyncio
    async def test_context_manager_keeps_injected_client(
        self, settings: OIDCSettings, http_client: httpx.AsyncClient
    ) -> None:
        """An injected HTTP client is left open."""
        async with OIDCSessionClient(settings, http_client=http_client, user_agent=FakeUserAgent()):
            pass
        assert not http_client.is_closed

    def test_store_from_settings(self, settings: OIDCSettings, tmp_path) -> None:
        """The store backend comes from the settings."""
        file_settings = settings.model_copy(
            update={"store": settings.store.model_copy(update={"backend": "file", "directory": str(tmp_path)})}
        )
        client = OIDCSessionClient(file_settings, user_agent=FakeUserAgent())
        assert client.persistence.store.directory == tmp_path

    def test_default_user_agent(self) -> None:
        """Loopback redirects get a listener; custom schemes the browser agent."""
        assert isinstance(default_user_agent(REDIRECT_URI, 60), SystemBrowserUserAgent)
        assert isinstance(
            default_user_agent("http://127.0.0.1:8765/callback", 60), LoopbackUserAgent
        )
        assert isinstance(
            default_user_agent("http://[::1]:8765/callback", 60), SystemBrowserUserAgent
        )
