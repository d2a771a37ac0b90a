"""Tests for the authorization code + PKCE login flow."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from oidc_session.auth.flow import AuthFlowManager, parse_callback
from oidc_session.auth.pkce import compute_challenge
from oidc_session.auth.provider import OIDCProvider
from oidc_session.auth.session import AuthSession
from oidc_session.exceptions import AuthError, AuthFailure, AuthStage
from oidc_session.types import AuthFlowState, ProviderConfiguration
from tests.helpers import CLIENT_ID, REDIRECT_URI, FakeUserAgent, MockIdP


SCOPES = ("openid", "profile", "offline_access")


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def session() -> AuthSession:
    """Create an unpersisted session."""
    return AuthSession()


@pytest.fixture()
def flow(
    session: AuthSession, http_client: httpx.AsyncClient, user_agent: FakeUserAgent
) -> AuthFlowManager:
    """Create a flow manager against the mock identity provider."""
    return AuthFlowManager(session, OIDCProvider(CLIENT_ID, http_client=http_client), user_agent)


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


# ── begin_login ─────────────────────────────────────────────────────


class TestBeginLogin:
    """Tests for building the authorization request."""

    def test_authorization_url(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """The URL carries every required parameter."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        assert handle.authorization_url.startswith(provider_config.authorization_endpoint)
        params = _query(handle.authorization_url)
        assert params["response_type"] == "code"
        assert params["client_id"] == CLIENT_ID
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["scope"] == "openid profile offline_access"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == compute_challenge(handle.pkce.verifier)
        assert params["state"] == handle.request.state
        assert params["nonce"] == handle.request.nonce
        assert flow.flow_state is AuthFlowState.IN_PROGRESS

    def test_additional_parameters(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """Extra parameters are appended to the URL."""
        handle = flow.begin_login(
            provider_config, CLIENT_ID, REDIRECT_URI, SCOPES, {"prompt": "login"}
        )
        assert _query(handle.authorization_url)["prompt"] == "login"

    def test_second_login_rejected_while_pending(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """Only one login may be pending."""
        first = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        with pytest.raises(AuthError) as exc_info:
            flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        assert exc_info.value.reason is AuthFailure.LOGIN_IN_PROGRESS
        assert flow.pending is first

    def test_abandon_releases_pending(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """An abandoned login allows a new one."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        flow.abandon(handle)
        assert flow.pending is None
        assert flow.flow_state is AuthFlowState.CANCELLED
        flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)


# ── complete_login ──────────────────────────────────────────────────


class TestCompleteLogin:
    """Tests for callback validation and code exchange."""

    @pytest.mark.asyncio
    async def test_success_installs_tokens(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        idp: MockIdP,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A valid callback ends with tokens in the session."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = idp.authorize(handle.authorization_url, REDIRECT_URI)

        tokens = await flow.complete_login(handle, callback)

        assert session.tokens == tokens
        assert session.authorized
        assert flow.flow_state is AuthFlowState.COMPLETED
        assert flow.pending is None
        assert idp.token_calls[0]["code_verifier"] == handle.pkce.verifier

    @pytest.mark.asyncio
    async def test_state_mismatch(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        idp: MockIdP,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A forged state is rejected before any token request."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = f"{REDIRECT_URI}?code=code-1&state=forged"

        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, callback)

        assert exc_info.value.stage is AuthStage.CALLBACK
        assert exc_info.value.reason is AuthFailure.STATE_MISMATCH
        assert idp.token_calls == []
        assert session.tokens is None
        assert flow.flow_state is AuthFlowState.FAILED
        assert flow.pending is None

    @pytest.mark.asyncio
    async def test_completed_handle_cannot_be_replayed(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        idp: MockIdP,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A handle that already finished is rejected without a token request."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = idp.authorize(handle.authorization_url, REDIRECT_URI)
        tokens = await flow.complete_login(handle, callback)

        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, callback)

        assert exc_info.value.stage is AuthStage.CALLBACK
        assert exc_info.value.reason is AuthFailure.STATE_MISMATCH
        assert len(idp.token_calls) == 1
        assert session.tokens == tokens
        assert flow.flow_state is AuthFlowState.COMPLETED

    @pytest.mark.asyncio
    async def test_abandoned_handle_is_rejected(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        idp: MockIdP,
        provider_config: ProviderConfiguration,
    ) -> None:
        """An abandoned login cannot exchange its code or touch a newer attempt."""
        stale = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = idp.authorize(stale.authorization_url, REDIRECT_URI)
        flow.abandon(stale)
        current = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)

        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(stale, callback)

        assert exc_info.value.reason is AuthFailure.STATE_MISMATCH
        assert idp.token_calls == []
        assert session.tokens is None
        assert flow.pending is current

    @pytest.mark.asyncio
    async def test_cancelled(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """A None callback means the user cancelled."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, None)
        assert exc_info.value.reason is AuthFailure.USER_CANCELLED
        assert flow.flow_state is AuthFlowState.CANCELLED

    @pytest.mark.asyncio
    async def test_access_denied_is_cancellation(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """access_denied from the provider counts as a user cancellation."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = f"{REDIRECT_URI}?error=access_denied&state={handle.request.state}"
        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, callback)
        assert exc_info.value.reason is AuthFailure.USER_CANCELLED
        assert exc_info.value.provider_error == "access_denied"

    @pytest.mark.asyncio
    async def test_provider_error(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """Other provider errors are reported with their code."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = (
            f"{REDIRECT_URI}?error=invalid_scope&error_description=Bad+scope"
            f"&state={handle.request.state}"
        )
        with pytest.raises(AuthError, match="Bad scope") as exc_info:
            await flow.complete_login(handle, callback)
        assert exc_info.value.reason is AuthFailure.PROVIDER_ERROR
        assert exc_info.value.provider_error == "invalid_scope"

    @pytest.mark.asyncio
    async def test_missing_code(
        self, flow: AuthFlowManager, provider_config: ProviderConfiguration
    ) -> None:
        """A callback with the right state but no code is rejected."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, f"{REDIRECT_URI}?state={handle.request.state}")
        assert exc_info.value.reason is AuthFailure.MISSING_CODE

    @pytest.mark.asyncio
    async def test_exchange_failure_leaves_session_untouched(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A rejected code does not change the session."""
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        callback = f"{REDIRECT_URI}?code=never-issued&state={handle.request.state}"
        with pytest.raises(AuthError) as exc_info:
            await flow.complete_login(handle, callback)
        assert exc_info.value.stage is AuthStage.EXCHANGE
        assert session.tokens is None
        assert flow.pending is None

    @pytest.mark.asyncio
    async def test_after_login_failure_does_not_fail_login(
        self,
        session: AuthSession,
        http_client: httpx.AsyncClient,
        idp: MockIdP,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A failing post-login hook is logged only."""
        after_login = AsyncMock(side_effect=RuntimeError("userinfo down"))
        flow = AuthFlowManager(
            session, OIDCProvider(CLIENT_ID, http_client=http_client), after_login=after_login
        )
        handle = flow.begin_login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)

        await flow.complete_login(handle, idp.authorize(handle.authorization_url, REDIRECT_URI))

        after_login.assert_awaited_once_with(provider_config)
        assert session.authorized


# ── login ───────────────────────────────────────────────────────────


class TestLogin:
    """Tests for the full flow through a user agent."""

    @pytest.mark.asyncio
    async def test_login_through_user_agent(
        self,
        flow: AuthFlowManager,
        session: AuthSession,
        user_agent: FakeUserAgent,
        provider_config: ProviderConfiguration,
    ) -> None:
        """The user agent sees the authorization URL and returns the callback."""
        tokens = await flow.login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        assert len(user_agent.presented) == 1
        assert session.tokens == tokens

    @pytest.mark.asyncio
    async def test_user_agent_cancel(
        self,
        flow: AuthFlowManager,
        user_agent: FakeUserAgent,
        provider_config: ProviderConfiguration,
    ) -> None:
        """A cancelled user agent fails the login as cancelled."""
        user_agent.cancel()
        with pytest.raises(AuthError) as exc_info:
            await flow.login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        assert exc_info.value.reason is AuthFailure.USER_CANCELLED
        assert flow.pending is None

    @pytest.mark.asyncio
    async def test_user_agent_exception_releases_pending(
        self,
        flow: AuthFlowManager,
        user_agent: FakeUserAgent,
        provider_config: ProviderConfiguration,
    ) -> None:
        """An agent failure propagates and frees the flow for a retry."""
        user_agent.fail_with = OSError("no browser")
        with pytest.raises(OSError, match="no browser"):
            await flow.login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)
        assert flow.pending is None

    @pytest.mark.asyncio
    async def test_login_without_user_agent(
        self, session: AuthSession, provider_config: ProviderConfiguration
    ) -> None:
        """Interactive login needs a user agent."""
        flow = AuthFlowManager(session, OIDCProvider(CLIENT_ID))
        with pytest.raises(RuntimeError, match="No user agent"):
            await flow.login(provider_config, CLIENT_ID, REDIRECT_URI, SCOPES)


def test_parse_callback_reads_fragment() -> None:
    """Parameters are read from the fragment when the query is empty."""
    assert parse_callback(f"{REDIRECT_URI}#code=abc&state=xyz") == {"code": "abc", "state": "xyz"}
