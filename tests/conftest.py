"""Pytest configuration and fixtures."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import time

import httpx
import pytest

from oidc_session.auth.discovery import parse_configuration
from oidc_session.config import OIDCSettings, clear_settings
from oidc_session.types import ProviderConfiguration, TokenSet
from tests.helpers import (
    CLIENT_ID,
    ISSUER,
    FakeUserAgent,
    MockIdP,
    make_discovery_document,
    make_id_token,
)


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def idp() -> MockIdP:
    """Create a mock identity provider."""
    return MockIdP()


@pytest.fixture()
def http_client(idp: MockIdP) -> httpx.AsyncClient:
    """Create an HTTP client routed to the mock identity provider."""
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture()
def provider_config() -> ProviderConfiguration:
    """Create the provider configuration of the mock identity provider."""
    return parse_configuration(ISSUER, make_discovery_document())


@pytest.fixture()
def user_agent(idp: MockIdP) -> FakeUserAgent:
    """Create a user agent that approves every login."""
    return FakeUserAgent(idp)


@pytest.fixture()
def valid_tokens() -> TokenSet:
    """Create a valid (non-expired) token set."""
    return TokenSet(
        access_token="at-valid",
        id_token=make_id_token(),
        refresh_token="rt-valid",
        expires_at=time.time() + 3600,
    )


@pytest.fixture()
def expired_tokens() -> TokenSet:
    """Create an expired token set."""
    return TokenSet(
        access_token="at-expired",
        id_token=make_id_token(),
        refresh_token="rt-for-refresh",
        expires_at=time.time() - 60,
    )


@pytest.fixture()
def settings(tmp_path, monkeypatch) -> OIDCSettings:
    """Create settings isolated from config files and the environment."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv("OIDC_SESSION_CONFIG_FILE", raising=False)
    clear_settings()
    return OIDCSettings(
        issuer_url=ISSUER,
        client_id=CLIENT_ID,
        app_identifier="com.example.app",
        store={"backend": "memory"},
    )
