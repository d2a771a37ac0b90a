"""Shared test helpers: a mock identity provider and token builders.

MockIdP answers discovery, token, userinfo and logout requests through
``httpx.MockTransport`` so the whole client can be exercised offline.
"""

from __future__ import annotations

import asyncio
import json
import time

from base64 import urlsafe_b64encode
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

from oidc_session.auth.user_agent import ExternalUserAgent


ISSUER = "https://auth.example.com"
CLIENT_ID = "test-client"
REDIRECT_URI = "com.example.app:/oauth2redirect/oidc-provider"


def _b64(data: dict[str, Any]) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode("utf-8")
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def make_id_token(**overrides: Any) -> str:
    """Build an unsigned compact JWT with sensible ID token claims."""
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "sub": "user-123",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return f"{_b64({'alg': 'RS256', 'typ': 'JWT'})}.{_b64(claims)}.c2lnbmF0dXJl"


def make_discovery_document(issuer: str = ISSUER) -> dict[str, Any]:
    """Build a discovery document for ``issuer``."""
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "userinfo_endpoint": f"{issuer}/userinfo",
        "end_session_endpoint": f"{issuer}/oauth/logout",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "scopes_supported": ["openid", "profile", "email", "offline_access"],
        "code_challenge_methods_supported": ["S256"],
    }


class MockIdP:
    """In-memory identity provider served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.discovery_document: dict[str, Any] = make_discovery_document()
        self.discovery_status = 200
        self.discovery_calls = 0
        self.token_calls: list[dict[str, str]] = []
        self.token_error: dict[str, Any] | None = None
        self.token_error_status = 400
        self.refresh_delay = 0.0
        self.refresh_gate: asyncio.Event | None = None
        self.rotate_refresh_token = True
        self.userinfo_calls: list[str] = []
        self.userinfo_status = 200
        self.userinfo_body: Any = {"sub": "user-123", "username": "alice"}
        self.userinfo_headers: dict[str, str] = {}
        self.userinfo_gate: asyncio.Event | None = None
        self.issued = 0
        self.valid_access_tokens: set[str] = set()
        self.codes: dict[str, str | None] = {}

    def authorize(self, authorization_url: str, redirect_uri: str) -> str:
        """Approve an authorization request and return the callback URL."""
        params = {k: v[0] for k, v in parse_qs(urlparse(authorization_url).query).items()}
        code = f"code-{len(self.codes) + 1}"
        self.codes[code] = params.get("nonce")
        return f"{redirect_uri}?{urlencode({'code': code, 'state': params['state']})}"

    def _issue(self, grant_type: str, nonce: str | None = None) -> dict[str, Any]:
        self.issued += 1
        access_token = f"at-{self.issued}"
        self.valid_access_tokens.add(access_token)
        body: dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        if grant_type == "authorization_code" or self.rotate_refresh_token:
            body["refresh_token"] = f"rt-{self.issued}"
        if grant_type == "authorization_code":
            body["id_token"] = make_id_token(nonce=nonce)
        return body

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_calls += 1
            return httpx.Response(self.discovery_status, json=self.discovery_document)

        if path == "/oauth/token":
            form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
            self.token_calls.append(form)
            if form.get("grant_type") == "refresh_token" and self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            if form.get("grant_type") == "refresh_token" and self.refresh_gate is not None:
                await self.refresh_gate.wait()
            if self.token_error is not None:
                return httpx.Response(self.token_error_status, json=self.token_error)
            if form.get("grant_type") == "authorization_code":
                if form.get("code") not in self.codes:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                return httpx.Response(200, json=self._issue("authorization_code", self.codes[form["code"]]))
            return httpx.Response(200, json=self._issue("refresh_token"))

        if path == "/userinfo":
            auth = request.headers.get("Authorization", "")
            self.userinfo_calls.append(auth)
            if self.userinfo_gate is not None:
                await self.userinfo_gate.wait()
            if isinstance(self.userinfo_body, (dict, list)):
                return httpx.Response(
                    self.userinfo_status, json=self.userinfo_body, headers=self.userinfo_headers
                )
            return httpx.Response(
                self.userinfo_status, text=str(self.userinfo_body), headers=self.userinfo_headers
            )

        if path == "/oauth/logout":
            return httpx.Response(200, text="bye")

        return httpx.Response(404)


class FakeUserAgent(ExternalUserAgent):
    """User agent that completes flows against a MockIdP without a browser."""

    def __init__(self, idp: MockIdP | None = None, cancel: bool = False) -> None:
        self.idp = idp
        self.cancelled = cancel
        self.presented: list[str] = []
        self.fail_with: Exception | None = None

    async def present(self, url: str, redirect_uri: str) -> str | None:
        self.presented.append(url)
        if self.fail_with is not None:
            raise self.fail_with
        if self.cancelled:
            return None
        if self.idp is not None and "/oauth/authorize" in url:
            return self.idp.authorize(url, redirect_uri)
        return redirect_uri

    def cancel(self) -> None:
        self.cancelled = True
