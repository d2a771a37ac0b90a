"""Type definitions for oidc-session.

Value objects shared by the discovery, flow, session and persistence
layers. All of them are immutable; a session transition always swaps
a whole object instead of mutating one in place.
"""

from __future__ import annotations

import json
import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlencode

from authlib.common.encoding import urlsafe_b64decode


@dataclass(frozen=True)
class ProviderConfiguration:
    """OpenID provider metadata resolved by discovery.

    Attributes
    ----------
    issuer : str
        The issuer identifier.
    authorization_endpoint : str
        URL of the authorization endpoint.
    token_endpoint : str
        URL of the token endpoint.
    end_session_endpoint : str or None
        URL of the RP-initiated logout endpoint.
    userinfo_endpoint : str or None
        URL of the userinfo endpoint.
    jwks_uri : str or None
        URL of the provider's JSON Web Key Set.
    revocation_endpoint : str or None
        URL of the RFC 7009 revocation endpoint.
    scopes_supported : tuple[str, ...]
        Scopes advertised by the provider.
    code_challenge_methods_supported : tuple[str, ...]
        PKCE methods advertised by the provider.
    document : dict[str, Any]
        The raw discovery document.
    """

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    end_session_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: tuple[str, ...] = ()
    code_challenge_methods_supported: tuple[str, ...] = ()
    document: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class TokenSet:
    """Tokens granted by the provider.

    Attributes
    ----------
    access_token : str
        Opaque access token presented to resource servers.
    id_token : str or None
        The OIDC ID token (JWT).
    refresh_token : str or None
        Refresh token, present only if ``offline_access`` was granted.
    expires_at : float or None
        Unix timestamp at which the access token expires.
    token_type : str
        Token type, typically "Bearer".
    scope : str
        Space-separated list of granted scopes.
    """

    access_token: str
    id_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None
    token_type: str = "Bearer"  # noqa: S105
    scope: str = ""

    def is_expired(self, margin: float = 0.0, now: float | None = None) -> bool:
        """Check whether the access token expires within ``margin`` seconds."""
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current + margin >= self.expires_at

    @property
    def id_token_claims(self) -> dict[str, Any]:
        """Unverified claims of the ID token (empty if absent or unreadable)."""
        if not self.id_token:
            return {}
        return decode_jwt_claims(self.id_token)

    @property
    def subject(self) -> str | None:
        """The ``sub`` claim of the ID token."""
        sub = self.id_token_claims.get("sub")
        return str(sub) if sub is not None else None


@dataclass(frozen=True)
class AuthorizationError:
    """Authorization failure recorded on the session by a resource call.

    Attributes
    ----------
    error : str
        OAuth2 error code (e.g. "invalid_token").
    description : str or None
        Human-readable description from the resource server.
    status : int or None
        HTTP status of the rejected request.
    """

    error: str
    description: str | None = None
    status: int | None = None


@dataclass(frozen=True)
class SessionState:
    """Snapshot of an AuthSession, as persisted and as broadcast to listeners.

    Attributes
    ----------
    tokens : TokenSet or None
        Current tokens; None means logged out.
    authorization_error : AuthorizationError or None
        Last authorization error recorded against the tokens.
    """

    tokens: TokenSet | None = None
    authorization_error: AuthorizationError | None = None

    @property
    def authorized(self) -> bool:
        """True if tokens are present and not flagged by an authorization error."""
        return self.tokens is not None and self.authorization_error is None

    @property
    def is_empty(self) -> bool:
        """True if the snapshot holds no tokens."""
        return self.tokens is None


@dataclass(frozen=True)
class AuthorizationRequest:
    """A one-shot authorization code request.

    Attributes
    ----------
    client_id : str
        The OAuth2 client ID.
    redirect_uri : str
        The redirect URI registered with the provider.
    scopes : tuple[str, ...]
        Requested scopes.
    state : str
        Anti-forgery state value.
    nonce : str
        OIDC nonce bound into the ID token.
    code_challenge : str
        PKCE code challenge.
    code_challenge_method : str
        PKCE challenge method.
    response_type : str
        Always "code".
    additional_parameters : dict[str, str]
        Extra query parameters for the authorization endpoint.
    """

    client_id: str
    redirect_uri: str
    scopes: tuple[str, ...]
    state: str
    nonce: str
    code_challenge: str
    code_challenge_method: str = "S256"
    response_type: str = "code"
    additional_parameters: dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def to_url(self, config: ProviderConfiguration) -> str:
        """Build the full authorization URL for ``config``."""
        params: dict[str, str] = {
            "response_type": self.response_type,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": self.state,
            "nonce": self.nonce,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }
        params.update(self.additional_parameters)
        separator = "&" if "?" in config.authorization_endpoint else "?"
        return f"{config.authorization_endpoint}{separator}{urlencode(params)}"


class AuthFlowState(str, Enum):
    """State of the authorization flow controller."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionStatus:
    """Read-only projection of the session for display.

    Attributes
    ----------
    logged_in : bool
        Whether the session is authorized.
    username : str or None
        Display name from userinfo (``username``, ``preferred_username``,
        ``name`` or ``email``, first present wins).
    subject : str or None
        The ``sub`` claim of the ID token.
    expires_at : float or None
        Access token expiry timestamp.
    has_refresh_token : bool
        Whether the session can refresh without a new login.
    authorization_error : str or None
        Error code recorded by the last rejected resource call.
    """

    logged_in: bool
    username: str | None = None
    subject: str | None = None
    expires_at: float | None = None
    has_refresh_token: bool = False
    authorization_error: str | None = None


def decode_jwt_claims(token: str) -> dict[str, Any]:
    """Decode the payload segment of a JWT without verifying it.

    Parameters
    ----------
    token : str
        A compact-serialized JWT.

    Returns
    -------
    dict[str, Any]
        The claims, or an empty dict if the token is not a readable JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    try:
        claims = json.loads(urlsafe_b64decode(parts[1].encode("ascii")))
    except (ValueError, UnicodeError):
        return {}
    return claims if isinstance(claims, dict) else {}
