"""oidc-session: OpenID Connect login with a persistent, self-refreshing session.

Discovers the provider, logs in with the authorization code flow and
PKCE, keeps tokens fresh with single-flight refresh, persists the
session across restarts and calls the userinfo endpoint.
"""

from __future__ import annotations

from .client import OIDCSessionClient
from .config import OIDCSettings, clear_settings, get_settings
from .exceptions import (
    AuthError,
    AuthFailure,
    AuthStage,
    DiscoveryError,
    DiscoveryFailure,
    OIDCSessionError,
    PersistenceError,
    PersistenceFailure,
    ResourceError,
    ResourceFailure,
)
from .types import (
    AuthorizationError,
    ProviderConfiguration,
    SessionState,
    SessionStatus,
    TokenSet,
)


__version__ = "0.1.0"

__all__ = [
    "AuthError",
    "AuthFailure",
    "AuthStage",
    "AuthorizationError",
    "DiscoveryError",
    "DiscoveryFailure",
    "OIDCSessionClient",
    "OIDCSessionError",
    "OIDCSettings",
    "PersistenceError",
    "PersistenceFailure",
    "ProviderConfiguration",
    "ResourceError",
    "ResourceFailure",
    "SessionState",
    "SessionStatus",
    "TokenSet",
    "__version__",
    "clear_settings",
    "get_settings",
]
