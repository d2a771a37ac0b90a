"""OIDC authentication system for oidc-session.

Provides provider discovery, PKCE, the authorization code flow,
session state with single-flight token refresh, persistence, logout
and the userinfo resource client.
"""

from __future__ import annotations

from .discovery import DiscoveryClient
from .end_session import EndSessionController
from .flow import AuthFlowManager, LoginHandle
from .persistence import LoadResult, LoadStatus, PersistenceAdapter
from .pkce import PKCEPair
from .provider import OIDCProvider
from .session import AuthSession, SessionRefreshCoordinator
from .store import (
    FileSessionStore,
    KeyringSessionStore,
    MemorySessionStore,
    SessionStore,
    create_session_store,
)
from .user_agent import ExternalUserAgent, LoopbackUserAgent, SystemBrowserUserAgent
from .userinfo import ResourceClient


__all__ = [
    "AuthFlowManager",
    "AuthSession",
    "DiscoveryClient",
    "EndSessionController",
    "ExternalUserAgent",
    "FileSessionStore",
    "KeyringSessionStore",
    "LoadResult",
    "LoadStatus",
    "LoginHandle",
    "LoopbackUserAgent",
    "MemorySessionStore",
    "OIDCProvider",
    "PKCEPair",
    "PersistenceAdapter",
    "ResourceClient",
    "SessionRefreshCoordinator",
    "SessionStore",
    "SystemBrowserUserAgent",
    "create_session_store",
]
