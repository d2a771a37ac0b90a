"""High-level OIDC session client.

OIDCSessionClient wires discovery, the login flow, the session with its
refresh coordinator, persistence, logout and the userinfo client around
one shared HTTP client. Applications normally use only this class.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

import httpx

from . import log
from .auth.discovery import DiscoveryClient
from .auth.end_session import EndSessionController
from .auth.flow import AuthFlowManager
from .auth.persistence import LoadResult, LoadStatus, PersistenceAdapter
from .auth.provider import OIDCProvider
from .auth.session import AuthSession, SessionRefreshCoordinator
from .auth.store import create_session_store
from .auth.user_agent import LOOPBACK_HOSTS, LoopbackUserAgent, SystemBrowserUserAgent
from .auth.userinfo import ResourceClient
from .config import get_settings
from .exceptions import DiscoveryError, OIDCSessionError
from .types import SessionState, SessionStatus


if TYPE_CHECKING:
    from .auth.store import SessionStore
    from .auth.user_agent import ExternalUserAgent
    from .config import OIDCSettings
    from .types import ProviderConfiguration, TokenSet


logger = logging.getLogger("oidc_session.client")

_USERNAME_CLAIMS = ("username", "preferred_username", "name", "email")


def default_user_agent(redirect_uri: str, timeout: float) -> ExternalUserAgent:
    """Pick a loopback listener for http://localhost redirects, else the system browser."""
    parsed = urlparse(redirect_uri)
    if parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS:
        return LoopbackUserAgent(timeout=timeout)
    return SystemBrowserUserAgent(timeout=timeout)


class OIDCSessionClient:
    """Application-facing OIDC client with a persistent session.

    Parameters
    ----------
    settings : OIDCSettings, optional
        Client configuration. Defaults to ``get_settings()``.
    store : SessionStore, optional
        Where session state is persisted. Defaults to the store
        selected by ``settings.store``.
    user_agent : ExternalUserAgent, optional
        Agent that shows the login and logout pages. Defaults to a
        loopback listener or the system browser, by redirect URI.
    http_client : httpx.AsyncClient, optional
        HTTP client shared by every component. One is created (and
        closed by ``close``) if not given.

    Examples
    --------
    >>> async with OIDCSessionClient() as client:  # doctest: +SKIP
    ...     await client.start()
    ...     if not client.is_authorized:
    ...         await client.login()
    ...     print(client.status().username)
    """

    def __init__(
        self,
        settings: OIDCSettings | None = None,
        store: SessionStore | None = None,
        user_agent: ExternalUserAgent | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client and its components."""
        self.settings = settings or get_settings()
        timeout = self.settings.http_timeout_seconds

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

        if store is None:
            store = create_session_store(
                self.settings.store.backend,
                directory=self.settings.store.directory,
                app_identifier=self.settings.app_identifier,
                service_name=self.settings.store.service_name,
            )
        self.persistence = PersistenceAdapter(store, key=self.settings.store.key)
        self.session = AuthSession(self.persistence)

        self.user_agent = user_agent or default_user_agent(
            self.settings.effective_redirect_uri, self.settings.auth_timeout_seconds
        )
        self.discovery = DiscoveryClient(self.http_client, timeout=timeout)
        self.provider = OIDCProvider(
            self.settings.client_id,
            self.settings.client_secret,
            self.http_client,
            timeout=timeout,
            verify_id_token_claims=self.settings.verify_id_token_claims,
            verify_id_token_signature=self.settings.verify_id_token_signature,
        )
        self.resources = ResourceClient(self.session, self.http_client, timeout=timeout)
        self.flow = AuthFlowManager(
            self.session,
            self.provider,
            self.user_agent,
            after_login=self._fetch_after_login,
        )
        self.end_session = EndSessionController(self.session, self.user_agent)
        self._coordinator: SessionRefreshCoordinator | None = None

    async def __aenter__(self) -> OIDCSessionClient:
        """Enter the async context."""
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        """Close the HTTP client on exit."""
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client and not self.http_client.is_closed:
            await self.http_client.aclose()

    @property
    def is_authorized(self) -> bool:
        """True if the session holds tokens not rejected by a resource server."""
        return self.session.authorized

    @property
    def user_info(self) -> dict[str, Any] | None:
        """Claims from the last successful userinfo fetch."""
        return self.resources.last_user_info

    async def configuration(self) -> ProviderConfiguration:
        """Return the provider configuration, discovering it on first use.

        Raises
        ------
        DiscoveryError
            If discovery fails.
        """
        return await self.discovery.configuration(self.settings.issuer_url)

    async def coordinator(self) -> SessionRefreshCoordinator:
        """Return the refresh coordinator for the discovered provider."""
        config = await self.configuration()
        if self._coordinator is None or self._coordinator.config != config:
            self._coordinator = SessionRefreshCoordinator(
                self.session,
                self.provider,
                config,
                margin_seconds=self.settings.refresh_margin_seconds,
            )
        return self._coordinator

    async def start(self) -> LoadResult:
        """Restore the persisted session and re-validate it.

        A restored session is checked with a userinfo request; its
        failure is logged and leaves the session as the request left it.
        Corrupt persisted state is overwritten with a logged-out session.

        Returns
        -------
        LoadResult
            The outcome of reading the persisted state.
        """
        result = await self.persistence.load()

        if result.status is LoadStatus.CORRUPT:
            logger.warning("Persisted session is unreadable, starting logged out: %s", result.error)
            try:
                await self.persistence.save(SessionState())
            except Exception:
                logger.exception("Failed to overwrite corrupt session state")
            return result

        if result.status is LoadStatus.RESTORED:
            await self.session.restore(result.state)
            logger.info("Restored persisted session")
            try:
                await self.fetch_user_info()
            except OIDCSessionError as exc:
                logger.warning("Restored session could not be re-validated: %s", exc)

        return result

    async def login(self, additional_parameters: dict[str, str] | None = None) -> TokenSet:
        """Run the interactive login through the user agent.

        Raises
        ------
        DiscoveryError
            If the provider configuration cannot be resolved.
        AuthError
            If the login is cancelled, rejected or the exchange fails.
        """
        self.settings.require_client()
        config = await self.configuration()
        return await self.flow.login(
            config,
            client_id=self.settings.client_id,
            redirect_uri=self.settings.effective_redirect_uri,
            scopes=self.settings.scope_list,
            additional_parameters=additional_parameters,
        )

    async def logout(self) -> None:
        """End the session at the provider and clear it locally.

        Raises
        ------
        AuthError
            ``not-logged-in`` if there is no session to end.
        """
        try:
            config = await self.configuration()
        except DiscoveryError as exc:
            logger.warning("Provider unreachable, clearing local session only: %s", exc)
            await self.session.clear()
        else:
            await self.end_session.logout(
                config, self.settings.effective_post_logout_redirect_uri
            )
        self.resources.last_user_info = None

    async def fetch_user_info(self) -> dict[str, Any]:
        """Fetch the userinfo claims, refreshing the access token if needed."""
        coordinator = await self.coordinator()
        return await self.resources.fetch_user_info(coordinator.config, coordinator)

    async def access_token(self) -> str:
        """Return a valid access token, refreshing it if needed."""
        coordinator = await self.coordinator()
        return await coordinator.access_token()

    def status(self) -> SessionStatus:
        """Project the session for display."""
        state = self.session.state
        tokens = state.tokens
        username = None
        if self.user_info:
            username = next(
                (str(self.user_info[c]) for c in _USERNAME_CLAIMS if self.user_info.get(c)), None
            )
        return SessionStatus(
            logged_in=state.authorized,
            username=username,
            subject=tokens.subject if tokens else None,
            expires_at=tokens.expires_at if tokens else None,
            has_refresh_token=bool(tokens and tokens.refresh_token),
            authorization_error=(
                state.authorization_error.error if state.authorization_error else None
            ),
        )

    async def _fetch_after_login(self, config: ProviderConfiguration) -> None:
        if not config.userinfo_endpoint:
            return
        await self.fetch_user_info()


def configure_logging(settings: OIDCSettings) -> None:
    """Apply the ``log`` section of ``settings`` to the package logger."""
    log.configure(settings.log.level, settings.log.format)
