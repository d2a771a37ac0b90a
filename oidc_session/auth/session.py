"""Authentication session state and access-token refresh.

AuthSession is the single source of truth for login status. Every
transition is persisted and then broadcast to listeners, in that
order, under one lock. SessionRefreshCoordinator hands out valid
access tokens, running at most one refresh-token grant at a time and
sharing its outcome with every concurrent caller.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import inspect
import logging

from typing import TYPE_CHECKING, Any, TypeVar

from ..exceptions import AuthError, AuthFailure, AuthStage
from ..types import AuthorizationError, SessionState, TokenSet


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..types import ProviderConfiguration
    from .persistence import PersistenceAdapter
    from .provider import OIDCProvider


logger = logging.getLogger("oidc_session.auth")

T = TypeVar("T")


class AuthSession:
    """Holds the current tokens and authorization status.

    Parameters
    ----------
    persistence : PersistenceAdapter, optional
        Adapter every transition is written through to.
    """

    def __init__(self, persistence: PersistenceAdapter | None = None) -> None:
        """Initialize an empty (logged out) session."""
        self.persistence = persistence
        self._state = SessionState()
        self._lock = asyncio.Lock()
        self._listeners: list[Callable[[SessionState], None]] = []

    @property
    def state(self) -> SessionState:
        """The current immutable session snapshot."""
        return self._state

    @property
    def tokens(self) -> TokenSet | None:
        """Current tokens, or None when logged out."""
        return self._state.tokens

    @property
    def authorization_error(self) -> AuthorizationError | None:
        """Authorization error recorded by the last rejected resource call."""
        return self._state.authorization_error

    @property
    def authorized(self) -> bool:
        """True if tokens are present and not flagged by an authorization error."""
        return self._state.authorized

    def add_listener(self, listener: Callable[[SessionState], None]) -> None:
        """Register a callable invoked with the new state after each transition."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SessionState], None]) -> None:
        """Unregister a listener added with ``add_listener``."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def set_tokens(self, tokens: TokenSet) -> bool:
        """Install a new token set, clearing any authorization error.

        Returns
        -------
        bool
            False if the session already held exactly this state.
        """
        return await self._transition(SessionState(tokens=tokens))

    async def replace_tokens(self, previous: TokenSet, tokens: TokenSet) -> bool:
        """Install ``tokens`` only if the session still holds ``previous``.

        Used by refresh so that a logout racing a refresh is never undone.
        """
        async with self._lock:
            if self._state.tokens != previous:
                return False
            return await self._apply(SessionState(tokens=tokens))

    async def record_authorization_error(
        self, error: AuthorizationError, access_token: str | None = None
    ) -> bool:
        """Flag the current tokens as rejected by a resource server.

        Tokens are kept; ``authorized`` becomes False until new tokens
        are installed.

        Parameters
        ----------
        error : AuthorizationError
            The error reported by the resource server.
        access_token : str, optional
            The access token the rejected request was sent with. When
            given, the error is recorded only if the session still holds
            that token.
        """
        async with self._lock:
            tokens = self._state.tokens
            if tokens is None:
                return False
            if access_token is not None and tokens.access_token != access_token:
                logger.debug("Ignoring authorization error for a replaced access token")
                return False
            return await self._apply(
                SessionState(tokens=self._state.tokens, authorization_error=error)
            )

    async def clear(self) -> bool:
        """Log out locally: drop tokens and any authorization error."""
        return await self._transition(SessionState())

    async def clear_if(self, previous: TokenSet) -> bool:
        """Log out only if the session still holds ``previous``.

        Used when a refresh token is rejected so that tokens installed
        meanwhile by a new login survive.
        """
        async with self._lock:
            if self._state.tokens != previous:
                return False
            return await self._apply(SessionState())

    async def restore(self, state: SessionState) -> bool:
        """Install a state loaded from persistence without writing it back."""
        async with self._lock:
            return await self._apply(state, persist=False)

    async def _transition(self, state: SessionState) -> bool:
        async with self._lock:
            return await self._apply(state)

    async def _apply(self, state: SessionState, persist: bool = True) -> bool:
        """Mutate, persist, then notify. Caller holds ``_lock``."""
        if state == self._state:
            return False
        self._state = state

        if persist and self.persistence is not None:
            try:
                await self.persistence.save(state)
            except Exception:
                logger.exception("Failed to persist session state")

        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session listener %r failed", listener)

        logger.info("Session state changed (authorized=%s)", state.authorized)
        return True


class SessionRefreshCoordinator:
    """Supplies valid access tokens, refreshing them when needed.

    Parameters
    ----------
    session : AuthSession
        The session whose tokens are used and replaced.
    provider : OIDCProvider
        Client for the provider's token endpoint.
    config : ProviderConfiguration
        The provider configuration.
    margin_seconds : float
        Tokens expiring within this many seconds count as expired
        (default ``5``).
    """

    def __init__(
        self,
        session: AuthSession,
        provider: OIDCProvider,
        config: ProviderConfiguration,
        margin_seconds: float = 5.0,
    ) -> None:
        """Initialize the coordinator."""
        self.session = session
        self.provider = provider
        self.config = config
        self.margin_seconds = margin_seconds
        self._refresh_task: asyncio.Task[TokenSet] | None = None

    @property
    def refresh_in_progress(self) -> bool:
        """True while a refresh-token grant is in flight."""
        return self._refresh_task is not None and not self._refresh_task.done()

    async def with_valid_access_token(self, fn: Callable[[str], T | Awaitable[T]]) -> T:
        """Call ``fn`` with an access token that is not about to expire.

        Parameters
        ----------
        fn : callable
            Sync or async callable taking the access token.

        Returns
        -------
        T
            Whatever ``fn`` returns (awaited if it is awaitable).

        Raises
        ------
        AuthError
            ``not-logged-in`` without tokens; stage ``refresh`` if the
            token is expired and cannot be refreshed.
        """
        token = await self.access_token()
        result = fn(token)
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]

    async def access_token(self) -> str:
        """Return a valid access token, refreshing it first if expired."""
        tokens = self.session.tokens
        if tokens is None:
            msg = "Not logged in"
            raise AuthError(msg, stage=AuthStage.NOT_LOGGED_IN, reason=AuthFailure.NOT_LOGGED_IN)

        if not tokens.is_expired(self.margin_seconds):
            return tokens.access_token

        if not tokens.refresh_token:
            msg = "Access token expired and no refresh token is available"
            raise AuthError(msg, stage=AuthStage.REFRESH, reason=AuthFailure.NO_REFRESH_TOKEN)

        logger.debug("Access token expired, refreshing")
        refreshed = await self.refresh()
        return refreshed.access_token

    async def refresh(self) -> TokenSet:
        """Run the refresh-token grant, or join the one already running.

        Every caller that arrives while a refresh is in flight receives
        the same new token set or the same AuthError.
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_refresh())
            self._refresh_task = task
            task.add_done_callback(self._refresh_done)
        # A cancelled waiter must not cancel the refresh for the others
        return await asyncio.shield(task)

    def _refresh_done(self, task: asyncio.Task[Any]) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    async def _do_refresh(self) -> TokenSet:
        tokens = self.session.tokens
        if tokens is None:
            msg = "Not logged in"
            raise AuthError(msg, stage=AuthStage.NOT_LOGGED_IN, reason=AuthFailure.NOT_LOGGED_IN)

        try:
            new_tokens = await self.provider.refresh_tokens(self.config, tokens)
        except AuthError as exc:
            logger.warning("Token refresh failed: %s", exc)
            if exc.reason is AuthFailure.INVALID_GRANT:
                if await self.session.clear_if(tokens):
                    logger.info("Refresh token rejected, session cleared")
                else:
                    logger.info("Refresh token rejected, session already replaced")
            raise

        if not await self.session.replace_tokens(tokens, new_tokens):
            current = self.session.tokens
            if current is None:
                msg = "Session was logged out during token refresh"
                raise AuthError(
                    msg, stage=AuthStage.NOT_LOGGED_IN, reason=AuthFailure.NOT_LOGGED_IN
                )
            return current

        logger.info("Access token refreshed")
        return new_tokens
