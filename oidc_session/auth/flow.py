"""Authorization code + PKCE login flow orchestrator.

AuthFlowManager builds the authorization request, hands the URL to an
external user agent, validates the callback and exchanges the code
for tokens, which it installs into the AuthSession. Only one login
may be pending at a time.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import secrets

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlparse

from ..exceptions import AuthError, AuthFailure, AuthStage
from ..types import AuthFlowState, AuthorizationRequest
from .pkce import PKCEPair


if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from ..types import ProviderConfiguration, TokenSet
    from .provider import OIDCProvider
    from .session import AuthSession
    from .user_agent import ExternalUserAgent


logger = logging.getLogger("oidc_session.auth")


@dataclass(frozen=True)
class LoginHandle:
    """A pending login attempt returned by ``begin_login``.

    Attributes
    ----------
    flow_id : str
        Identifier used in log messages.
    config : ProviderConfiguration
        The provider the request targets.
    request : AuthorizationRequest
        The authorization request (state, nonce, challenge).
    pkce : PKCEPair
        The PKCE pair; the verifier is sent in the token exchange.
    authorization_url : str
        The URL to show in the user agent.
    """

    flow_id: str
    config: ProviderConfiguration
    request: AuthorizationRequest
    pkce: PKCEPair
    authorization_url: str


def parse_callback(callback_url: str) -> dict[str, str]:
    """Extract the single-valued query parameters of a redirect URL."""
    parsed = urlparse(callback_url)
    params = parse_qs(parsed.query)
    if not params and parsed.fragment:
        params = parse_qs(parsed.fragment)
    return {name: values[0] for name, values in params.items() if values}


class AuthFlowManager:
    """Orchestrates the authorization code flow with PKCE.

    Parameters
    ----------
    session : AuthSession
        Session that receives the tokens.
    provider : OIDCProvider
        Client for the provider's token endpoint.
    user_agent : ExternalUserAgent, optional
        Agent used by ``login`` to show the authorization URL.
    after_login : callable, optional
        Coroutine function run with the provider configuration after a
        successful login (e.g. a userinfo fetch). Its failure is logged
        and does not fail the login.
    """

    def __init__(
        self,
        session: AuthSession,
        provider: OIDCProvider,
        user_agent: ExternalUserAgent | None = None,
        after_login: Callable[[ProviderConfiguration], Awaitable[Any]] | None = None,
    ) -> None:
        """Initialize the auth flow manager."""
        self.session = session
        self.provider = provider
        self.user_agent = user_agent
        self.after_login = after_login

        self._flow_state = AuthFlowState.PENDING
        self._pending: LoginHandle | None = None

    @property
    def flow_state(self) -> AuthFlowState:
        """Current state of the auth flow."""
        return self._flow_state

    @property
    def pending(self) -> LoginHandle | None:
        """The login attempt awaiting its callback, if any."""
        return self._pending

    def begin_login(
        self,
        config: ProviderConfiguration,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        additional_parameters: dict[str, str] | None = None,
    ) -> LoginHandle:
        """Start a login attempt.

        Parameters
        ----------
        config : ProviderConfiguration
            The provider configuration.
        client_id : str
            The OAuth2 client ID.
        redirect_uri : str
            The registered redirect URI.
        scopes : iterable of str
            Requested scopes.
        additional_parameters : dict, optional
            Extra query parameters for the authorization endpoint.

        Returns
        -------
        LoginHandle
            Handle carrying the authorization URL and the secrets needed
            to complete the login.

        Raises
        ------
        AuthError
            ``login-in-progress`` if another login is still pending.
        """
        if self._pending is not None:
            msg = "A login is already in progress"
            raise AuthError(
                msg,
                stage=AuthStage.CALLBACK,
                reason=AuthFailure.LOGIN_IN_PROGRESS,
                flow_id=self._pending.flow_id,
            )

        pkce = PKCEPair.generate()
        request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=tuple(scopes),
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            code_challenge=pkce.challenge,
            code_challenge_method=pkce.method,
            additional_parameters=dict(additional_parameters or {}),
        )
        handle = LoginHandle(
            flow_id=secrets.token_urlsafe(8),
            config=config,
            request=request,
            pkce=pkce,
            authorization_url=request.to_url(config),
        )
        self._pending = handle
        self._flow_state = AuthFlowState.IN_PROGRESS
        logger.info("Auth flow %s started for %s", handle.flow_id, config.issuer)
        return handle

    async def complete_login(self, handle: LoginHandle, callback_url: str | None) -> TokenSet:
        """Validate the callback and exchange the code for tokens.

        Parameters
        ----------
        handle : LoginHandle
            The handle returned by ``begin_login``.
        callback_url : str or None
            The redirect URL delivered by the user agent, or None if the
            user cancelled.

        Returns
        -------
        TokenSet
            The tokens now held by the session.

        Raises
        ------
        AuthError
            Stage ``callback`` for a cancelled, forged or failed
            redirect, or a handle that is no longer pending; stage
            ``exchange`` if the token request fails.
        """
        if handle is not self._pending:
            msg = "Login attempt is no longer pending"
            raise AuthError(
                msg,
                stage=AuthStage.CALLBACK,
                reason=AuthFailure.STATE_MISMATCH,
                flow_id=handle.flow_id,
            )

        try:
            tokens = await self._complete(handle, callback_url)
        except AuthError as exc:
            self._flow_state = (
                AuthFlowState.CANCELLED
                if exc.reason is AuthFailure.USER_CANCELLED
                else AuthFlowState.FAILED
            )
            logger.warning("Auth flow %s failed: %s", handle.flow_id, exc)
            raise
        finally:
            if self._pending is handle:
                self._pending = None

        self._flow_state = AuthFlowState.COMPLETED
        logger.info("Auth flow %s completed successfully", handle.flow_id)

        if self.after_login is not None:
            try:
                await self.after_login(handle.config)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Post-login fetch failed: %s", exc)

        return tokens

    async def login(
        self,
        config: ProviderConfiguration,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        additional_parameters: dict[str, str] | None = None,
    ) -> TokenSet:
        """Run the whole flow through the configured user agent.

        Raises
        ------
        AuthError
            As ``begin_login`` and ``complete_login``.
        """
        if self.user_agent is None:
            msg = "No user agent configured for interactive login"
            raise RuntimeError(msg)

        handle = self.begin_login(config, client_id, redirect_uri, scopes, additional_parameters)
        try:
            callback_url = await self.user_agent.present(handle.authorization_url, redirect_uri)
        except BaseException:
            self.abandon(handle)
            raise
        return await self.complete_login(handle, callback_url)

    def abandon(self, handle: LoginHandle) -> None:
        """Drop a pending login without completing it."""
        if self._pending is handle:
            self._pending = None
            self._flow_state = AuthFlowState.CANCELLED
            logger.info("Auth flow %s abandoned", handle.flow_id)

    async def _complete(self, handle: LoginHandle, callback_url: str | None) -> TokenSet:
        flow_id = handle.flow_id
        if callback_url is None:
            msg = "Login was cancelled"
            raise AuthError(
                msg, stage=AuthStage.CALLBACK, reason=AuthFailure.USER_CANCELLED, flow_id=flow_id
            )

        params = parse_callback(callback_url)

        error = params.get("error")
        if error:
            description = params.get("error_description") or error
            reason = (
                AuthFailure.USER_CANCELLED if error == "access_denied" else AuthFailure.PROVIDER_ERROR
            )
            msg = f"Provider returned error: {description}"
            raise AuthError(
                msg, stage=AuthStage.CALLBACK, reason=reason, provider_error=error, flow_id=flow_id
            )

        state = params.get("state", "")
        if not secrets.compare_digest(state.encode(), handle.request.state.encode()):
            msg = "State parameter mismatch (possible CSRF attack)"
            raise AuthError(
                msg, stage=AuthStage.CALLBACK, reason=AuthFailure.STATE_MISMATCH, flow_id=flow_id
            )

        code = params.get("code")
        if not code:
            msg = "No authorization code in callback"
            raise AuthError(
                msg, stage=AuthStage.CALLBACK, reason=AuthFailure.MISSING_CODE, flow_id=flow_id
            )

        tokens = await self.provider.exchange_code(
            handle.config,
            code=code,
            redirect_uri=handle.request.redirect_uri,
            code_verifier=handle.pkce.verifier,
            nonce=handle.request.nonce,
        )
        await self.session.set_tokens(tokens)
        return tokens
