"""RP-initiated logout (OIDC end-session)."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import secrets

from typing import TYPE_CHECKING
from urllib.parse import urlencode

from ..exceptions import AuthError, AuthFailure, AuthStage


if TYPE_CHECKING:
    from ..types import ProviderConfiguration
    from .session import AuthSession
    from .user_agent import ExternalUserAgent


logger = logging.getLogger("oidc_session.auth")


def build_end_session_url(
    config: ProviderConfiguration,
    id_token_hint: str,
    post_logout_redirect_uri: str,
    state: str | None = None,
) -> str | None:
    """Build the end-session URL, or None if the provider has no such endpoint."""
    if not config.end_session_endpoint:
        return None
    params = {
        "id_token_hint": id_token_hint,
        "post_logout_redirect_uri": post_logout_redirect_uri,
    }
    if state:
        params["state"] = state
    separator = "&" if "?" in config.end_session_endpoint else "?"
    return f"{config.end_session_endpoint}{separator}{urlencode(params)}"


class EndSessionController:
    """Ends the session at the provider and always clears it locally.

    Parameters
    ----------
    session : AuthSession
        The session to clear.
    user_agent : ExternalUserAgent, optional
        Agent that shows the end-session page. Without one, only the
        local session is cleared.
    """

    def __init__(self, session: AuthSession, user_agent: ExternalUserAgent | None = None) -> None:
        """Initialize the end-session controller."""
        self.session = session
        self.user_agent = user_agent

    async def logout(self, config: ProviderConfiguration, post_logout_redirect_uri: str) -> None:
        """Log out at the provider, best effort, then clear the session.

        Parameters
        ----------
        config : ProviderConfiguration
            The provider configuration.
        post_logout_redirect_uri : str
            Where the provider should send the user afterwards.

        Raises
        ------
        AuthError
            ``not-logged-in`` if the session holds no ID token.
        """
        tokens = self.session.tokens
        if tokens is None or not tokens.id_token:
            msg = "No ID token; not logged in"
            raise AuthError(msg, stage=AuthStage.NOT_LOGGED_IN, reason=AuthFailure.NOT_LOGGED_IN)

        try:
            url = build_end_session_url(
                config,
                id_token_hint=tokens.id_token,
                post_logout_redirect_uri=post_logout_redirect_uri,
                state=secrets.token_urlsafe(16),
            )
            if url is None:
                logger.info("Provider has no end_session_endpoint, clearing local session only")
            elif self.user_agent is None:
                logger.info("No user agent configured, clearing local session only")
            else:
                result = await self.user_agent.present(url, post_logout_redirect_uri)
                if result is None:
                    logger.info("End-session page was cancelled")
        except Exception as exc:  # noqa: BLE001
            logger.warning("End-session request failed: %s", exc)
        finally:
            await self.session.clear()
            logger.info("Logged out")
