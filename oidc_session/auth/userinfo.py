"""Authenticated resource calls (OIDC userinfo)."""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any

import httpx

from ..exceptions import ResourceError, ResourceFailure
from ..log import redact_sensitive_data
from ..types import AuthorizationError


if TYPE_CHECKING:
    from ..types import ProviderConfiguration
    from .session import AuthSession, SessionRefreshCoordinator


logger = logging.getLogger("oidc_session.auth")


def parse_authorization_error(resp: httpx.Response) -> AuthorizationError:
    """Build an AuthorizationError from a 401 response.

    Reads ``error``/``error_description`` from a JSON body, falling back
    to the ``WWW-Authenticate`` bearer challenge (RFC 6750).
    """
    error: str | None = None
    description: str | None = None
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        description = body.get("error_description")

    if not error:
        challenge = resp.headers.get("WWW-Authenticate", "")
        for part in challenge.replace("Bearer", "", 1).split(","):
            name, _, value = part.strip().partition("=")
            value = value.strip('"')
            if name == "error":
                error = value
            elif name == "error_description" and not description:
                description = value

    return AuthorizationError(
        error=str(error or "invalid_token"),
        description=str(description) if description else None,
        status=resp.status_code,
    )


class ResourceClient:
    """Fetches the userinfo document with a valid access token.

    Parameters
    ----------
    session : AuthSession
        Session flagged with an authorization error on HTTP 401.
    http_client : httpx.AsyncClient, optional
        Shared HTTP client. One is created lazily if not given.
    timeout : float
        Seconds before a request is abandoned (default ``10``).
    """

    def __init__(
        self,
        session: AuthSession,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the resource client."""
        self.session = session
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None
        self.last_user_info: dict[str, Any] | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_user_info(
        self,
        config: ProviderConfiguration,
        coordinator: SessionRefreshCoordinator,
    ) -> dict[str, Any]:
        """Fetch the signed-in user's claims from the userinfo endpoint.

        Parameters
        ----------
        config : ProviderConfiguration
            The provider configuration.
        coordinator : SessionRefreshCoordinator
            Supplies a valid access token, refreshing it if needed.

        Returns
        -------
        dict[str, Any]
            The userinfo claims.

        Raises
        ------
        AuthError
            If no valid access token can be obtained.
        ResourceError
            ``unauthorized`` on HTTP 401 (the session is flagged),
            ``http`` on any other error status or a bad body,
            ``network`` on transport failure.
        """
        endpoint = config.userinfo_endpoint
        if not endpoint:
            msg = "Provider does not declare a userinfo endpoint"
            raise ResourceError(msg, reason=ResourceFailure.HTTP)

        async def _get(access_token: str) -> tuple[str, httpx.Response]:
            client = await self._get_client()
            try:
                resp = await client.get(
                    endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                msg = f"Userinfo request failed: {exc}"
                raise ResourceError(msg, reason=ResourceFailure.NETWORK) from exc
            return access_token, resp

        used_token, resp = await coordinator.with_valid_access_token(_get)

        if resp.status_code == 401:
            auth_error = parse_authorization_error(resp)
            await self.session.record_authorization_error(auth_error, access_token=used_token)
            msg = f"Userinfo request unauthorized: {auth_error.description or auth_error.error}"
            raise ResourceError(
                msg, reason=ResourceFailure.UNAUTHORIZED, status=401, body=resp.text
            )

        if not resp.is_success:
            msg = f"Userinfo request failed: HTTP {resp.status_code}"
            raise ResourceError(
                msg, reason=ResourceFailure.HTTP, status=resp.status_code, body=resp.text
            )

        try:
            user_info = resp.json()
        except ValueError as exc:
            msg = "Userinfo response is not valid JSON"
            raise ResourceError(
                msg, reason=ResourceFailure.HTTP, status=resp.status_code, body=resp.text
            ) from exc
        if not isinstance(user_info, dict):
            msg = "Userinfo response is not a JSON object"
            raise ResourceError(
                msg, reason=ResourceFailure.HTTP, status=resp.status_code, body=resp.text
            )

        self.last_user_info = user_info
        logger.debug("Fetched userinfo: %s", redact_sensitive_data(user_info))
        return user_info
