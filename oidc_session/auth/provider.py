"""Token endpoint client for an OpenID provider.

Performs the authorization code and refresh token grants, ID token
checks and best-effort revocation against a discovered
ProviderConfiguration.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import time

from typing import TYPE_CHECKING, Any

import httpx

from authlib.jose import JsonWebKey, JsonWebToken
from authlib.jose.errors import JoseError

from ..exceptions import AuthError, AuthFailure, AuthStage
from ..log import redact_sensitive_data
from ..types import TokenSet, decode_jwt_claims


if TYPE_CHECKING:
    from ..types import ProviderConfiguration


logger = logging.getLogger("oidc_session.auth")

_ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512", "PS256"]


def _provider_error(resp: httpx.Response) -> tuple[str | None, str | None]:
    """Extract the OAuth2 ``error`` and ``error_description`` from a response."""
    try:
        body = resp.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    error = body.get("error")
    description = body.get("error_description")
    return (
        str(error) if error is not None else None,
        str(description) if description is not None else None,
    )


class OIDCProvider:
    """Client for a provider's token, JWKS and revocation endpoints.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    client_secret : str
        The OAuth2 client secret (empty string for public clients).
    http_client : httpx.AsyncClient, optional
        Shared HTTP client. One is created lazily if not given.
    timeout : float
        Seconds before a token request is abandoned (default ``10``).
    verify_id_token_claims : bool
        Check issuer, audience, expiry and nonce of received ID tokens.
    verify_id_token_signature : bool
        Also verify the ID token signature against the provider's JWKS.
    clock_skew_seconds : float
        Tolerance applied to the ID token ``exp`` check.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        *,
        verify_id_token_claims: bool = True,
        verify_id_token_signature: bool = False,
        clock_skew_seconds: float = 300.0,
    ) -> None:
        """Initialize the provider client."""
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.verify_id_token_claims = verify_id_token_claims
        self.verify_id_token_signature = verify_id_token_signature
        self.clock_skew_seconds = clock_skew_seconds
        self._http_client = http_client
        self._owns_client = http_client is None
        self._jwks_data: dict[str, dict[str, Any]] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    def _client_auth(self, data: dict[str, str]) -> dict[str, str]:
        data["client_id"] = self.client_id
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    async def _post_token(self, config: ProviderConfiguration, data: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(
            config.token_endpoint,
            data=self._client_auth(data),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
        )

    async def exchange_code(
        self,
        config: ProviderConfiguration,
        code: str,
        redirect_uri: str,
        code_verifier: str,
        nonce: str | None = None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        config : ProviderConfiguration
            The provider configuration.
        code : str
            The authorization code from the callback.
        redirect_uri : str
            The redirect URI used in the authorization request.
        code_verifier : str
            The PKCE code verifier.
        nonce : str, optional
            The nonce sent in the authorization request.

        Returns
        -------
        TokenSet
            The granted tokens.

        Raises
        ------
        AuthError
            Stage ``exchange``, reason ``network`` on transport failure or
            ``invalid-response`` on an error status or incomplete body.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        try:
            resp = await self._post_token(config, data)
        except httpx.HTTPError as exc:
            msg = f"Token exchange request failed: {exc}"
            raise AuthError(msg, stage=AuthStage.EXCHANGE, reason=AuthFailure.NETWORK) from exc

        if not resp.is_success:
            error, description = _provider_error(resp)
            msg = f"Token exchange failed: {resp.status_code} {description or error or ''}".rstrip()
            raise AuthError(
                msg,
                stage=AuthStage.EXCHANGE,
                reason=AuthFailure.INVALID_RESPONSE,
                provider_error=error,
                status=resp.status_code,
            )

        raw = self._decode_token_response(resp, AuthStage.EXCHANGE)
        missing = [name for name in ("access_token", "expires_in", "id_token") if not raw.get(name)]
        if missing:
            msg = f"Token response is missing {', '.join(missing)}"
            raise AuthError(msg, stage=AuthStage.EXCHANGE, reason=AuthFailure.INVALID_RESPONSE)

        tokens = self._build_token_set(raw, AuthStage.EXCHANGE)
        await self.validate_id_token(config, raw["id_token"], nonce=nonce)
        logger.debug("Token exchange response: %s", redact_sensitive_data(raw))
        return tokens

    async def refresh_tokens(self, config: ProviderConfiguration, previous: TokenSet) -> TokenSet:
        """Obtain a fresh access token with the refresh token grant.

        Tokens the provider does not rotate (refresh token, ID token) are
        carried over from ``previous``.

        Parameters
        ----------
        config : ProviderConfiguration
            The provider configuration.
        previous : TokenSet
            The current token set; must hold a refresh token.

        Returns
        -------
        TokenSet
            The replacement token set.

        Raises
        ------
        AuthError
            Stage ``refresh``: ``no-refresh-token`` if ``previous`` has
            none, ``invalid-grant`` if the provider rejected the refresh
            token, ``network`` on transport or server failure, and
            ``invalid-response`` for any other rejection or a body
            without an access token.
        """
        if not previous.refresh_token:
            msg = "No refresh token available"
            raise AuthError(msg, stage=AuthStage.REFRESH, reason=AuthFailure.NO_REFRESH_TOKEN)

        data = {"grant_type": "refresh_token", "refresh_token": previous.refresh_token}
        try:
            resp = await self._post_token(config, data)
        except httpx.HTTPError as exc:
            msg = f"Token refresh request failed: {exc}"
            raise AuthError(msg, stage=AuthStage.REFRESH, reason=AuthFailure.NETWORK) from exc

        if not resp.is_success:
            error, description = _provider_error(resp)
            msg = f"Token refresh failed: {resp.status_code} {description or error or ''}".rstrip()
            if error == "invalid_grant":
                reason = AuthFailure.INVALID_GRANT
            elif resp.status_code >= 500:
                reason = AuthFailure.NETWORK
            else:
                reason = AuthFailure.INVALID_RESPONSE
            raise AuthError(
                msg,
                stage=AuthStage.REFRESH,
                reason=reason,
                provider_error=error,
                status=resp.status_code,
            )

        raw = self._decode_token_response(resp, AuthStage.REFRESH)
        if not raw.get("access_token"):
            msg = "Refresh response is missing access_token"
            raise AuthError(msg, stage=AuthStage.REFRESH, reason=AuthFailure.INVALID_RESPONSE)

        tokens = self._build_token_set(raw, AuthStage.REFRESH, previous=previous)
        if raw.get("id_token"):
            await self.validate_id_token(config, raw["id_token"], stage=AuthStage.REFRESH)
        return tokens

    async def revoke_token(self, config: ProviderConfiguration, token: str) -> bool:
        """Revoke a token at the provider (RFC 7009).

        Returns
        -------
        bool
            True if revocation succeeded, False if no endpoint is
            configured or the request failed.
        """
        if not config.revocation_endpoint:
            return False
        try:
            client = await self._get_client()
            resp = await client.post(
                config.revocation_endpoint,
                data=self._client_auth({"token": token}),
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        return resp.is_success

    async def validate_id_token(
        self,
        config: ProviderConfiguration,
        id_token: str,
        nonce: str | None = None,
        stage: AuthStage = AuthStage.EXCHANGE,
    ) -> dict[str, Any]:
        """Check an ID token against the provider configuration.

        Checks issuer, audience, expiry and nonce; with
        ``verify_id_token_signature`` the signature is verified against
        the provider's JWKS as well.

        Returns
        -------
        dict[str, Any]
            The ID token claims.

        Raises
        ------
        AuthError
            Reason ``invalid-response`` if any check fails.
        """
        if self.verify_id_token_signature:
            claims = await self._verify_signature(config, id_token, stage)
        else:
            claims = decode_jwt_claims(id_token)
            if not claims and self.verify_id_token_claims:
                msg = "ID token is not a readable JWT"
                raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE)

        if not self.verify_id_token_claims:
            return claims

        problem: str | None = None
        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        exp = claims.get("exp")
        if str(claims.get("iss", "")).rstrip("/") != config.issuer.rstrip("/"):
            problem = f"issuer mismatch: {claims.get('iss')!r}"
        elif self.client_id not in audiences:
            problem = f"audience mismatch: {audience!r}"
        elif not isinstance(exp, (int, float)) or exp + self.clock_skew_seconds < time.time():
            problem = "ID token expired"
        elif nonce is not None and claims.get("nonce") != nonce:
            problem = "nonce mismatch"
        if problem:
            msg = f"ID token rejected: {problem}"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE)
        return claims

    async def _fetch_jwks(self, config: ProviderConfiguration, stage: AuthStage) -> dict[str, Any]:
        """Fetch the JWKS key set from the provider."""
        if not config.jwks_uri:
            msg = "Provider configuration has no jwks_uri"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE)
        cached = self._jwks_data.get(config.jwks_uri)
        if cached is not None:
            return cached
        try:
            client = await self._get_client()
            resp = await client.get(config.jwks_uri, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            msg = f"JWKS request failed: {exc}"
            raise AuthError(msg, stage=stage, reason=AuthFailure.NETWORK) from exc
        except ValueError as exc:
            msg = "JWKS document is not valid JSON"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE) from exc
        self._jwks_data[config.jwks_uri] = data
        return data

    async def _verify_signature(
        self, config: ProviderConfiguration, id_token: str, stage: AuthStage
    ) -> dict[str, Any]:
        jwks_data = await self._fetch_jwks(config, stage)
        jwt = JsonWebToken(_ID_TOKEN_ALGORITHMS)
        try:
            key_set = JsonWebKey.import_key_set(jwks_data)
            claims = jwt.decode(id_token, key_set)
        except (JoseError, ValueError) as exc:
            msg = f"ID token signature verification failed: {exc}"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE) from exc
        return dict(claims)

    @staticmethod
    def _decode_token_response(resp: httpx.Response, stage: AuthStage) -> dict[str, Any]:
        try:
            raw = resp.json()
        except ValueError as exc:
            msg = "Token response is not valid JSON"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE) from exc
        if not isinstance(raw, dict):
            msg = "Token response is not a JSON object"
            raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE)
        return raw

    @staticmethod
    def _build_token_set(
        raw: dict[str, Any],
        stage: AuthStage,
        previous: TokenSet | None = None,
    ) -> TokenSet:
        expires_in = raw.get("expires_in")
        expires_at: float | None = None
        if expires_in is not None:
            try:
                expires_at = time.time() + float(expires_in)
            except (TypeError, ValueError) as exc:
                msg = f"Token response has invalid expires_in: {expires_in!r}"
                raise AuthError(msg, stage=stage, reason=AuthFailure.INVALID_RESPONSE) from exc

        return TokenSet(
            access_token=str(raw["access_token"]),
            id_token=raw.get("id_token") or (previous.id_token if previous else None),
            refresh_token=raw.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            token_type=str(raw.get("token_type", "Bearer")),
            scope=str(raw.get("scope", previous.scope if previous else "")),
        )
