"""OpenID provider discovery.

Resolves an issuer URL into a ProviderConfiguration by fetching its
``/.well-known/openid-configuration`` document.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging

from typing import Any

import httpx

from ..exceptions import DiscoveryError, DiscoveryFailure
from ..types import ProviderConfiguration


logger = logging.getLogger("oidc_session.auth")

WELL_KNOWN_PATH = "/.well-known/openid-configuration"

_REQUIRED_ENDPOINTS = ("authorization_endpoint", "token_endpoint")


def well_known_url(issuer_url: str) -> str:
    """Return the discovery document URL for ``issuer_url``."""
    return f"{issuer_url.rstrip('/')}{WELL_KNOWN_PATH}"


def parse_configuration(issuer_url: str, document: Any) -> ProviderConfiguration:
    """Validate a discovery document and build a ProviderConfiguration.

    Parameters
    ----------
    issuer_url : str
        The issuer the document was requested for.
    document : Any
        The decoded JSON document.

    Returns
    -------
    ProviderConfiguration
        The validated configuration.

    Raises
    ------
    DiscoveryError
        If the document is not an object, names a different issuer, or
        lacks a mandatory endpoint.
    """
    if not isinstance(document, dict):
        msg = "Discovery document is not a JSON object"
        raise DiscoveryError(msg, reason=DiscoveryFailure.MALFORMED, issuer=issuer_url)

    issuer = document.get("issuer")
    if not issuer:
        msg = "Discovery document has no issuer"
        raise DiscoveryError(msg, reason=DiscoveryFailure.MISSING_ENDPOINT, issuer=issuer_url)
    if not isinstance(issuer, str) or issuer.rstrip("/") != issuer_url.rstrip("/"):
        msg = f"Issuer mismatch: expected '{issuer_url.rstrip('/')}', got '{issuer}'"
        raise DiscoveryError(msg, reason=DiscoveryFailure.MALFORMED, issuer=issuer_url)

    for name in _REQUIRED_ENDPOINTS:
        value = document.get(name)
        if not value or not isinstance(value, str):
            msg = f"Discovery document is missing {name}"
            raise DiscoveryError(
                msg,
                reason=DiscoveryFailure.MISSING_ENDPOINT,
                issuer=issuer_url,
                endpoint=name,
            )

    def _optional(name: str) -> str | None:
        value = document.get(name)
        return value if isinstance(value, str) and value else None

    def _strings(name: str) -> tuple[str, ...]:
        value = document.get(name)
        if not isinstance(value, list):
            return ()
        return tuple(str(v) for v in value)

    return ProviderConfiguration(
        issuer=issuer,
        authorization_endpoint=document["authorization_endpoint"],
        token_endpoint=document["token_endpoint"],
        end_session_endpoint=_optional("end_session_endpoint"),
        userinfo_endpoint=_optional("userinfo_endpoint"),
        jwks_uri=_optional("jwks_uri"),
        revocation_endpoint=_optional("revocation_endpoint"),
        scopes_supported=_strings("scopes_supported"),
        code_challenge_methods_supported=_strings("code_challenge_methods_supported"),
        document=document,
    )


class DiscoveryClient:
    """Fetches and caches provider configurations.

    Parameters
    ----------
    http_client : httpx.AsyncClient, optional
        Shared HTTP client. One is created lazily if not given.
    timeout : float
        Seconds before a discovery request is abandoned (default ``10``).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the discovery client."""
        self._http_client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout
        self._cache: dict[str, ProviderConfiguration] = {}
        self._lock = asyncio.Lock()

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

    async def discover(self, issuer_url: str) -> ProviderConfiguration:
        """Fetch the provider's discovery document once, without caching.

        Parameters
        ----------
        issuer_url : str
            The OIDC issuer URL.

        Returns
        -------
        ProviderConfiguration
            The provider's endpoints.

        Raises
        ------
        DiscoveryError
            On transport failure (``network``), an unparsable body
            (``malformed``) or a missing mandatory endpoint
            (``missing-endpoint``).
        """
        url = well_known_url(issuer_url)
        logger.debug("Discovering OIDC configuration at %s", url)
        try:
            client = await self._get_client()
            resp = await client.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            msg = f"Discovery request failed: {exc.response.status_code}"
            raise DiscoveryError(
                msg,
                reason=DiscoveryFailure.NETWORK,
                issuer=issuer_url,
                status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            msg = f"Discovery request failed: {exc}"
            raise DiscoveryError(msg, reason=DiscoveryFailure.NETWORK, issuer=issuer_url) from exc

        try:
            document = resp.json()
        except ValueError as exc:
            msg = "Discovery document is not valid JSON"
            raise DiscoveryError(msg, reason=DiscoveryFailure.MALFORMED, issuer=issuer_url) from exc

        config = parse_configuration(issuer_url, document)
        logger.info("Discovered OIDC configuration for %s", config.issuer)
        return config

    async def configuration(self, issuer_url: str) -> ProviderConfiguration:
        """Return the cached configuration for ``issuer_url``, discovering it once."""
        key = issuer_url.rstrip("/")
        async with self._lock:
            config = self._cache.get(key)
            if config is None:
                config = await self.discover(issuer_url)
                self._cache[key] = config
            return config

    async def rediscover(self, issuer_url: str) -> ProviderConfiguration:
        """Drop any cached configuration for ``issuer_url`` and discover again."""
        async with self._lock:
            self._cache.pop(issuer_url.rstrip("/"), None)
        return await self.configuration(issuer_url)

    def cached(self, issuer_url: str) -> ProviderConfiguration | None:
        """Return the cached configuration without any network call."""
        return self._cache.get(issuer_url.rstrip("/"))
