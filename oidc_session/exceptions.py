"""oidc-session exception hierarchy.

All library exceptions inherit from OIDCSessionError, enabling
catch-all handling while supporting specific error types. Every
failure in the core is one of these typed errors; the ``reason``
attribute carries the machine-readable failure class.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class DiscoveryFailure(str, Enum):
    """Why provider discovery failed."""

    NETWORK = "network"
    MALFORMED = "malformed"
    MISSING_ENDPOINT = "missing-endpoint"


class AuthStage(str, Enum):
    """Stage of the session lifecycle at which an auth error occurred."""

    CALLBACK = "callback"
    EXCHANGE = "exchange"
    REFRESH = "refresh"
    NOT_LOGGED_IN = "not-logged-in"


class AuthFailure(str, Enum):
    """Why an authentication step failed."""

    STATE_MISMATCH = "state-mismatch"
    USER_CANCELLED = "user-cancelled"
    PROVIDER_ERROR = "provider-error"
    MISSING_CODE = "missing-code"
    LOGIN_IN_PROGRESS = "login-in-progress"
    NETWORK = "network"
    INVALID_RESPONSE = "invalid-response"
    INVALID_GRANT = "invalid-grant"
    NO_REFRESH_TOKEN = "no-refresh-token"
    NOT_LOGGED_IN = "not-logged-in"


class ResourceFailure(str, Enum):
    """Why a resource (userinfo) call failed."""

    NETWORK = "network"
    HTTP = "http"
    UNAUTHORIZED = "unauthorized"


class PersistenceFailure(str, Enum):
    """Why persisted session state could not be loaded."""

    CORRUPT = "corrupt"
    UNSUPPORTED_VERSION = "unsupported-version"
    STORE = "store"


class OIDCSessionError(Exception):
    """Base exception for all oidc-session errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize the exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (reason, stage, status, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(
                f"{k}={v.value}" if isinstance(v, Enum) else f"{k}={v!r}"
                for k, v in self.context.items()
                if v is not None
            )
            if ctx:
                return f"{self.message} ({ctx})"
        return self.message


class DiscoveryError(OIDCSessionError):
    """Provider metadata could not be discovered.

    Raised on transport failure, an unparsable discovery document,
    or a document lacking a mandatory endpoint.
    """

    def __init__(
        self,
        message: str,
        reason: DiscoveryFailure,
        issuer: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize discovery error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        reason : DiscoveryFailure
            The failure class.
        issuer : str, optional
            The issuer URL that was being discovered.
        **context : Any
            Additional context.
        """
        super().__init__(message, reason=reason, issuer=issuer, **context)
        self.reason = reason
        self.issuer = issuer


class AuthError(OIDCSessionError):
    """An authorization, token exchange, or refresh step failed.

    ``stage`` tells where in the lifecycle the failure happened and
    ``reason`` why. ``provider_error`` holds the OAuth2 ``error`` code
    returned by the provider, when there was one.
    """

    def __init__(
        self,
        message: str,
        stage: AuthStage,
        reason: AuthFailure,
        provider_error: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        stage : AuthStage
            Lifecycle stage of the failure.
        reason : AuthFailure
            The failure class.
        provider_error : str, optional
            OAuth2 error code reported by the provider.
        **context : Any
            Additional context.
        """
        super().__init__(
            message, stage=stage, reason=reason, provider_error=provider_error, **context
        )
        self.stage = stage
        self.reason = reason
        self.provider_error = provider_error


class ResourceError(OIDCSessionError):
    """An authenticated resource request failed."""

    def __init__(
        self,
        message: str,
        reason: ResourceFailure,
        status: int | None = None,
        body: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize resource error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        reason : ResourceFailure
            The failure class.
        status : int, optional
            HTTP status code of the response, if one was received.
        body : str, optional
            Response body text, if one was received.
        **context : Any
            Additional context.
        """
        super().__init__(message, reason=reason, status=status, **context)
        self.reason = reason
        self.status = status
        self.body = body


class PersistenceError(OIDCSessionError):
    """Persisted session state is unreadable.

    Never raised out of ``PersistenceAdapter.load``; it is returned on
    the load result so the caller can decide to discard the data.
    """

    def __init__(self, message: str, reason: PersistenceFailure, **context: Any) -> None:
        """Initialize persistence error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        reason : PersistenceFailure
            The failure class.
        **context : Any
            Additional context.
        """
        super().__init__(message, reason=reason, **context)
        self.reason = reason
