"""Versioned serialization of session state into a SessionStore.

The payload is a UTF-8 JSON document::

    {"version": 1,
     "tokens": {"access_token": ..., "id_token": ..., ...} | null,
     "authorization_error": {"error": ..., ...} | null}

A logged-out session is written as ``"tokens": null`` rather than
deleted, so the latest transition is always what a restart sees.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import json
import logging

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import PersistenceError, PersistenceFailure
from ..types import AuthorizationError, SessionState, TokenSet


if TYPE_CHECKING:
    from .store import SessionStore


logger = logging.getLogger("oidc_session.auth")

FORMAT_VERSION = 1
DEFAULT_STATE_KEY = "oidc_session.auth_state"


class LoadStatus(str, Enum):
    """Outcome of reading persisted state."""

    RESTORED = "restored"
    EMPTY = "empty"
    CORRUPT = "corrupt"


@dataclass(frozen=True)
class LoadResult:
    """Result of ``PersistenceAdapter.load``.

    Attributes
    ----------
    status : LoadStatus
        Whether a session was restored, nothing was stored, or the
        stored data could not be read.
    state : SessionState
        The restored state (empty unless ``status`` is RESTORED).
    error : PersistenceError or None
        Why the data was unreadable, for CORRUPT results.
    """

    status: LoadStatus
    state: SessionState = field(default_factory=SessionState)
    error: PersistenceError | None = None


def serialize_state(state: SessionState) -> bytes:
    """Encode a SessionState in the current format version."""
    tokens = state.tokens
    error = state.authorization_error
    document: dict[str, Any] = {
        "version": FORMAT_VERSION,
        "tokens": None
        if tokens is None
        else {
            "access_token": tokens.access_token,
            "id_token": tokens.id_token,
            "refresh_token": tokens.refresh_token,
            "expires_at": tokens.expires_at,
            "token_type": tokens.token_type,
            "scope": tokens.scope,
        },
        "authorization_error": None
        if error is None
        else {
            "error": error.error,
            "description": error.description,
            "status": error.status,
        },
    }
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def deserialize_state(data: bytes) -> SessionState:
    """Decode bytes written by ``serialize_state``.

    Raises
    ------
    PersistenceError
        If the payload is not a supported, well-formed document.
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        msg = f"Persisted session is not valid JSON: {exc}"
        raise PersistenceError(msg, reason=PersistenceFailure.CORRUPT) from exc

    if not isinstance(document, dict):
        msg = "Persisted session is not a JSON object"
        raise PersistenceError(msg, reason=PersistenceFailure.CORRUPT)
    version = document.get("version")
    if version != FORMAT_VERSION:
        msg = f"Unsupported persisted session version: {version!r}"
        raise PersistenceError(msg, reason=PersistenceFailure.UNSUPPORTED_VERSION, version=version)

    try:
        raw_tokens = document.get("tokens")
        tokens = None
        if raw_tokens is not None:
            expires_at = raw_tokens.get("expires_at")
            access_token = raw_tokens["access_token"]
            if not isinstance(access_token, str) or not access_token:
                msg = "Persisted session has no usable access token"
                raise PersistenceError(msg, reason=PersistenceFailure.CORRUPT)
            tokens = TokenSet(
                access_token=access_token,
                id_token=raw_tokens.get("id_token"),
                refresh_token=raw_tokens.get("refresh_token"),
                expires_at=float(expires_at) if expires_at is not None else None,
                token_type=raw_tokens.get("token_type", "Bearer"),
                scope=raw_tokens.get("scope", ""),
            )
        raw_error = document.get("authorization_error")
        error = None
        if raw_error is not None:
            error = AuthorizationError(
                error=str(raw_error["error"]),
                description=raw_error.get("description"),
                status=raw_error.get("status"),
            )
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        msg = f"Persisted session has an invalid structure: {exc!r}"
        raise PersistenceError(msg, reason=PersistenceFailure.CORRUPT) from exc

    return SessionState(tokens=tokens, authorization_error=error)


class PersistenceAdapter:
    """Reads and writes session state in a scoped store.

    Parameters
    ----------
    store : SessionStore
        The byte store.
    key : str
        Fixed key the state is stored under.
    """

    def __init__(self, store: SessionStore, key: str = DEFAULT_STATE_KEY) -> None:
        """Initialize the adapter."""
        self.store = store
        self.key = key
        self._write_lock = asyncio.Lock()

    async def save(self, state: SessionState) -> None:
        """Persist ``state``, overwriting the previous value.

        Writes are serialized; callers that issue saves in transition
        order get them applied in that order.
        """
        payload = serialize_state(state)
        async with self._write_lock:
            await self.store.set(self.key, payload)
        logger.debug("Persisted session state (authorized=%s)", state.authorized)

    async def load(self) -> LoadResult:
        """Read persisted state.

        Never raises: a missing key is EMPTY, unreadable data is CORRUPT
        with the cause on ``LoadResult.error``.
        """
        try:
            data = await self.store.get(self.key)
        except Exception as exc:  # noqa: BLE001
            error = PersistenceError(
                f"Session store read failed: {exc}", reason=PersistenceFailure.STORE
            )
            logger.warning("Could not read persisted session: %s", exc)
            return LoadResult(status=LoadStatus.CORRUPT, error=error)

        if data is None:
            return LoadResult(status=LoadStatus.EMPTY)

        try:
            state = deserialize_state(data)
        except PersistenceError as exc:
            logger.warning("Discarding unreadable persisted session: %s", exc)
            return LoadResult(status=LoadStatus.CORRUPT, error=exc)

        if state.is_empty:
            return LoadResult(status=LoadStatus.EMPTY, state=state)
        return LoadResult(status=LoadStatus.RESTORED, state=state)

    async def clear(self) -> None:
        """Remove persisted state entirely."""
        async with self._write_lock:
            await self.store.delete(self.key)
