"""Pluggable byte stores for persisted session state.

Provides the SessionStore ABC and concrete implementations for
in-memory, application-scoped file, and OS keyring persistence.
Stores know nothing about the payload; PersistenceAdapter owns the
format.
"""

from __future__ import annotations

import asyncio
import base64
import contextlib
import os
import re
import tempfile

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class SessionStore(ABC):
    """Abstract base class for a scoped key-value byte store.

    All methods are async to support both local and OS-backed stores.
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Read the bytes stored under ``key``.

        Parameters
        ----------
        key : str
            The storage key.

        Returns
        -------
        bytes or None
            The stored bytes, or None if nothing is stored.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value.

        Parameters
        ----------
        key : str
            The storage key.
        value : bytes
            The payload.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present.

        Parameters
        ----------
        key : str
            The storage key.
        """


class MemorySessionStore(SessionStore):
    """In-memory store for tests and single-process use."""

    def __init__(self) -> None:
        """Initialize the memory store."""
        self._data: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> bytes | None:
        """Read bytes from memory."""
        async with self._lock:
            return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        """Write bytes to memory."""
        async with self._lock:
            self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        """Delete bytes from memory."""
        async with self._lock:
            self._data.pop(key, None)


_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def default_store_directory(app_identifier: str) -> Path:
    """Return the per-user data directory for ``app_identifier``."""
    base = os.environ.get("XDG_DATA_HOME") or "~/.local/share"
    if os.name == "nt":
        base = os.environ.get("APPDATA", "~")
    return Path(base).expanduser() / _UNSAFE_FILENAME.sub("_", app_identifier or "oidc_session")


class FileSessionStore(SessionStore):
    """Store that keeps one file per key inside an application directory.

    Writes go to a temporary file that atomically replaces the target,
    so a crash mid-write never leaves a truncated payload behind.

    Parameters
    ----------
    directory : str or Path
        The application-scoped directory (created on first write).
    """

    def __init__(self, directory: str | Path) -> None:
        """Initialize the file store."""
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_FILENAME.sub('_', key)}.bin"

    def _read(self, key: str) -> bytes | None:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, key: str, value: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(value)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self._path(key))
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp)
            raise

    def _remove(self, key: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._path(key).unlink()

    async def get(self, key: str) -> bytes | None:
        """Read bytes from the key's file."""
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: bytes) -> None:
        """Atomically replace the key's file."""
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        """Remove the key's file."""
        await asyncio.to_thread(self._remove, key)


class KeyringSessionStore(SessionStore):
    """OS keyring-backed store for persistent native credentials.

    Keyring backends hold text, so payloads are stored base64-encoded.

    Parameters
    ----------
    service_name : str
        Service name for keyring storage (default "oidc-session").
    """

    def __init__(self, service_name: str = "oidc-session") -> None:
        """Initialize the keyring store."""
        try:
            import keyring
        except ImportError:
            msg = "Install keyring for OS credential storage: pip install oidc-session[keyring]"
            raise ImportError(msg) from None
        self._service_name = service_name
        self._keyring = keyring

    async def get(self, key: str) -> bytes | None:
        """Read bytes from the OS keyring."""
        data = await asyncio.to_thread(self._keyring.get_password, self._service_name, key)
        if data is None:
            return None
        return base64.b64decode(data)

    async def set(self, key: str, value: bytes) -> None:
        """Write bytes to the OS keyring."""
        encoded = base64.b64encode(value).decode("ascii")
        await asyncio.to_thread(self._keyring.set_password, self._service_name, key, encoded)

    async def delete(self, key: str) -> None:
        """Delete bytes from the OS keyring."""
        with contextlib.suppress(self._keyring.errors.PasswordDeleteError):
            await asyncio.to_thread(self._keyring.delete_password, self._service_name, key)


def create_session_store(backend: str = "memory", **kwargs: Any) -> SessionStore:
    """Factory function for session stores.

    Parameters
    ----------
    backend : str
        Storage backend: "memory", "file", or "keyring".
    **kwargs : Any
        ``directory`` for the file backend, ``service_name`` for keyring.

    Returns
    -------
    SessionStore
        A new store instance.
    """
    if backend == "memory":
        return MemorySessionStore()
    if backend == "file":
        directory = kwargs.get("directory") or default_store_directory(kwargs.get("app_identifier", ""))
        return FileSessionStore(directory)
    if backend == "keyring":
        return KeyringSessionStore(service_name=kwargs.get("service_name", "oidc-session"))
    msg = f"Unknown session store backend: {backend}"
    raise ValueError(msg)
