"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


MIN_VERIFIER_BYTES = 32


def compute_challenge(verifier: str) -> str:
    """Return the S256 code challenge for ``verifier``."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string).
    challenge : str
        The code challenge (base64url-encoded SHA-256 hash of verifier).
    method : str
        The challenge method, always "S256".
    """

    verifier: str
    challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls, length: int = 64) -> PKCEPair:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of random bytes for the verifier (default 64).
            RFC 7636 requires at least 32 bytes.

        Returns
        -------
        PKCEPair
            A new PKCE pair.

        Raises
        ------
        ValueError
            If ``length`` is below 32 bytes.
        """
        if length < MIN_VERIFIER_BYTES:
            msg = f"PKCE verifier needs at least {MIN_VERIFIER_BYTES} random bytes, got {length}"
            raise ValueError(msg)
        verifier = secrets.token_urlsafe(length)
        return cls(verifier=verifier, challenge=compute_challenge(verifier))

    def verify(self) -> bool:
        """Check that the challenge is the digest of the verifier."""
        return secrets.compare_digest(self.challenge, compute_challenge(self.verifier))
