"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
Uses S256 challenge method (SHA-256 hash of the code verifier).
All randomness comes from :mod:`secrets`.
"""

from __future__ import annotations

import hashlib
import secrets

from base64 import urlsafe_b64encode
from dataclasses import dataclass


# RFC 7636 section 4.1 bounds on the verifier length (characters)
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def generate_verifier(num_bytes: int = 64) -> str:
    """Generate a high-entropy code verifier.

    Parameters
    ----------
    num_bytes : int
        Random bytes before base64url encoding (default 64, 86 characters).
        Must yield between 43 and 128 characters, i.e. 32 to 96 bytes.

    Returns
    -------
    str
        A verifier drawn from the unreserved character set.
    """
    if not 32 <= num_bytes <= 96:
        msg = f"num_bytes must be between 32 and 96, got {num_bytes}"
        raise ValueError(msg)
    return secrets.token_urlsafe(num_bytes)


def generate_challenge(verifier: str) -> str:
    """Return base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_state(num_bytes: int = 32) -> str:
    """Generate an independent random token for CSRF binding."""
    return secrets.token_urlsafe(num_bytes)


@dataclass(frozen=True)
class PKCEChallenge:
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
    def generate(cls, length: int = 64) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of bytes for the random verifier (default 64).

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        verifier = generate_verifier(length)
        return cls(verifier=verifier, challenge=generate_challenge(verifier))
