"""
Facilitator authentication.

Public facilitators accept anonymous verify/settle calls. When a key pair
is configured (arguments or ``SHROUD_FACILITATOR_KEY_*``), every call
carries a short-lived JWT bound to its method, host and path.
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote, urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519
from x402.http import AuthHeaders, AuthProvider

from . import __version__
from .config import SHROUD_FACILITATOR_KEY_ID_ENV, SHROUD_FACILITATOR_KEY_SECRET_ENV

FACILITATOR_AUDIENCE = ["facilitator"]
FACILITATOR_ISSUER = "shroud"
TOKEN_LIFETIME_SECONDS = 120

SigningKey = Union[ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]


@dataclass(frozen=True)
class FacilitatorCredentials:
    api_key_id: str
    api_key_secret: str

    def __repr__(self) -> str:
        return f"FacilitatorCredentials(api_key_id={self.api_key_id!r})"


class FacilitatorAuth(AuthProvider):
    """Per-endpoint bearer tokens for an authenticated facilitator."""

    def __init__(
        self,
        api_key_id: str,
        api_key_secret: str,
        facilitator_url: str,
        expires_in_seconds: int = TOKEN_LIFETIME_SECONDS,
    ):
        if not api_key_id:
            raise ValueError("Facilitator API key ID is required")
        if not api_key_secret:
            raise ValueError("Facilitator API key secret is required")
        target = urlparse(facilitator_url)
        if not (target.scheme and target.netloc):
            raise ValueError(f"Invalid facilitator URL: {facilitator_url}")

        self.key_id = api_key_id
        self.host = target.netloc
        self.base_path = target.path.rstrip("/")
        self.lifetime = expires_in_seconds
        self._signing_key, self.algorithm = _parse_private_key(api_key_secret)

    def headers_for(self, method: str, endpoint: str) -> dict[str, str]:
        """Headers for one call, e.g. ``headers_for("POST", "/verify")``."""
        uri = f"{method.upper()} {self.host}{self.base_path}/{endpoint.lstrip('/')}"
        return {
            "Correlation-Context": _correlation_context(),
            "Authorization": f"Bearer {self.token_for(uri)}",
        }

    def token_for(self, uri: str, now: Optional[int] = None) -> str:
        """A JWT that authorizes exactly one ``"<METHOD> <host><path>"``."""
        issued = int(time.time()) if now is None else now
        return jwt.encode(
            {
                "sub": self.key_id,
                "iss": FACILITATOR_ISSUER,
                "aud": FACILITATOR_AUDIENCE,
                "nbf": issued,
                "exp": issued + self.lifetime,
                "uris": [uri],
            },
            self._signing_key,
            algorithm=self.algorithm,
            headers={"kid": self.key_id, "typ": "JWT", "nonce": secrets.token_hex(8)},
        )

    def get_auth_headers(self) -> AuthHeaders:
        return AuthHeaders(
            verify=self.headers_for("POST", "/verify"),
            settle=self.headers_for("POST", "/settle"),
            supported=self.headers_for("GET", "/supported"),
        )


def load_facilitator_credentials(
    *,
    api_key_id: Optional[str] = None,
    api_key_secret: Optional[str] = None,
) -> Optional[FacilitatorCredentials]:
    """Explicit values win over the environment. None when no key pair is configured."""
    key_id = api_key_id or os.getenv(SHROUD_FACILITATOR_KEY_ID_ENV)
    key_secret = api_key_secret or os.getenv(SHROUD_FACILITATOR_KEY_SECRET_ENV)

    if not (key_id or key_secret):
        return None
    if not (key_id and key_secret):
        raise ValueError(
            "Facilitator credentials incomplete. Set both "
            f"{SHROUD_FACILITATOR_KEY_ID_ENV} and {SHROUD_FACILITATOR_KEY_SECRET_ENV}."
        )
    return FacilitatorCredentials(api_key_id=key_id, api_key_secret=key_secret)


def create_facilitator_auth(
    facilitator_url: str,
    *,
    api_key_id: Optional[str] = None,
    api_key_secret: Optional[str] = None,
) -> Optional[FacilitatorAuth]:
    credentials = load_facilitator_credentials(api_key_id=api_key_id, api_key_secret=api_key_secret)
    if credentials is None:
        return None
    return FacilitatorAuth(credentials.api_key_id, credentials.api_key_secret, facilitator_url)


def _parse_private_key(secret: str) -> tuple[SigningKey, str]:
    """PEM EC keys sign ES256; 64-byte base64 Ed25519 seeds+public sign EdDSA."""
    # Unquoted env vars often carry literal '\n' sequences.
    pem = secret.replace("\\n", "\n")
    try:
        loaded = serialization.load_pem_private_key(pem.encode("utf-8"), password=None)
    except (ValueError, TypeError):
        loaded = None
    if isinstance(loaded, ec.EllipticCurvePrivateKey):
        return loaded, "ES256"

    try:
        raw = base64.b64decode(secret, validate=True)
    except (ValueError, binascii.Error):
        raw = b""
    if len(raw) == 64:
        return ed25519.Ed25519PrivateKey.from_private_bytes(raw[:32]), "EdDSA"

    raise ValueError("Facilitator API key secret must be either PEM EC key or base64 Ed25519 key")


def _correlation_context() -> str:
    fields = (("sdk_language", "python"), ("source", "shroud"), ("source_version", __version__))
    return ",".join(f"{name}={quote(value, safe='')}" for name, value in fields)
