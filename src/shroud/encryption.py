"""
Encryption boundary for the activity ledger.

The ledger only ever holds opaque handles. Plaintext values exist inside
an ``EncryptionProvider``: ``encrypt`` produces handles, ``add`` and
``extract_bits`` compute on them without returning plaintext, and
``attested_decrypt`` opens a handle only for a signature that proves
ownership.

``LocalEncryptionProvider`` keeps the key on this host (AES-256-GCM);
``RemoteEncryptionClient`` delegates to an external encryption service.
"""

from __future__ import annotations

import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from eth_account.messages import encode_defunct

from .errors import AttestationError, DecryptionError, EncryptionError
from .storage import private_dir, private_file

logger = logging.getLogger(__name__)

SHROUD_ENCRYPTION_KEY_ENV = "SHROUD_ENCRYPTION_KEY"
HANDLE_PREFIX = "shroud:v1"

VALUE_BITS = {
    "uint128": 128,
    "uint64": 64,
    "uint32": 32,
    "bool": 1,
}


def attestation_message(owner: str) -> str:
    """Text the owner signs (EIP-191) to unlock their own ciphertexts."""
    return f"Shroud attested decryption for {owner.lower()}"


def verify_owner_signature(owner: str, signature: str, message: str) -> bool:
    try:
        recovered = Account.recover_message(
            encode_defunct(text=message),
            signature=bytes.fromhex(signature.removeprefix("0x")),
        )
    except Exception as e:
        logger.warning("Owner signature check failed: %s", e)
        return False
    return recovered.lower() == owner.lower()


@dataclass(frozen=True)
class EncryptedHandle:
    handle: str
    value_type: str
    created_at: float


@dataclass(frozen=True)
class StoredHandle:
    owner: str
    key: str
    handle: str
    stored_at: float


class EncryptionProvider(Protocol):
    def encrypt(self, value: int, value_type: str = "uint128") -> EncryptedHandle: ...

    def store(self, owner: str, key: str, handle: str) -> StoredHandle: ...

    def verify_attestation(self, owner: str, signature: str) -> bool: ...

    def attested_decrypt(self, owner: str, signature: str, handle: str) -> int: ...

    def add(self, a: str, b: str) -> EncryptedHandle: ...

    def extract_bits(self, handle: str, offset: int, width: int) -> EncryptedHandle: ...


def _check_range(value: int, value_type: str) -> None:
    bits = VALUE_BITS.get(value_type)
    if bits is None:
        raise ValueError(f"Unsupported value type: {value_type}")
    if value < 0 or value >= (1 << bits):
        raise ValueError(f"Value does not fit in {value_type}")


class LocalEncryptionProvider:
    """AES-256-GCM provider whose key never leaves this process."""

    def __init__(self, key_path: Optional[Path] = None, key: Optional[bytes] = None):
        self.key_path = key_path
        self._aead = AESGCM(key or self._load_or_create_key())
        self._lock = threading.Lock()
        self._stored: dict[str, list[StoredHandle]] = {}

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(SHROUD_ENCRYPTION_KEY_ENV)
        if env_key:
            return bytes.fromhex(env_key)
        if self.key_path is None:
            raise ValueError("Provide key_path, key, or SHROUD_ENCRYPTION_KEY")
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return bytes.fromhex(self.key_path.read_text().strip())
        private_dir(self.key_path.parent)
        key = secrets.token_bytes(32)
        private_file(self.key_path).write_text(key.hex())
        logger.info("Generated ledger encryption key at %s", self.key_path)
        return key

    def encrypt(self, value: int, value_type: str = "uint128") -> EncryptedHandle:
        _check_range(value, value_type)
        nonce = os.urandom(12)
        plaintext = value.to_bytes(16, "big")
        ciphertext = self._aead.encrypt(nonce, plaintext, value_type.encode())
        handle = f"{HANDLE_PREFIX}:{value_type}:{nonce.hex()}:{ciphertext.hex()}"
        return EncryptedHandle(handle=handle, value_type=value_type, created_at=time.time())

    def _open(self, handle: str) -> tuple[str, int]:
        parts = handle.split(":")
        if len(parts) != 5 or ":".join(parts[:2]) != HANDLE_PREFIX:
            raise DecryptionError(handle, "unrecognized handle format")
        value_type, nonce_hex, ct_hex = parts[2], parts[3], parts[4]
        try:
            plaintext = self._aead.decrypt(
                bytes.fromhex(nonce_hex), bytes.fromhex(ct_hex), value_type.encode()
            )
        except (InvalidTag, ValueError) as e:
            raise DecryptionError(handle, type(e).__name__) from e
        return value_type, int.from_bytes(plaintext, "big")

    def store(self, owner: str, key: str, handle: str) -> StoredHandle:
        entry = StoredHandle(owner=owner.lower(), key=key, handle=handle, stored_at=time.time())
        with self._lock:
            self._stored.setdefault(entry.owner, []).append(entry)
        return entry

    def stored_handles(self, owner: str) -> list[StoredHandle]:
        with self._lock:
            return list(self._stored.get(owner.lower(), []))

    def verify_attestation(self, owner: str, signature: str) -> bool:
        return verify_owner_signature(owner, signature, attestation_message(owner))

    def attested_decrypt(self, owner: str, signature: str, handle: str) -> int:
        if not self.verify_attestation(owner, signature):
            raise AttestationError(f"Signature does not prove ownership of {owner}")
        _, value = self._open(handle)
        return value

    def add(self, a: str, b: str) -> EncryptedHandle:
        try:
            _, left = self._open(a)
            _, right = self._open(b)
        except DecryptionError as e:
            raise EncryptionError(f"Cannot add handles: {e}") from e
        total = left + right
        if total >= (1 << 128):
            raise EncryptionError("uint128 overflow in encrypted addition")
        return self.encrypt(total, "uint128")

    def extract_bits(self, handle: str, offset: int, width: int) -> EncryptedHandle:
        try:
            _, value = self._open(handle)
        except DecryptionError as e:
            raise EncryptionError(f"Cannot extract from handle: {e}") from e
        return self.encrypt((value >> offset) & ((1 << width) - 1), "uint128")


class RemoteEncryptionClient:
    """Client for an external encryption service speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_seconds)

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = self._http.post(f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as e:
            raise EncryptionError(f"Encryption service unreachable: {e}") from e
        if response.status_code == 403:
            raise AttestationError(response.text[:200])
        if response.status_code >= 400:
            raise EncryptionError(f"Encryption service returned {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise EncryptionError("Encryption service returned invalid JSON") from e

    def _handle(self, payload: dict, value_type: str) -> EncryptedHandle:
        handle = payload.get("handle")
        if not handle:
            raise EncryptionError("Encryption service response missing handle")
        return EncryptedHandle(handle=handle, value_type=value_type, created_at=time.time())

    def encrypt(self, value: int, value_type: str = "uint128") -> EncryptedHandle:
        _check_range(value, value_type)
        return self._handle(self._post("/encrypt", {"value": str(value), "type": value_type}), value_type)

    def store(self, owner: str, key: str, handle: str) -> StoredHandle:
        self._post("/store", {"owner": owner, "key": key, "handle": handle})
        return StoredHandle(owner=owner.lower(), key=key, handle=handle, stored_at=time.time())

    def verify_attestation(self, owner: str, signature: str) -> bool:
        try:
            result = self._post("/attest", {"owner": owner, "signature": signature})
        except (AttestationError, EncryptionError) as e:
            logger.warning("Attestation check failed: %s", e)
            return False
        return bool(result.get("valid"))

    def attested_decrypt(self, owner: str, signature: str, handle: str) -> int:
        try:
            result = self._post(
                "/decrypt", {"owner": owner, "signature": signature, "handles": [handle]}
            )
        except EncryptionError as e:
            raise DecryptionError(handle, str(e)) from e
        plaintexts = result.get("plaintexts") or []
        if not plaintexts:
            raise DecryptionError(handle, "no plaintext returned")
        try:
            return int(plaintexts[0])
        except (TypeError, ValueError) as e:
            raise DecryptionError(handle, "non-integer plaintext") from e

    def add(self, a: str, b: str) -> EncryptedHandle:
        return self._handle(self._post("/add", {"a": a, "b": b}), "uint128")

    def extract_bits(self, handle: str, offset: int, width: int) -> EncryptedHandle:
        payload = {"handle": handle, "offset": offset, "width": width}
        return self._handle(self._post("/extract", payload), "uint128")

    def close(self):
        self._http.close()
