"""
Shroud error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (reject, re-challenge, fall back, etc.).
"""


class ShroudError(Exception):
    """Base error for all Shroud operations."""
    pass


# Protocol errors
class ProtocolError(ShroudError):
    """Base error for the payment challenge protocol."""
    pass


class MalformedHeaderError(ProtocolError):
    """Payment header could not be decoded or is missing required fields."""
    pass


class ChallengeExpiredError(ProtocolError):
    """Challenge expiry has passed; the caller must request a new one."""
    def __init__(self, payment_id: str, expiry: int):
        self.payment_id = payment_id
        self.expiry = expiry
        super().__init__(f"Challenge {payment_id} expired at {expiry}")


class UnknownChallengeError(ProtocolError):
    """Payment header refers to a challenge that was never issued or already used."""
    pass


class UnknownResourceError(ProtocolError):
    """No protected resource is registered for the requested path."""
    pass


# External service errors
class ExternalServiceError(ShroudError):
    """Base error for unreachable or failing external services."""
    pass


class EncryptionError(ExternalServiceError):
    """Encryption provider failed to encrypt, store or operate on a handle."""
    pass


# Ledger errors
class LedgerError(ShroudError):
    """Base error for the encrypted activity ledger."""
    pass


class AttestationError(LedgerError):
    """Signature does not prove ownership of the requested data."""
    pass


class DecryptionError(LedgerError):
    """A single ciphertext handle could not be opened."""
    def __init__(self, handle: str, message: str):
        self.handle = handle
        super().__init__(f"Cannot decrypt {handle[:24]}: {message}")


class DurabilityError(LedgerError):
    """Flushing ledger entries to durable storage failed."""
    pass
