"""
Encrypted activity ledger.

Append-only, per-owner log of activity entries. Every entry carries one
ciphertext handle packing ``(type code, amount, timestamp)``; plaintext
amounts are never stored on an entry or written to disk. Amounts come back
only through attested decryption, gated by a signature proving ownership.

Entries are persisted per owner through a ``LedgerStore``. Writes are
coalesced by a debounced scheduler; a failed flush is logged and retried
on the next mutation.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from eth_utils import is_address

from .encryption import EncryptionProvider
from .errors import AttestationError, DecryptionError, DurabilityError, EncryptionError
from .money import base_units_to_decimal
from .scheduler import DebouncedScheduler, Scheduler
from .storage import atomic_write_json, owner_path, private_dir, private_file

logger = logging.getLogger(__name__)


MAX_ENTRIES_PER_OWNER = 10_000
MAX_DECRYPT_BATCH = 50
DEFAULT_FLUSH_DELAY_SECONDS = 1.0

# Composite layout: [type:8 | amount:64 | timestamp_ms:56]
TYPE_SHIFT = 120
AMOUNT_SHIFT = 56
AMOUNT_BITS = 64
TIMESTAMP_BITS = 56
_TIMESTAMP_MASK = (1 << TIMESTAMP_BITS) - 1
_AMOUNT_MASK = (1 << AMOUNT_BITS) - 1


class ActivityKind(str, Enum):
    AGENT_PAYMENT = "agent_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    AGENT_CREATED = "agent_created"
    AGENT_DELETED = "agent_deleted"
    X402_DONATION = "x402_donation"
    POOL_PAYMENT = "pool_payment"
    POOL_INITIALIZED = "pool_initialized"
    MAXIMUM_PRIVACY_PAYMENT = "maximum_privacy_payment"
    COMPRESS_TOKENS = "compress_tokens"
    SHIELD_TOKENS = "shield_tokens"


TYPE_CODES = {
    ActivityKind.AGENT_PAYMENT: 1,
    ActivityKind.PAYMENT_CONFIRMED: 2,
    ActivityKind.AGENT_CREATED: 3,
    ActivityKind.AGENT_DELETED: 4,
    ActivityKind.X402_DONATION: 5,
    ActivityKind.POOL_PAYMENT: 6,
    ActivityKind.POOL_INITIALIZED: 7,
    ActivityKind.MAXIMUM_PRIVACY_PAYMENT: 8,
    ActivityKind.COMPRESS_TOKENS: 9,
    ActivityKind.SHIELD_TOKENS: 10,
}

# Kinds whose amounts count toward the encrypted spend total
TOTAL_KINDS = frozenset({ActivityKind.AGENT_PAYMENT.value, ActivityKind.X402_DONATION.value})


def encode_composite(type_code: int, amount: int, timestamp_ms: int) -> int:
    """Pack type, amount and timestamp into one uint128.

    The timestamp keeps only its low 56 bits and wraps.
    """
    if not 0 <= type_code < 256:
        raise ValueError(f"Type code out of range: {type_code}")
    if not 0 <= amount <= _AMOUNT_MASK:
        raise ValueError(f"Amount does not fit in {AMOUNT_BITS} bits: {amount}")
    return (type_code << TYPE_SHIFT) | (amount << AMOUNT_SHIFT) | (timestamp_ms & _TIMESTAMP_MASK)


def decode_composite(value: int) -> tuple[int, int, int]:
    """Inverse of ``encode_composite``: ``(type_code, amount, timestamp_ms mod 2**56)``."""
    return (
        value >> TYPE_SHIFT,
        (value >> AMOUNT_SHIFT) & _AMOUNT_MASK,
        value & _TIMESTAMP_MASK,
    )


@dataclass
class Activity:
    """Something that happened for an owner. ``amount`` is base units and is only encrypted."""

    kind: ActivityKind
    amount: int = 0
    resource: Optional[str] = None
    payment_id: Optional[str] = None
    tx_signature: Optional[str] = None
    agent_id: Optional[str] = None
    method: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class LogEntry:
    """A stored ledger entry. Metadata is plaintext-safe; the amount lives only in ``handle``."""

    entry_id: str
    owner: str
    kind: str
    handle: str
    created_at: int
    resource: Optional[str] = None
    payment_id: Optional[str] = None
    tx_signature: Optional[str] = None
    agent_id: Optional[str] = None
    method: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    encrypted: bool = True

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> "LogEntry":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class DecryptedEntry:
    entry_id: str
    kind: str
    created_at: int
    decrypted: bool
    handle: str
    amount: Optional[int] = None
    resource: Optional[str] = None
    payment_id: Optional[str] = None
    tx_signature: Optional[str] = None
    method: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_entry(cls, entry: LogEntry, decrypted: bool, amount: Optional[int] = None) -> "DecryptedEntry":
        return cls(
            entry_id=entry.entry_id,
            kind=entry.kind,
            created_at=entry.created_at,
            decrypted=decrypted,
            handle=entry.handle,
            amount=amount if decrypted else None,
            resource=entry.resource,
            payment_id=entry.payment_id,
            tx_signature=entry.tx_signature,
            method=entry.method,
            details=dict(entry.details),
        )

    def to_dict(self) -> dict:
        d = {k: v for k, v in asdict(self).items() if v is not None}
        if self.amount is not None:
            d["amount_usdc"] = str(base_units_to_decimal(self.amount))
        return d


@dataclass
class DecryptionBatch:
    entries: list[DecryptedEntry]
    proof: str

    @property
    def failed(self) -> int:
        return sum(1 for e in self.entries if not e.decrypted)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "entries": [e.to_dict() for e in self.entries],
            "proof": self.proof,
        }


@dataclass
class EncryptedTotal:
    handle: str
    entry_count: int
    payment_count: int

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "entry_count": self.entry_count,
            "payment_count": self.payment_count,
        }


class LedgerStore(Protocol):
    def load_all(self) -> dict[str, list[dict]]: ...

    def save(self, owner: str, records: list[dict]) -> None: ...


class FileLedgerStore:
    """One JSON file per owner, written atomically under an exclusive lock."""

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        private_dir(self.base_dir)
        self._lock_path = private_file(self.base_dir / ".lock")

    @contextmanager
    def _lock(self):
        with open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _owner_path(self, owner: str) -> Path:
        return owner_path(self.base_dir, owner)

    def load_all(self) -> dict[str, list[dict]]:
        result: dict[str, list[dict]] = {}
        with self._lock():
            for path in sorted(self.base_dir.glob("*.json")):
                try:
                    with open(path, encoding="utf-8") as f:
                        raw = json.load(f)
                except (OSError, ValueError) as e:
                    logger.warning("Skipping unreadable ledger file %s: %s", path.name, e)
                    continue
                owner = raw.get("owner") if isinstance(raw, dict) else None
                if owner:
                    result[owner] = list(raw.get("entries", []))
        return result

    def save(self, owner: str, records: list[dict]) -> None:
        try:
            with self._lock():
                atomic_write_json(self._owner_path(owner), {"owner": owner, "entries": records})
        except (OSError, ValueError) as e:
            raise DurabilityError(f"Failed to persist ledger for {owner[:10]}: {e}") from e


class ActivityLedger:
    """
    Owner-keyed encrypted activity log.

    Reads see an append as soon as ``append`` returns; durability follows
    within the flush window. A crash inside the window may lose the newest
    entries.
    """

    def __init__(
        self,
        encryption: EncryptionProvider,
        store: Optional[LedgerStore] = None,
        scheduler: Optional[Scheduler] = None,
        flush_delay_seconds: float = DEFAULT_FLUSH_DELAY_SECONDS,
        max_entries: int = MAX_ENTRIES_PER_OWNER,
        clock: Callable[[], float] = time.time,
    ):
        self._encryption = encryption
        self._store = store
        self._scheduler = scheduler or DebouncedScheduler()
        self.flush_delay_seconds = flush_delay_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._logs: dict[str, deque[LogEntry]] = {}
        self._dirty: set[str] = set()
        self._load()

    def _load(self) -> None:
        if self._store is None:
            return
        total = 0
        for owner, records in self._store.load_all().items():
            entries: deque[LogEntry] = deque(maxlen=self.max_entries)
            for record in records[: self.max_entries]:
                try:
                    entries.append(LogEntry.from_dict(record))
                except TypeError as e:
                    logger.warning("Dropping malformed ledger record for %s: %s", owner[:10], e)
            self._logs[owner.lower()] = entries
            total += len(entries)
        logger.info("Loaded %d ledger entries for %d owner(s)", total, len(self._logs))

    def append(self, owner: str, activity: Activity) -> LogEntry:
        """Encrypt ``activity`` and prepend it to the owner's log."""
        if not isinstance(owner, str) or not is_address(owner):
            raise ValueError(f"Ledger owner must be an address: {owner!r}")
        kind = ActivityKind(activity.kind)
        created_at = int(self._clock() * 1000)
        entry_id = uuid.uuid4().hex
        composite = encode_composite(TYPE_CODES[kind], activity.amount, created_at)

        encrypted = self._encryption.encrypt(composite, "uint128")
        self._encryption.store(owner, f"activity:{kind.value}:{entry_id}", encrypted.handle)

        entry = LogEntry(
            entry_id=entry_id,
            owner=owner.lower(),
            kind=kind.value,
            handle=encrypted.handle,
            created_at=created_at,
            resource=activity.resource,
            payment_id=activity.payment_id,
            tx_signature=activity.tx_signature,
            agent_id=activity.agent_id,
            method=activity.method,
            details=dict(activity.details),
        )

        key = owner.lower()
        with self._lock:
            log = self._logs.get(key)
            if log is None:
                log = self._logs[key] = deque(maxlen=self.max_entries)
            log.appendleft(entry)
            self._dirty.add(key)

        self._scheduler.schedule(self.flush, self.flush_delay_seconds)
        logger.info("Logged %s for %s", kind.value, key[:10])
        return entry

    def list(self, owner: str) -> list[LogEntry]:
        """Most-recent-first entries with handles only, never amounts."""
        with self._lock:
            return list(self._logs.get(owner.lower(), ()))

    def activity_count(self, owner: str) -> dict[str, int]:
        entries = self.list(owner)
        return {
            "total": len(entries),
            "payments": sum(1 for e in entries if e.kind == ActivityKind.AGENT_PAYMENT.value),
            "confirmations": sum(
                1 for e in entries if e.kind == ActivityKind.PAYMENT_CONFIRMED.value
            ),
        }

    def attested_decrypt(
        self,
        owner: str,
        signature: str,
        entry_id: Optional[str] = None,
    ) -> DecryptionBatch:
        """Decrypt up to 50 of the owner's entries, newest first.

        Raises ``AttestationError`` when ``signature`` does not prove
        ownership. A handle that fails to open yields an entry with
        ``decrypted=False`` and no amount.
        """
        if not self._encryption.verify_attestation(owner, signature):
            logger.warning("Attestation failed for %s", owner[:10])
            raise AttestationError(f"Signature does not prove ownership of {owner}")

        with self._lock:
            log = self._logs.get(owner.lower(), ())
            selected = list(
                islice((e for e in log if entry_id is None or e.entry_id == entry_id), MAX_DECRYPT_BATCH)
            )

        results: list[DecryptedEntry] = []
        for entry in selected:
            try:
                value = self._encryption.attested_decrypt(owner, signature, entry.handle)
            except DecryptionError as e:
                logger.warning("Decryption failed for entry %s: %s", entry.entry_id, e)
                results.append(DecryptedEntry.from_entry(entry, decrypted=False))
                continue
            _, amount, _ = decode_composite(value)
            results.append(DecryptedEntry.from_entry(entry, decrypted=True, amount=amount))

        proof_src = f"{owner.lower()}|{signature}|{self._clock()}"
        proof = f"attest-{hashlib.sha256(proof_src.encode()).hexdigest()[:32]}"
        return DecryptionBatch(entries=results, proof=proof)

    def encrypted_total(self, owner: str) -> EncryptedTotal:
        """Sum payment amounts into one handle without leaving the encryption boundary."""
        entries = self.list(owner)
        total: Optional[str] = None
        payment_count = 0
        for entry in entries:
            if entry.kind not in TOTAL_KINDS:
                continue
            try:
                amount_handle = self._encryption.extract_bits(entry.handle, AMOUNT_SHIFT, AMOUNT_BITS)
            except EncryptionError as e:
                logger.warning("Skipping entry %s in encrypted total: %s", entry.entry_id, e)
                continue
            if total is None:
                total = amount_handle.handle
            else:
                total = self._encryption.add(total, amount_handle.handle).handle
            payment_count += 1

        if total is None:
            total = self._encryption.encrypt(0, "uint128").handle
        return EncryptedTotal(handle=total, entry_count=len(entries), payment_count=payment_count)

    def flush(self) -> bool:
        """Persist every owner touched since the last flush. Returns False on failure."""
        if self._store is None:
            with self._lock:
                self._dirty.clear()
            return True

        with self._flush_lock:
            with self._lock:
                dirty, self._dirty = self._dirty, set()
                snapshot = {o: [e.to_dict() for e in self._logs.get(o, ())] for o in dirty}

            pending = set(snapshot)
            failed = False
            try:
                for owner, records in snapshot.items():
                    try:
                        self._store.save(owner, records)
                    except DurabilityError:
                        logger.exception("Ledger flush failed for %s; will retry", owner[:10])
                        failed = True
                        continue
                    pending.discard(owner)
            finally:
                if pending:
                    with self._lock:
                        self._dirty |= pending

            if failed:
                return False

        if snapshot:
            logger.info("Flushed ledger for %d owner(s)", len(snapshot))
        return True

    @property
    def has_unflushed(self) -> bool:
        with self._lock:
            return bool(self._dirty)

    def close(self) -> None:
        self._scheduler.cancel()
        self.flush()
