"""Private on-disk storage for ledger files and key material."""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path


_UNSAFE_CHARS_RE = re.compile(r"[^a-z0-9._-]")


def private_dir(path: Path) -> Path:
    """Create ``path`` if needed and restrict it to the current user."""
    path.mkdir(mode=0o700, parents=True, exist_ok=True)
    os.chmod(path, 0o700)
    return path


def private_file(path: Path) -> Path:
    """Create ``path`` empty if needed and make it owner read/write only."""
    fd = os.open(path, os.O_CREAT | os.O_WRONLY, 0o600)
    os.close(fd)
    os.chmod(path, 0o600)
    return path


def owner_filename(owner: str, suffix: str = ".json") -> str:
    """Owner addresses map to lowercase file names with unsafe characters replaced."""
    stem = _UNSAFE_CHARS_RE.sub("_", owner.strip().lower())
    if stem in {"", ".", ".."}:
        raise ValueError(f"Unusable owner identifier: {owner!r}")
    return stem + suffix


def owner_path(base_dir: Path, owner: str, suffix: str = ".json") -> Path:
    """Path of an owner's file, guaranteed to sit directly under ``base_dir``."""
    base = base_dir.resolve()
    path = (base / owner_filename(owner, suffix)).resolve()
    if path.parent != base:
        raise ValueError(f"Owner file escapes {base}: {owner!r}")
    return path


def atomic_write_json(path: Path, payload: object) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
