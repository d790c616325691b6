"""I/O helpers — decode payloads, read local CSV files, persist JSON snapshots."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from donation_thermometer.models import DonationSnapshot

logger = logging.getLogger(__name__)

ENCODINGS: tuple[str, ...] = ("utf-8-sig", "utf-8", "latin-1")

# ── Loading ──────────────────────────────────────────────────────


def decode_payload(raw: bytes) -> str:
    """Decode *raw* trying UTF-8 (with and without BOM) before latin-1."""
    last_exc: UnicodeDecodeError | None = None
    for encoding in ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError as exc:
            last_exc = exc
    raise ValueError("Could not decode payload") from last_exc


def load_csv_text(path: Path) -> str:
    """Read a local CSV file and return its text.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ValueError
        If *path* is a directory or the extension is not ``.csv``/``.txt``.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    if path.is_dir():
        raise ValueError(f"Input path is a directory, not a file: {path}")

    suffix = path.suffix.lower()
    if suffix not in (".csv", ".txt"):
        raise ValueError(f"Unsupported file type: {suffix!r}. Use .csv or .txt")
    return decode_payload(path.read_bytes())


# ── Writing ──────────────────────────────────────────────────────


def write_json(path: Path, data: Any) -> Path:
    """Write *data* as sorted, pretty-printed JSON via a temp file and rename."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = json.dumps(
        data,
        indent=2,
        sort_keys=True,
        ensure_ascii=False,
    ) + "\n"
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    tmp_path.replace(path)
    return path


# ── Snapshot cache ───────────────────────────────────────────────


class SnapshotCache:
    """Best-effort local copy of the last accepted snapshot.

    Only used to show something on startup before the first fetch lands;
    the reconciliation gate never reads it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> DonationSnapshot | None:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return DonationSnapshot.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable snapshot cache %s: %s", self.path, exc)
            return None

    def save(self, snapshot: DonationSnapshot) -> Path | None:
        try:
            return write_json(self.path, snapshot.to_dict())
        except OSError as exc:
            logger.warning("Could not write snapshot cache %s: %s", self.path, exc)
            return None
