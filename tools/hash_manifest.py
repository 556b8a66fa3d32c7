"""Per-directory digest manifests.

Every tracked directory carries a small text file (``.hashes`` by default)
with one line per file::

    <name>|<ISO-8601 instant>|<size>|<algorithm>|<base64 digest>

The instant is written in UTC with up to nine fractional digits so that a
modification time read back from disk compares exactly with the value
``os.stat`` reports in nanoseconds.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, Tuple

logger = logging.getLogger(__name__)

DELIMITER = "|"
DEFAULT_MANIFEST_NAME = ".hashes"

_FIELD_COUNT = 5
_NANOS_PER_SECOND = 1_000_000_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_INSTANT_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?Z$")


class ManifestFormatError(ValueError):
    """A manifest line (or a record about to become one) is malformed."""


class ManifestWriteError(OSError):
    def __init__(self, path: Path, cause: Exception):
        super().__init__(f"Cannot write manifest {path}: {cause}")
        self.path = path
        self.cause = cause


def format_instant(modified_ns: int) -> str:
    seconds, fraction = divmod(modified_ns, _NANOS_PER_SECOND)
    stamp = _EPOCH + timedelta(seconds=seconds)
    text = (
        f"{stamp.year:04d}-{stamp.month:02d}-{stamp.day:02d}"
        f"T{stamp.hour:02d}:{stamp.minute:02d}:{stamp.second:02d}"
    )
    if fraction:
        text += "." + f"{fraction:09d}".rstrip("0")
    return text + "Z"


def parse_instant(text: str) -> int:
    match = _INSTANT_RE.match(text)
    if not match:
        raise ManifestFormatError(f"Invalid timestamp: {text!r}")
    try:
        stamp = datetime.strptime(match.group(1), "%Y-%m-%dT%H:%M:%S")
    except ValueError as exc:
        raise ManifestFormatError(f"Invalid timestamp: {text!r}") from exc
    seconds = (stamp.replace(tzinfo=timezone.utc) - _EPOCH) // timedelta(seconds=1)
    fraction = int((match.group(2) or "0").ljust(9, "0"))
    return seconds * _NANOS_PER_SECOND + fraction


def is_representable(name: str) -> bool:
    """Return True if ``name`` can be stored in a manifest line unchanged.

    Names that ``os.scandir`` decoded with surrogate escapes (bytes that are
    not valid UTF-8) cannot be written to the UTF-8 manifest.
    """
    if not name or DELIMITER in name or "\n" in name or "\r" in name:
        return False
    try:
        name.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def temporary_path(manifest_path: Path) -> Path:
    return manifest_path.with_name(manifest_path.name + ".tmp")


@dataclass
class DigestRecord:
    """One manifest line plus the reconciliation flags of the current walk.

    Equality only looks at the persisted fields; ``changed`` and
    ``still_exists`` describe the walk in progress and are never written.
    """

    name: str
    modified: int
    size: int
    algorithm: str
    digest: bytes
    changed: bool = field(default=True, compare=False)
    still_exists: bool = field(default=True, compare=False)

    @classmethod
    def create(cls, name: str, modified: int, size: int, algorithm: str, digest: bytes) -> "DigestRecord":
        return cls(name, modified, size, algorithm, digest, changed=True, still_exists=True)

    def __lt__(self, other: "DigestRecord") -> bool:
        if not isinstance(other, DigestRecord):
            return NotImplemented
        return self.name < other.name

    @property
    def timestamp(self) -> str:
        return format_instant(self.modified)

    def confirm(self) -> None:
        self.still_exists = True

    def update(self, modified: int, size: int, algorithm: str, digest: bytes) -> bool:
        """Overwrite the persisted fields; return True if any of them differed."""
        differs = (
            self.modified != modified
            or self.size != size
            or self.algorithm != algorithm
            or self.digest != digest
        )
        self.modified = modified
        self.size = size
        self.algorithm = algorithm
        self.digest = digest
        self.still_exists = True
        if differs:
            self.changed = True
        return differs

    def to_line(self) -> str:
        return format_record(self)


def format_record(record: DigestRecord) -> str:
    if not is_representable(record.name):
        raise ManifestFormatError(f"File name cannot be stored in a manifest: {record.name!r}")
    if not is_representable(record.algorithm):
        raise ManifestFormatError(f"Algorithm cannot be stored in a manifest: {record.algorithm!r}")
    return DELIMITER.join(
        (
            record.name,
            format_instant(record.modified),
            str(record.size),
            record.algorithm,
            base64.b64encode(record.digest).decode("ascii"),
        )
    )


def parse_record(line: str) -> DigestRecord:
    """Parse one manifest line. Parsed records start unconfirmed and unchanged."""
    parts = line.split(DELIMITER)
    if len(parts) != _FIELD_COUNT:
        raise ManifestFormatError(f"Incorrect hash entry format: {line}")
    name, instant, size_text, algorithm, encoded = parts
    if not name or not algorithm:
        raise ManifestFormatError(f"Incorrect hash entry format: {line}")
    modified = parse_instant(instant)
    if not (size_text.isascii() and size_text.isdigit()):
        raise ManifestFormatError(f"Invalid size {size_text!r} in: {line}")
    try:
        digest = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ManifestFormatError(f"Invalid digest encoding in: {line}") from exc
    if not digest:
        raise ManifestFormatError(f"Empty digest in: {line}")
    return DigestRecord(name, modified, int(size_text), algorithm, digest, changed=False, still_exists=False)


def load_manifest(path: Path) -> Tuple[Dict[str, DigestRecord], int]:
    """Read a manifest into ``{name: record}`` and count the malformed lines.

    A missing file is an untracked directory, not an error.
    """
    records: Dict[str, DigestRecord] = {}
    errors = 0
    try:
        handle = path.open("r", encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return records, 0
    with handle:
        for number, raw in enumerate(handle, start=1):
            line = raw.rstrip("\r\n")
            if not line.strip():
                continue
            try:
                record = parse_record(line)
            except ManifestFormatError as exc:
                logger.warning("%s:%d: %s", path, number, exc)
                errors += 1
                continue
            records[record.name] = record
    return records, errors


def manifest_needs_rewrite(records: Iterable[DigestRecord], write_empty: bool = True) -> bool:
    """Decide whether a directory's manifest must be written at directory exit.

    Any created, updated or vanished record forces a rewrite. With
    ``write_empty`` an empty record set is written too, which marks an empty
    directory as visited.
    """
    empty = True
    for record in records:
        empty = False
        if record.changed or not record.still_exists:
            return True
    return empty and write_empty


def store_manifest(path: Path, records: Iterable[DigestRecord]) -> int:
    """Write the still-existing records sorted by name; return the line count.

    The content goes to a sibling temporary file first and replaces the
    manifest in one step, so a failed write never leaves a half-written
    manifest in place.
    """
    lines = [format_record(record) for record in sorted(records) if record.still_exists]
    temp = temporary_path(path)
    try:
        with temp.open("w", encoding="utf-8", newline="\n") as handle:
            for line in lines:
                handle.write(line + "\n")
        os.replace(temp, path)
    except (OSError, ValueError) as exc:
        try:
            temp.unlink()
        except OSError:
            pass
        raise ManifestWriteError(path, exc) from exc
    return len(lines)


__all__ = [
    "DEFAULT_MANIFEST_NAME",
    "DELIMITER",
    "DigestRecord",
    "ManifestFormatError",
    "ManifestWriteError",
    "format_instant",
    "format_record",
    "is_representable",
    "load_manifest",
    "manifest_needs_rewrite",
    "parse_instant",
    "parse_record",
    "store_manifest",
    "temporary_path",
]
