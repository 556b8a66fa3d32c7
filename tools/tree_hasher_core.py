from __future__ import annotations

import hashlib
import logging
import os
import stat
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Set, Tuple

from .hash_manifest import (
    DEFAULT_MANIFEST_NAME,
    DigestRecord,
    format_instant,
    is_representable,
    load_manifest,
    manifest_needs_rewrite,
    store_manifest,
    temporary_path,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_MIB = 1024 * 1024

DEFAULT_ALGORITHM = "MD5"

HashFactory = Callable[[], Any]
EventCallback = Callable[["ScanEvent"], None]


class ConfigurationError(ValueError):
    """The run configuration cannot be executed."""


class AlgorithmUnavailableError(LookupError):
    def __init__(self, algorithm: str):
        super().__init__(f"Hashing algorithm {algorithm} is not available")
        self.algorithm = algorithm


# ------------------------------------------------------------- algorithms --
def _candidate_names(identifier: str) -> List[str]:
    lowered = identifier.strip().lower()
    names: List[str] = []
    for name in (
        identifier,
        lowered,
        lowered.replace("-", ""),
        lowered.replace("-", "_"),
        lowered.replace("-", "").replace("/", "_"),
    ):
        if name and name not in names:
            names.append(name)
    return names


def resolve_algorithm(identifier: str) -> Optional[HashFactory]:
    """Map ``MD5``, ``SHA-256``, ``sha3_512``... to a :mod:`hashlib` constructor.

    Identifiers written by other tools use JCA spellings, so both those and
    the :mod:`hashlib` names resolve. Variable-length digests (SHAKE) are not
    usable for manifests and count as unavailable.
    """
    for name in _candidate_names(identifier):
        try:
            probe = hashlib.new(name)
            probe.digest()
        except (ValueError, TypeError):
            continue
        if not probe.digest_size:
            continue
        return partial(hashlib.new, name)
    return None


class DigestComputer:
    """Streams files through hash algorithms and counts what it hashed.

    The configured algorithm is validated up front. Any other algorithm named
    by a manifest record is looked up on first use and the outcome, including
    "unavailable", is remembered for the rest of the run.
    """

    def __init__(self, algorithm: str, chunk_size: int = _CHUNK_SIZE) -> None:
        factory = resolve_algorithm(algorithm)
        if factory is None:
            raise AlgorithmUnavailableError(algorithm)
        self.algorithm = algorithm
        self._default = factory
        self._others: Dict[str, Optional[HashFactory]] = {}
        self._chunk_size = chunk_size
        self.bytes_hashed = 0
        self.files_hashed = 0

    def factory_for(self, algorithm: str) -> Optional[HashFactory]:
        if algorithm == self.algorithm:
            return self._default
        if algorithm not in self._others:
            factory = resolve_algorithm(algorithm)
            if factory is None:
                logger.warning("Algorithm %s is not available.", algorithm)
            self._others[algorithm] = factory
        return self._others[algorithm]

    def is_available(self, algorithm: str) -> bool:
        return self.factory_for(algorithm) is not None

    def compute(self, path: Path, algorithm: str, size: int) -> Optional[bytes]:
        factory = self.factory_for(algorithm)
        if factory is None:
            return None
        hasher = factory()
        with open(path, "rb") as handle:
            while True:
                chunk = handle.read(self._chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
        self.bytes_hashed += size
        self.files_hashed += 1
        return hasher.digest()


# -------------------------------------------------------------- statistics --
@dataclass(frozen=True)
class Stats:
    runtime: timedelta = timedelta(0)
    bytes_hashed: int = 0
    files_hashed: int = 0
    verification_errors: int = 0
    other_errors: int = 0

    EMPTY: ClassVar["Stats"]

    def __add__(self, other: "Stats") -> "Stats":
        if not isinstance(other, Stats):
            return NotImplemented
        return Stats(
            runtime=self.runtime + other.runtime,
            bytes_hashed=self.bytes_hashed + other.bytes_hashed,
            files_hashed=self.files_hashed + other.files_hashed,
            verification_errors=self.verification_errors + other.verification_errors,
            other_errors=self.other_errors + other.other_errors,
        )

    add = __add__

    @property
    def rate(self) -> float:
        """Bytes hashed per second of runtime."""
        seconds = self.runtime.total_seconds()
        return self.bytes_hashed / seconds if seconds > 0 else 0.0

    @property
    def has_errors(self) -> bool:
        return bool(self.verification_errors or self.other_errors)

    def render(self) -> str:
        rows = [
            ("Files hashed:", str(self.files_hashed)),
            ("Verification errors:", str(self.verification_errors)),
            ("Other errors:", str(self.other_errors)),
            ("Size of files (MiB):", f"{self.bytes_hashed / _MIB:.1f}"),
            ("Runtime:", str(self.runtime)),
            ("Rate (MiB/s):", f"{self.rate / _MIB:.1f}"),
        ]
        return "\n".join(f"{label:<21}{value}" for label, value in rows)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "runtime_seconds": self.runtime.total_seconds(),
            "bytes_hashed": self.bytes_hashed,
            "files_hashed": self.files_hashed,
            "verification_errors": self.verification_errors,
            "other_errors": self.other_errors,
            "rate": self.rate,
        }


Stats.EMPTY = Stats()


# ------------------------------------------------------------------ walking --
def walk_tree(
    root: Path,
    on_enter: Callable[[Path], None],
    on_file: Callable[[Path, Path, os.stat_result], None],
    on_exit: Callable[[Path, Optional[OSError]], None],
    on_error: Callable[[Path, OSError], None],
    follow_symlinks: bool = False,
) -> None:
    """Depth-first walk with enter/file/exit callbacks.

    ``on_enter(directory)`` runs before any of the directory's files are
    visited and ``on_exit(directory, error)`` after all of its files and
    subdirectories. ``error`` is set when the directory could not be listed.
    """
    try:
        root_stat = os.stat(root)
    except OSError as exc:
        on_error(root, exc)
        return
    if not stat.S_ISDIR(root_stat.st_mode):
        on_error(root, NotADirectoryError(f"Not a directory: {root}"))
        return
    visited: Set[Tuple[int, int]] = {(root_stat.st_dev, root_stat.st_ino)}
    stack: List[Tuple[Path, bool, Optional[OSError]]] = [(root, False, None)]
    while stack:
        directory, entered, error = stack.pop()
        if entered:
            on_exit(directory, error)
            continue
        on_enter(directory)
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            on_error(directory, exc)
            stack.append((directory, True, exc))
            continue
        stack.append((directory, True, None))
        subdirs: List[Path] = []
        for entry in entries:
            path = Path(entry.path)
            try:
                if entry.is_dir(follow_symlinks=follow_symlinks):
                    if follow_symlinks:
                        dir_stat = entry.stat(follow_symlinks=True)
                        key = (dir_stat.st_dev, dir_stat.st_ino)
                        if key in visited:
                            logger.warning("Skipping already visited directory %s", path)
                            continue
                        visited.add(key)
                    subdirs.append(path)
                    continue
                stat_result = entry.stat(follow_symlinks=follow_symlinks)
            except OSError as exc:
                on_error(path, exc)
                continue
            on_file(directory, path, stat_result)
        for subdir in reversed(subdirs):
            stack.append((subdir, False, None))


# ---------------------------------------------------------- reconciliation --
EVENT_VERIFIED = "VERIFIED"
EVENT_FAILED = "FAILED"
EVENT_MODIFIED = "MODIFIED"
EVENT_UNHASHED = "UNHASHED"
EVENT_ADDED = "ADDED"
EVENT_UPDATED = "UPDATED"
EVENT_MISSING = "MISSING"
EVENT_NO_ALGORITHM = "NO_ALGORITHM"
EVENT_UNREADABLE = "UNREADABLE"
EVENT_SKIPPED = "SKIPPED"


@dataclass
class ScanEvent:
    status: str
    path: Path
    detail: str


@dataclass
class HasherConfig:
    update: bool = False
    verify: bool = False
    algorithm: str = DEFAULT_ALGORITHM
    manifest_name: str = DEFAULT_MANIFEST_NAME
    write_empty_manifests: bool = True
    follow_symlinks: bool = False

    def validate(self) -> None:
        if not (self.update or self.verify):
            raise ConfigurationError("Use --update and/or --verify")
        name = self.manifest_name
        if not name or name in {".", ".."} or "/" in name or os.sep in name:
            raise ConfigurationError(f"Invalid manifest file name: {name!r}")
        if not is_representable(self.algorithm):
            raise ConfigurationError(f"Invalid algorithm name: {self.algorithm!r}")


class TreeScanner:
    """Reconciles one directory tree against its manifests.

    Each directory's records live in ``_manifests`` from the moment the walk
    enters the directory until it leaves it.
    """

    def __init__(
        self,
        config: HasherConfig,
        digests: DigestComputer,
        event_callback: Optional[EventCallback] = None,
    ) -> None:
        self.config = config
        self.digests = digests
        self.event_callback = event_callback
        self.verification_errors = 0
        self.other_errors = 0
        self._manifests: Dict[Path, Dict[str, DigestRecord]] = {}
        self._ignored_names = {
            config.manifest_name,
            temporary_path(Path(config.manifest_name)).name,
        }

    def scan(self, root: Path) -> Stats:
        start = time.perf_counter()
        bytes_before = self.digests.bytes_hashed
        files_before = self.digests.files_hashed
        self.verification_errors = 0
        self.other_errors = 0
        try:
            walk_tree(
                root,
                self._enter_directory,
                self._visit_file,
                self._exit_directory,
                self._visit_failed,
                follow_symlinks=self.config.follow_symlinks,
            )
        finally:
            self._manifests.clear()
        return Stats(
            runtime=timedelta(seconds=time.perf_counter() - start),
            bytes_hashed=self.digests.bytes_hashed - bytes_before,
            files_hashed=self.digests.files_hashed - files_before,
            verification_errors=self.verification_errors,
            other_errors=self.other_errors,
        )

    def _emit(self, status: str, path: Path, detail: str) -> None:
        if self.event_callback:
            self.event_callback(ScanEvent(status, path, detail))

    # -- directory enter / exit
    def _enter_directory(self, directory: Path) -> None:
        manifest_path = directory / self.config.manifest_name
        if manifest_path.is_file():
            records, errors = load_manifest(manifest_path)
            self.other_errors += errors
        else:
            records = {}
            if self.config.verify:
                logger.info("Unhashed directory: %s", directory)
        self._manifests[directory] = records

    def _exit_directory(self, directory: Path, error: Optional[OSError]) -> None:
        records = self._manifests.pop(directory, {})
        if error is not None:
            return
        for name in sorted(records):
            if not records[name].still_exists:
                path = directory / name
                logger.info("Missing file: %s", path)
                self._emit(EVENT_MISSING, path, "Recorded in manifest but not found")
        if not self.config.update:
            return
        if manifest_needs_rewrite(records.values(), self.config.write_empty_manifests):
            manifest_path = directory / self.config.manifest_name
            count = store_manifest(manifest_path, records.values())
            logger.debug("Wrote %d record(s) to %s", count, manifest_path)

    # -- files
    def _visit_failed(self, path: Path, exc: OSError) -> None:
        logger.warning("Could not read %s: %s", path, exc)
        self._emit(EVENT_UNREADABLE, path, str(exc))

    def _visit_file(self, directory: Path, path: Path, stat_result: os.stat_result) -> None:
        name = path.name
        if not stat.S_ISREG(stat_result.st_mode) or name in self._ignored_names:
            return
        if not is_representable(name):
            logger.warning("Cannot record %s: the name does not fit a manifest line", path)
            self.other_errors += 1
            self._emit(EVENT_SKIPPED, path, "File name cannot be stored in a manifest")
            return
        records = self._manifests[directory]
        record = records.get(name)
        if record is not None:
            record.confirm()
        try:
            verified = self.config.verify and self._verify(path, stat_result, record)
            if self.config.update:
                records[name] = self._update(path, stat_result, record, verified)
        except OSError as exc:
            logger.warning("Could not hash %s: %s", path, exc)
            self._emit(EVENT_UNREADABLE, path, str(exc))

    def _verify(self, path: Path, stat_result: os.stat_result, record: Optional[DigestRecord]) -> bool:
        if record is None:
            logger.info("Unhashed file: %s", path)
            self._emit(EVENT_UNHASHED, path, "No recorded digest")
            return False
        modified = stat_result.st_mtime_ns
        size = stat_result.st_size
        if modified != record.modified or size != record.size:
            logger.info("Modified file (%s): %s", format_instant(modified), path)
            self._emit(EVENT_MODIFIED, path, f"Recorded {record.timestamp}, {record.size} bytes")
            return False
        digest = self.digests.compute(path, record.algorithm, size)
        if digest is None:
            logger.warning("No verification algorithm for %s", path)
            self.other_errors += 1
            self._emit(EVENT_NO_ALGORITHM, path, f"Algorithm {record.algorithm} is not available")
            return False
        if digest != record.digest:
            logger.error("Verification failed for %s", path)
            self.verification_errors += 1
            self._emit(EVENT_FAILED, path, f"{record.algorithm} digest does not match")
            return False
        logger.debug("Verified: %s", path)
        self._emit(EVENT_VERIFIED, path, f"{record.algorithm} digest matches")
        return True

    def _update(
        self,
        path: Path,
        stat_result: os.stat_result,
        record: Optional[DigestRecord],
        verified: bool,
    ) -> DigestRecord:
        if record is not None and verified:
            return record
        modified = stat_result.st_mtime_ns
        size = stat_result.st_size
        algorithm = self.config.algorithm
        digest = self.digests.compute(path, algorithm, size)
        if digest is None:
            raise AlgorithmUnavailableError(algorithm)
        logger.debug("Hashed: %s", path)
        if record is None:
            self._emit(EVENT_ADDED, path, f"{algorithm}, {size} bytes")
            return DigestRecord.create(path.name, modified, size, algorithm, digest)
        if record.update(modified, size, algorithm, digest):
            self._emit(EVENT_UPDATED, path, f"{algorithm}, {size} bytes")
        return record


# ------------------------------------------------------------- coordinator --
class TreeHasher:
    """Runs one reconciliation pass per root and totals the statistics."""

    def __init__(self, config: HasherConfig, event_callback: Optional[EventCallback] = None) -> None:
        config.validate()
        self.config = config
        self.event_callback = event_callback
        self.digests = DigestComputer(config.algorithm)

    @property
    def operation_name(self) -> str:
        if self.config.update and not self.config.verify:
            return "Updating"
        if self.config.verify and not self.config.update:
            return "Verifying"
        return "Updating and verifying"

    def scan(self, root: Path) -> Stats:
        scanner = TreeScanner(self.config, self.digests, self.event_callback)
        return scanner.scan(Path(root))

    def run(self, roots: Sequence[Path]) -> Stats:
        total = Stats.EMPTY
        for root in roots:
            logger.info("%s %s...", self.operation_name, root)
            total = total + self.scan(Path(root))
        return total


def check_roots(roots: Sequence[Path]) -> Optional[str]:
    """Return a description of the first unusable root, or None."""
    for root in roots:
        path = Path(root)
        if not path.exists():
            return f"Directory {path} does not exist!"
        if not path.is_dir():
            return f"{path} is not a directory!"
    return None


__all__ = [
    "AlgorithmUnavailableError",
    "ConfigurationError",
    "DEFAULT_ALGORITHM",
    "DigestComputer",
    "HasherConfig",
    "ScanEvent",
    "Stats",
    "TreeHasher",
    "TreeScanner",
    "check_roots",
    "resolve_algorithm",
    "walk_tree",
]
