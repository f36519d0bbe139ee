"""Content-addressed store for completed diagnosis runs.

An entry is written once under its key and never mutated. Lookups fail open:
a missing, unreadable or malformed record is reported as absent so the caller
recomputes. The one exception is a record whose check digest disagrees with
the requested key, which means two different inputs produced the same digest.

Directory structure:
    {root}/
        entries/
            {digest[:2]}/
                {digest}.json     # schema version, key, content hash, entry
        locks/
            {digest}.lock         # per-key cross-process lock

Usage:
    >>> cache = FilesystemDiagnosisCache(Path("diagnosis_cache"))
    >>> entry = cache.lookup(key)
    >>> if entry is None:
    ...     with cache.key_lock(key):
    ...         entry = cache.lookup(key) or compute_and_store(key)
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from jsonschema import Draft202012Validator

from design_foundry.errors import CacheIntegrityError, CacheStoreError
from design_foundry.substrate import KeyLockRegistry, atomic_write_text, canonical_json_dumps, sha256_bytes

from .evaluator import POINT_COLUMN, Row
from .fingerprint import DiagnosisCacheKey

logger = logging.getLogger(__name__)

_CACHE_SCHEMA_VERSION = 1

_ROWS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": [POINT_COLUMN],
        "properties": {POINT_COLUMN: {"type": "integer", "minimum": 0}},
    },
}

_POINT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["index", "parameters", "status"],
    "properties": {
        "index": {"type": "integer", "minimum": 0},
        "parameters": {
            "type": "array",
            "items": {
                "type": "array",
                "prefixItems": [{"type": "string"}, {}],
                "minItems": 2,
                "maxItems": 2,
            },
        },
        "status": {"enum": ["completed", "failed"]},
        "error": {"type": ["string", "null"]},
        "stage": {"enum": [None, "instantiate", "simulate", "diagnose"]},
        "execution_time_sec": {"type": ["number", "null"]},
    },
}

CACHE_RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["schema_version", "key", "content_sha256", "entry"],
    "properties": {
        "schema_version": {"const": _CACHE_SCHEMA_VERSION},
        "key": {
            "type": "object",
            "required": ["digest"],
            "properties": {
                "digest": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
                "check": {"type": "string"},
            },
        },
        "content_sha256": {"type": "string", "pattern": "^[0-9a-f]{64}$"},
        "entry": {
            "type": "object",
            "required": ["key", "simulation_rows", "diagnosands_rows", "points", "created_at"],
            "properties": {
                "simulation_rows": _ROWS_SCHEMA,
                "diagnosands_rows": _ROWS_SCHEMA,
                "points": {"type": "array", "items": _POINT_SCHEMA},
                "created_at": {"type": "string"},
            },
        },
    },
}

_RECORD_VALIDATOR = Draft202012Validator(CACHE_RECORD_SCHEMA)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CacheEntry:
    """One completed diagnosis run.

    Attributes:
        key: Cache key the entry was computed for.
        simulation_rows: Flattened simulation table across all points.
        diagnosands_rows: Flattened diagnosands table across successful points.
        points: Per-point records (index, parameters, status, error, stage).
        created_at: ISO-8601 UTC timestamp of the write.
    """

    key: DiagnosisCacheKey
    simulation_rows: list[Row]
    diagnosands_rows: list[Row]
    points: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "simulation_rows": self.simulation_rows,
            "diagnosands_rows": self.diagnosands_rows,
            "points": self.points,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=DiagnosisCacheKey.from_dict(data["key"]),
            simulation_rows=list(data["simulation_rows"]),
            diagnosands_rows=list(data["diagnosands_rows"]),
            points=list(data.get("points", [])),
            created_at=str(data["created_at"]),
        )


@dataclass(frozen=True)
class CacheStats:
    """Statistics for diagnosis cache usage."""

    hits: int
    misses: int
    entries: int
    total_size_bytes: int

    @property
    def hit_rate(self) -> float:
        """Return cache hit rate as a percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "total_size_bytes": self.total_size_bytes,
            "hit_rate": self.hit_rate,
        }


class DiagnosisStore(Protocol):
    """Persistent mapping from cache key to completed run."""

    def lookup(self, key: DiagnosisCacheKey) -> CacheEntry | None: ...

    def store(self, entry: CacheEntry) -> None: ...

    def key_lock(self, key: DiagnosisCacheKey) -> AbstractContextManager[None]: ...


def check_collision(key: DiagnosisCacheKey, stored: DiagnosisCacheKey) -> None:
    """Raise if a stored entry was written for different inputs than ``key``.

    Raises:
        CacheIntegrityError: If both keys carry check digests and they differ.
    """
    if key.check and stored.check and key.check != stored.check:
        raise CacheIntegrityError(
            f"Cache key collision for {key.short_key}: check digest {key.check} "
            f"does not match stored {stored.check}"
        )


class FilesystemDiagnosisCache:
    """One JSON file per key under ``root``.

    Writes go through a temporary file and an atomic rename, so a reader never
    observes a partial entry.
    """

    def __init__(self, root: Path, *, lock_timeout: float | None = None) -> None:
        self.root = root
        self.lock_timeout = lock_timeout
        self._ensure_structure()
        self._locks = KeyLockRegistry(self.root / "locks")
        self._counter_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def _ensure_structure(self) -> None:
        (self.root / "entries").mkdir(parents=True, exist_ok=True)
        (self.root / "locks").mkdir(parents=True, exist_ok=True)

    def _entry_path(self, digest: str) -> Path:
        return self.root / "entries" / digest[:2] / f"{digest}.json"

    def _count(self, *, hit: bool) -> None:
        with self._counter_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    # -------------------------------------------------------------------------
    # Lookup / store
    # -------------------------------------------------------------------------

    def lookup(self, key: DiagnosisCacheKey) -> CacheEntry | None:
        """Return the stored entry for ``key``, or None.

        Raises:
            CacheIntegrityError: If the stored entry belongs to different inputs.
        """
        path = self._entry_path(key.digest)
        if not path.exists():
            self._count(hit=False)
            logger.debug("Cache miss: %s", key.short_key)
            return None

        entry = self._read_entry(path, key.digest)
        if entry is None:
            self._count(hit=False)
            return None

        check_collision(key, entry.key)
        self._count(hit=True)
        logger.info("Cache hit for diagnosis: %s", key.short_key)
        return entry

    def store(self, entry: CacheEntry) -> None:
        """Persist ``entry`` unless a valid entry already exists for its key.

        Raises:
            CacheStoreError: If the entry cannot be serialized or written.
            CacheIntegrityError: If a valid entry for different inputs exists.
        """
        key = entry.key
        path = self._entry_path(key.digest)

        if path.exists():
            existing = self._read_entry(path, key.digest)
            if existing is not None:
                check_collision(key, existing.key)
                logger.debug("Entry already cached, not overwriting: %s", key.short_key)
                return
            logger.warning("Replacing unreadable cache entry: %s", key.short_key)

        try:
            payload = entry.to_dict()
            record = {
                "schema_version": _CACHE_SCHEMA_VERSION,
                "key": key.to_dict(),
                "content_sha256": _content_hash(payload),
                "entry": payload,
            }
            text = canonical_json_dumps(record)
        except (TypeError, ValueError) as e:
            raise CacheStoreError(f"Cannot serialize cache entry {key.short_key}: {e}") from e

        try:
            atomic_write_text(path, f"{text}\n")
        except OSError as e:
            raise CacheStoreError(f"Failed to write cache entry {key.short_key}: {e}") from e

        logger.info("Cached diagnosis: %s", key.short_key)

    @contextmanager
    def key_lock(self, key: DiagnosisCacheKey) -> Iterator[None]:
        """Hold the cross-process lock for ``key``."""
        with self._locks.lock(key.digest, timeout=self.lock_timeout):
            yield

    def _read_entry(self, path: Path, digest: str) -> CacheEntry | None:
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            logger.warning("Unreadable cache entry %s: %s", path.name, e)
            return None

        problem = _validate_record(record, digest)
        if problem is not None:
            logger.warning("Ignoring cache entry %s: %s", path.name, problem)
            return None

        try:
            return CacheEntry.from_dict(record["entry"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Malformed cache entry %s: %s", path.name, e)
            return None

    # -------------------------------------------------------------------------
    # Cache management
    # -------------------------------------------------------------------------

    def _iter_entry_files(self) -> Iterator[Path]:
        entries_dir = self.root / "entries"
        if not entries_dir.exists():
            return
        for subdir in sorted(entries_dir.iterdir()):
            if not subdir.is_dir():
                continue
            for entry in sorted(subdir.iterdir()):
                if entry.is_file() and entry.suffix == ".json":
                    yield entry

    def stats(self) -> CacheStats:
        """Get cache statistics.

        Returns:
            CacheStats with hit/miss counts for this instance and on-disk totals.
        """
        entries = 0
        total_size = 0
        for path in self._iter_entry_files():
            entries += 1
            total_size += path.stat().st_size
        with self._counter_lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                entries=entries,
                total_size_bytes=total_size,
            )

    def verify_integrity(self) -> dict[str, bool]:
        """Verify every entry on disk.

        Returns:
            Dictionary mapping entry digests to validity status.
        """
        results: dict[str, bool] = {}
        for path in self._iter_entry_files():
            digest = path.stem
            results[digest] = self._read_entry(path, digest) is not None
        return results


class InMemoryDiagnosisCache:
    """In-process store with the same semantics as the filesystem cache.

    Entries are deep-copied on the way in and out so callers can never mutate
    a stored entry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._mutex = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._hits = 0
        self._misses = 0

    def lookup(self, key: DiagnosisCacheKey) -> CacheEntry | None:
        with self._mutex:
            entry = self._entries.get(key.digest)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
        check_collision(key, entry.key)
        return copy.deepcopy(entry)

    def store(self, entry: CacheEntry) -> None:
        with self._mutex:
            existing = self._entries.get(entry.key.digest)
            if existing is None:
                self._entries[entry.key.digest] = copy.deepcopy(entry)
                return
        check_collision(entry.key, existing.key)

    @contextmanager
    def key_lock(self, key: DiagnosisCacheKey) -> Iterator[None]:
        with self._mutex:
            lock = self._key_locks.setdefault(key.digest, threading.Lock())
        with lock:
            yield

    def __len__(self) -> int:
        with self._mutex:
            return len(self._entries)

    def stats(self) -> CacheStats:
        with self._mutex:
            size = sum(len(canonical_json_dumps(entry.to_dict())) for entry in self._entries.values())
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                entries=len(self._entries),
                total_size_bytes=size,
            )


def _content_hash(payload: dict[str, Any]) -> str:
    return sha256_bytes(canonical_json_dumps(payload).encode("utf-8"))


def _validate_record(record: Any, digest: str) -> str | None:
    """Return a description of what is wrong with ``record``, or None."""
    error = next(iter(_RECORD_VALIDATOR.iter_errors(record)), None)
    if error is not None:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        return f"{path}: {error.message}"
    if record["key"]["digest"] != digest:
        return "key does not match file name"
    if record["content_sha256"] != _content_hash(record["entry"]):
        return "content hash mismatch"
    return None
