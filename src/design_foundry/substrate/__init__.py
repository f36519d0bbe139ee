"""Substrate utilities: canonical hashing, atomic writes and file locks."""

from .atomic_io import atomic_write_bytes, atomic_write_text
from .canonical import (
    CHECK_DIGEST_SIZE,
    blake2b_bytes,
    canonical_json_dumps,
    sha256_bytes,
    sha256_file,
    to_jsonable,
)
from .locking import (
    FileLock,
    KeyLockRegistry,
    LockAcquisitionError,
    LockError,
    LockNotHeldError,
)

__all__ = [
    "CHECK_DIGEST_SIZE",
    "FileLock",
    "KeyLockRegistry",
    "LockAcquisitionError",
    "LockError",
    "LockNotHeldError",
    "atomic_write_bytes",
    "atomic_write_text",
    "blake2b_bytes",
    "canonical_json_dumps",
    "sha256_bytes",
    "sha256_file",
    "to_jsonable",
]
