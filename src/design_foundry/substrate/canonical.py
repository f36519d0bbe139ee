from __future__ import annotations

import hashlib
import json
import math
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import numpy as np

CHECK_DIGEST_SIZE = 16


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    return sha256_bytes(path.read_bytes())


def blake2b_bytes(data: bytes, *, digest_size: int = CHECK_DIGEST_SIZE) -> str:
    """Independent 128-bit digest used to cross-check SHA-256 cache keys."""
    return hashlib.blake2b(data, digest_size=digest_size).hexdigest()


def canonical_json_dumps(data: Any) -> str:
    """Serialize JSON with sorted keys and stable float formatting (repr-based, 17-digit)."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def to_jsonable(value: Any) -> Any:
    """Convert evaluator output into plain JSON types.

    numpy scalars and arrays become Python scalars and lists, tuples become
    lists and mapping keys become strings. Non-finite floats become None so
    that canonical serialization never fails on a diagnosand that could not
    be estimated.
    """
    if isinstance(value, np.ndarray):
        return [to_jsonable(item) for item in value.tolist()]
    if isinstance(value, np.generic):
        return to_jsonable(value.item())
    if isinstance(value, bool) or value is None or isinstance(value, (int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [to_jsonable(item) for item in value]
    raise TypeError(f"Value of type {type(value).__name__} is not JSON serializable")
