"""Cache key generation for diagnosis runs.

A key identifies one evaluation: the designer's defining logic, the expanded
design points and the simulation configuration. Any change to any of the
three produces a different key.

Policy: the key is order-sensitive on points. Points are serialized in
expansion order (which is deterministic for identical input), each point as a
name-sorted list of [name, value] pairs. Changing this policy, or anything
else about the payload layout, must bump FINGERPRINT_SCHEME_VERSION since it
invalidates every existing entry.

The digest is SHA-256 over length-framed segments, so the boundary between
designer source and payload can never be ambiguous. A second, independent
BLAKE2b digest over the same bytes travels with the key and is stored with
the entry; a stored entry whose check digest disagrees with the requested
key's check digest indicates a key collision.
"""

from __future__ import annotations

import inspect
import string
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from design_foundry.params.expand import DesignSpacePoint
from design_foundry.substrate import blake2b_bytes, canonical_json_dumps, sha256_bytes

from .spec import SimulationConfig

FINGERPRINT_SCHEME_VERSION = 1

_FRAME_HEADER_BYTES = 8


@dataclass(frozen=True)
class DiagnosisCacheKey:
    """Content address of a diagnosis run.

    Equality and hashing use ``digest`` only; ``check`` is the independent
    BLAKE2b digest used for the collision check.
    """

    digest: str
    check: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not _is_hex_digest(self.digest, length=64):
            raise ValueError("digest must be a 64-character hex string")
        if self.check and not _is_hex_digest(self.check, length=32):
            raise ValueError("check must be a 32-character hex string")

    @property
    def short_key(self) -> str:
        """Return a shortened key for display."""
        return self.digest[:12]

    def to_dict(self) -> dict[str, str]:
        return {"digest": self.digest, "check": self.check}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> DiagnosisCacheKey:
        return cls(digest=data["digest"], check=data.get("check", ""))


def fingerprint_payload(points: Sequence[DesignSpacePoint], config: SimulationConfig) -> dict[str, Any]:
    """Canonical payload hashed alongside the designer source."""
    return {
        "scheme_version": FINGERPRINT_SCHEME_VERSION,
        "points": [point.canonical_pairs() for point in points],
        "simulation": config.to_canonical(),
    }


def fingerprint(
    designer_source: bytes,
    points: Sequence[DesignSpacePoint],
    config: SimulationConfig,
) -> DiagnosisCacheKey:
    """Compute the cache key for evaluating ``points`` with a designer.

    Args:
        designer_source: Bytes representing the designer's defining logic.
        points: Design points in expansion order.
        config: Simulation configuration.

    Returns:
        DiagnosisCacheKey with SHA-256 digest and BLAKE2b check digest.
    """
    payload = canonical_json_dumps(fingerprint_payload(points, config)).encode("utf-8")
    framed = _frame(designer_source) + _frame(payload)
    return DiagnosisCacheKey(digest=sha256_bytes(framed), check=blake2b_bytes(framed))


def designer_source_bytes(designer: Any) -> bytes:
    """Derive a stable byte representation of a designer's logic.

    Classes, functions and modules contribute their qualified name and Python
    source. Instances contribute the source of their class plus ``repr`` of
    the instance, so configuration held on the instance is part of the
    identity. Objects without retrievable source fall back to ``repr``.
    """
    is_instance = not (inspect.isclass(designer) or inspect.isroutine(designer) or inspect.ismodule(designer))
    target = type(designer) if is_instance else designer

    module = getattr(target, "__module__", None) or getattr(target, "__name__", "")
    qualname = getattr(target, "__qualname__", None) or getattr(target, "__name__", repr(target))
    try:
        source = inspect.getsource(target)
    except (OSError, TypeError):
        source = repr(target)

    representation = {
        "name": f"{module}.{qualname}" if module != qualname else qualname,
        "source": source,
        "state": _instance_state(designer) if is_instance else None,
    }
    return canonical_json_dumps(representation).encode("utf-8")


def _instance_state(designer: Any) -> str:
    # Default object repr embeds a memory address, which differs per process
    if type(designer).__repr__ is not object.__repr__:
        return repr(designer)
    attributes = getattr(designer, "__dict__", {})
    return repr(sorted((name, repr(value)) for name, value in attributes.items()))


def _frame(data: bytes) -> bytes:
    return len(data).to_bytes(_FRAME_HEADER_BYTES, "big") + data


def _is_hex_digest(value: object, *, length: int) -> bool:
    if not isinstance(value, str) or len(value) != length:
        return False
    return all(ch in string.hexdigits for ch in value)
