"""
Structural Fingerprints
=======================

Content-based hashing for shapes and contexts, used to build memoization keys.

Two values get the same fingerprint when they are structurally equal:
- dicts compare by content regardless of insertion order
- sets and frozensets compare by members
- lists and tuples compare element by element (a list never matches a tuple)
- dataclasses compare by class and field values
- NumPy arrays compare by dtype, shape and raw bytes

Anything else is pickled. Values that can be neither walked nor pickled
(lambdas, open files, self-referencing or extremely deep containers...) raise
UnfingerprintableError, and the caller decides what to do with them.
"""

import dataclasses
import hashlib
import pickle
from enum import Enum
from typing import Any, Mapping, Set

import numpy as np

_DIGEST_SIZE = 16


class UnfingerprintableError(TypeError):
    """Raised when a value has no stable structural fingerprint."""

    pass


def fingerprint(value: Any) -> str:
    """
    Compute a structural fingerprint (hex digest) for ``value``.

    Raises:
        UnfingerprintableError: If ``value`` cannot be hashed structurally,
            including values nested deeper than the interpreter can walk
    """
    try:
        return _digest(value, set()).hex()
    except RecursionError:
        raise UnfingerprintableError(
            f"Cannot fingerprint {type(value).__name__}: nested too deeply"
        ) from None


def try_fingerprint(value: Any):
    """Like fingerprint(), but returns None instead of raising."""
    try:
        return fingerprint(value)
    except UnfingerprintableError:
        return None


def _hasher():
    return hashlib.blake2b(digest_size=_DIGEST_SIZE)


def _tagged(tag: str, payload: bytes) -> bytes:
    h = _hasher()
    h.update(tag.encode())
    h.update(b"\x00")
    h.update(payload)
    return h.digest()


def _digest(value: Any, active: Set[int]) -> bytes:
    # Scalars first: most shapes are trees of these
    if value is None:
        return _tagged("none", b"")
    if isinstance(value, bool):
        return _tagged("bool", b"1" if value else b"0")
    if isinstance(value, Enum):
        return _tagged(
            "enum", f"{type(value).__module__}.{type(value).__qualname__}.{value.name}".encode()
        )
    if isinstance(value, int):
        return _tagged("int", str(value).encode())
    if isinstance(value, float):
        return _tagged("float", value.hex().encode())
    if isinstance(value, complex):
        return _tagged("complex", f"{value.real.hex()}:{value.imag.hex()}".encode())
    if isinstance(value, str):
        return _tagged("str", value.encode("utf-8", "surrogatepass"))
    if isinstance(value, (bytes, bytearray)):
        return _tagged(type(value).__name__, bytes(value))

    if isinstance(value, np.ndarray):
        if value.dtype.hasobject:
            return _container(f"ndarray-object{value.shape}", value.ravel().tolist(), active, value)
        header = f"{value.dtype.str}|{value.shape}".encode()
        return _tagged("ndarray", header + b"|" + np.ascontiguousarray(value).tobytes())
    if isinstance(value, np.generic):
        return _digest(value.item(), active)

    if isinstance(value, Mapping):
        return _mapping("dict", value, active, value)
    if isinstance(value, (list, tuple)):
        return _container(type(value).__name__, value, active, value)
    if isinstance(value, (set, frozenset)):
        return _unordered(type(value).__name__, value, active, value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        tag = f"dataclass:{type(value).__module__}.{type(value).__qualname__}"
        return _mapping(tag, fields, active, value)

    return _pickled(value)


def _enter(owner: Any, active: Set[int]) -> int:
    marker = id(owner)
    if marker in active:
        raise UnfingerprintableError(
            f"Cannot fingerprint self-referencing {type(owner).__name__}"
        )
    active.add(marker)
    return marker


def _container(tag: str, items, active: Set[int], owner: Any) -> bytes:
    marker = _enter(owner, active)
    try:
        h = _hasher()
        h.update(tag.encode())
        for item in items:
            h.update(_digest(item, active))
        return h.digest()
    finally:
        active.discard(marker)


def _unordered(tag: str, items, active: Set[int], owner: Any) -> bytes:
    marker = _enter(owner, active)
    try:
        digests = sorted(_digest(item, active) for item in items)
        return _tagged(tag, b"".join(digests))
    finally:
        active.discard(marker)


def _mapping(tag: str, mapping: Mapping, active: Set[int], owner: Any) -> bytes:
    marker = _enter(owner, active)
    try:
        entries = sorted(
            _digest(key, active) + _digest(item, active)
            for key, item in mapping.items()
        )
        return _tagged(tag, b"".join(entries))
    finally:
        active.discard(marker)


def _pickled(value: Any) -> bytes:
    try:
        payload = pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (TypeError, ValueError, AttributeError, pickle.PicklingError) as e:
        raise UnfingerprintableError(
            f"Cannot fingerprint value of type {type(value).__name__}: {e}"
        ) from e
    return _tagged(f"pickle:{type(value).__qualname__}", payload)
