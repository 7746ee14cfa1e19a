"""
Morpheus Utils
==============

Helpers used by the memoization cache.

- fingerprint: structural content hash of shapes and contexts
- try_fingerprint: same, returning None for unhashable values
"""

from .fingerprint import UnfingerprintableError, fingerprint, try_fingerprint

__all__ = [
    "fingerprint",
    "try_fingerprint",
    "UnfingerprintableError",
]
