"""
Engine Settings
===============

Typed entry point for the knobs of the engine. Settings are passed explicitly
to ``create_morph`` and ``create_pipeline``; there is no global mutable
configuration.
"""

import os
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from .errors import ConfigurationError

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineSettings:
    """
    Configuration for pipeline building and memoization.

    Attributes:
        fusion_enabled: Run the fusion optimizer in ``build()``. Turning it off
            never changes results, only the number of executed stages.
        cache_maxsize: Maximum number of entries held by each morph's cache.
        default_cache_ttl: TTL (seconds) for memoizable morphs that declare none.
            None keeps entries until they are evicted by size.
        timer: Monotonic clock used for cache expiry (injectable for tests).
    """

    fusion_enabled: bool = True
    cache_maxsize: int = 1024
    default_cache_ttl: Optional[float] = None
    timer: Callable[[], float] = field(default=time.monotonic, compare=False)

    def __post_init__(self):
        if not isinstance(self.cache_maxsize, int) or self.cache_maxsize <= 0:
            raise ConfigurationError(
                f"cache_maxsize must be a positive int, got {self.cache_maxsize!r}"
            )
        if self.default_cache_ttl is not None and self.default_cache_ttl <= 0:
            raise ConfigurationError(
                f"default_cache_ttl must be positive, got {self.default_cache_ttl!r}"
            )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from ``MORPHEUS_*`` environment variables.

        Recognized variables:
            MORPHEUS_FUSION: "1"/"0" (or true/false, yes/no, on/off)
            MORPHEUS_CACHE_MAXSIZE: positive integer
            MORPHEUS_CACHE_TTL: default TTL in seconds
        """
        environ = os.environ if environ is None else environ
        kwargs = {}

        fusion = environ.get("MORPHEUS_FUSION")
        if fusion is not None:
            value = fusion.strip().lower()
            if value in _TRUTHY:
                kwargs["fusion_enabled"] = True
            elif value in _FALSY:
                kwargs["fusion_enabled"] = False
            else:
                raise ConfigurationError(f"Invalid MORPHEUS_FUSION value: {fusion!r}")

        maxsize = environ.get("MORPHEUS_CACHE_MAXSIZE")
        if maxsize is not None:
            try:
                kwargs["cache_maxsize"] = int(maxsize)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid MORPHEUS_CACHE_MAXSIZE value: {maxsize!r}"
                ) from None

        ttl = environ.get("MORPHEUS_CACHE_TTL")
        if ttl is not None:
            try:
                kwargs["default_cache_ttl"] = float(ttl)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid MORPHEUS_CACHE_TTL value: {ttl!r}"
                ) from None

        return cls(**kwargs)


DEFAULT_SETTINGS = EngineSettings()
