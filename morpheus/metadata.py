"""
Morph and Pipeline Metadata
===========================

Declared properties that the optimizer and the memoization cache reason about,
plus the documentation labels attached to built pipelines.

Metadata can be given as an instance, as a mapping or as keyword arguments.
camelCase keys used by form authors (``cacheTTL``, ``inputType``...) are
accepted as aliases of the snake_case field names. Durations are in seconds.

Key classes:
- MorphMetadata: pure / fusible / cost / memoizable / cache_ttl
- ContextProjection: which part of the context is relevant to the cache key
- BuildMetadata: description / category / tags / input and output type labels
- RecordMetadata: BuildMetadata plus the composition of a registered target
"""

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from numbers import Real
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from .errors import ConfigurationError


class ProjectionKind(Enum):
    """Variants of ContextProjection."""

    WHOLE = "whole"
    KEYS = "keys"
    IGNORE = "ignore"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ContextProjection:
    """
    Selects the cache-relevant part of an invocation context.

    Variants:
    - whole(): the entire context is fingerprinted (default, always safe)
    - only("locale", "theme"): only the named keys/attributes
    - ignore(): the context never affects the result
    - custom(selector): ``selector(context) -> Any``, the return value is fingerprinted

    Example:
        projection = ContextProjection.only("locale")
        projection.project({"locale": "en", "user": "ada"})  # ({"locale": "en"}, ())
    """

    kind: ProjectionKind = ProjectionKind.WHOLE
    names: Tuple[str, ...] = ()
    selector: Optional[Callable[[Any], Any]] = None

    def __post_init__(self):
        if self.kind is ProjectionKind.KEYS:
            if not self.names or not all(isinstance(n, str) for n in self.names):
                raise ConfigurationError(
                    "Key projection needs at least one string key"
                )
        if self.kind is ProjectionKind.CUSTOM and not callable(self.selector):
            raise ConfigurationError("Custom projection needs a callable selector")

    @classmethod
    def whole(cls) -> "ContextProjection":
        return cls(ProjectionKind.WHOLE)

    @classmethod
    def only(cls, *names: str) -> "ContextProjection":
        return cls(ProjectionKind.KEYS, names=tuple(names))

    @classmethod
    def ignore(cls) -> "ContextProjection":
        return cls(ProjectionKind.IGNORE)

    @classmethod
    def custom(cls, selector: Callable[[Any], Any]) -> "ContextProjection":
        return cls(ProjectionKind.CUSTOM, selector=selector)

    def project(self, context: Any) -> Any:
        """Return the part of ``context`` that takes part in the cache key."""
        if self.kind is ProjectionKind.WHOLE:
            return context
        if self.kind is ProjectionKind.IGNORE:
            return None
        if self.kind is ProjectionKind.CUSTOM:
            return self.selector(context)

        # Missing keys are recorded by name so that "absent" != "present as None"
        projected = {}
        missing = []
        for name in self.names:
            if isinstance(context, Mapping):
                if name in context:
                    projected[name] = context[name]
                else:
                    missing.append(name)
            elif hasattr(context, name):
                projected[name] = getattr(context, name)
            else:
                missing.append(name)
        return (projected, tuple(missing))


def _coerce_projection(value: Any) -> ContextProjection:
    if value is None:
        return ContextProjection.whole()
    if isinstance(value, ContextProjection):
        return value
    if isinstance(value, str):
        return ContextProjection.only(value)
    if callable(value):
        return ContextProjection.custom(value)
    if isinstance(value, Iterable):
        return ContextProjection.only(*value)
    raise ConfigurationError(f"Cannot use {value!r} as a context projection")


@dataclass(frozen=True)
class MorphMetadata:
    """
    Declared optimization properties of a morph.

    Attributes:
        pure: Output depends only on input and relevant context, no side effects
        fusible: May be merged with adjacent fusible stages at build time
        cost: Informational cost estimate, never used for reordering
        memoizable: Results may be cached (only honoured when ``pure`` is set)
        cache_ttl: Seconds a cached result stays fresh, None for no expiry
        context: Cache-relevant projection of the invocation context
        is_async: Force the morph to be treated as (a)synchronous; None detects it
    """

    pure: bool = True
    fusible: bool = False
    cost: float = 1
    memoizable: bool = False
    cache_ttl: Optional[float] = None
    context: ContextProjection = field(default_factory=ContextProjection.whole)
    is_async: Optional[bool] = None

    def __post_init__(self):
        for flag in ("pure", "fusible", "memoizable"):
            if not isinstance(getattr(self, flag), bool):
                raise ConfigurationError(
                    f"'{flag}' must be a bool, got {getattr(self, flag)!r}"
                )
        if (
            isinstance(self.cost, bool)
            or not isinstance(self.cost, Real)
            or self.cost < 0
        ):
            raise ConfigurationError(f"'cost' must be a number >= 0, got {self.cost!r}")
        if self.cache_ttl is not None and (
            isinstance(self.cache_ttl, bool)
            or not isinstance(self.cache_ttl, Real)
            or self.cache_ttl <= 0
        ):
            raise ConfigurationError(
                f"'cache_ttl' must be a positive number of seconds, got {self.cache_ttl!r}"
            )
        if self.is_async is not None and not isinstance(self.is_async, bool):
            raise ConfigurationError("'is_async' must be a bool or None")
        if not isinstance(self.context, ContextProjection):
            object.__setattr__(self, "context", _coerce_projection(self.context))

    @property
    def cacheable(self) -> bool:
        """Memoization only activates for morphs that are both pure and memoizable."""
        return self.pure and self.memoizable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pure": self.pure,
            "fusible": self.fusible,
            "cost": self.cost,
            "memoizable": self.memoizable,
            "cache_ttl": self.cache_ttl,
            "context": self.context.kind.value,
        }


@dataclass(frozen=True)
class BuildMetadata:
    """Documentation labels attached to a built pipeline."""

    description: str = ""
    category: str = "pipeline"
    tags: FrozenSet[str] = frozenset()
    input_type: str = "unknown"
    output_type: str = "unknown"

    def __post_init__(self):
        for label in ("description", "category", "input_type", "output_type"):
            if not isinstance(getattr(self, label), str):
                raise ConfigurationError(
                    f"'{label}' must be a string, got {getattr(self, label)!r}"
                )
        object.__setattr__(self, "tags", _coerce_tags(self.tags))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "category": self.category,
            "tags": sorted(self.tags),
            "input_type": self.input_type,
            "output_type": self.output_type,
        }


@dataclass(frozen=True)
class RecordMetadata(BuildMetadata):
    """
    Documentation attached to a registry record.

    Same labels as BuildMetadata plus the names of the morphs a composite
    target is made of.
    """

    category: str = "uncategorized"
    composition: Tuple[str, ...] = ()

    def __post_init__(self):
        super().__post_init__()
        if isinstance(self.composition, str) or not isinstance(
            self.composition, Iterable
        ):
            raise ConfigurationError(
                f"'composition' must be a sequence of names, got {self.composition!r}"
            )
        object.__setattr__(self, "composition", tuple(self.composition))

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["composition"] = list(self.composition)
        return data


def _coerce_tags(tags: Any) -> FrozenSet[str]:
    if tags is None:
        return frozenset()
    # A bare string would silently become a set of characters
    if isinstance(tags, str) or not isinstance(tags, Iterable):
        raise ConfigurationError(f"'tags' must be a collection of strings, got {tags!r}")
    tags = frozenset(tags)
    if not all(isinstance(tag, str) for tag in tags):
        raise ConfigurationError(f"'tags' must only contain strings, got {tags!r}")
    return tags


_MORPH_ALIASES = {
    "cacheTTL": "cache_ttl",
    "cacheTtl": "cache_ttl",
    "ttl": "cache_ttl",
    "isAsync": "is_async",
    "relevantContext": "context",
    "relevant_context": "context",
}

_LABEL_ALIASES = {
    "inputType": "input_type",
    "outputType": "output_type",
}


def _normalize(
    cls: type, values: Mapping[str, Any], aliases: Mapping[str, str]
) -> Dict[str, Any]:
    allowed = {f.name for f in fields(cls)}
    normalized = {}
    for key, value in values.items():
        name = aliases.get(key, key)
        if name not in allowed:
            raise ConfigurationError(f"Unknown {cls.__name__} key: '{key}'")
        if name in normalized:
            raise ConfigurationError(f"{cls.__name__} key '{name}' given twice")
        normalized[name] = value
    return normalized


def _coerce(cls: type, value: Any, aliases: Mapping[str, str], overrides: Mapping[str, Any]):
    if value is None:
        base = cls()
    elif isinstance(value, cls):
        base = value
    elif isinstance(value, Mapping):
        base = cls(**_normalize(cls, value, aliases))
    else:
        raise ConfigurationError(f"Cannot use {value!r} as {cls.__name__}")

    if overrides:
        base = replace(base, **_normalize(cls, overrides, aliases))
    return base


def coerce_morph_metadata(value: Any = None, **overrides: Any) -> MorphMetadata:
    """
    Turn ``value`` (None, a mapping or a MorphMetadata) plus keyword overrides
    into a MorphMetadata.

    Raises:
        ConfigurationError: For unknown keys or invalid values
    """
    return _coerce(MorphMetadata, value, _MORPH_ALIASES, overrides)


def coerce_build_metadata(value: Any = None, **overrides: Any) -> BuildMetadata:
    """Same as coerce_morph_metadata, for pipeline build metadata."""
    return _coerce(BuildMetadata, value, _LABEL_ALIASES, overrides)


def coerce_record_metadata(value: Any = None, **overrides: Any) -> RecordMetadata:
    """
    Same as coerce_morph_metadata, for registry records.

    A BuildMetadata instance is accepted and keeps its labels.
    """
    if isinstance(value, BuildMetadata) and not isinstance(value, RecordMetadata):
        value = {f.name: getattr(value, f.name) for f in fields(BuildMetadata)}
    return _coerce(RecordMetadata, value, _LABEL_ALIASES, overrides)
