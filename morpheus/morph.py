"""
Morphs
======

A morph is a named transformation ``(input, context) -> output`` annotated
with the properties the engine reasons about (see MorphMetadata).

Key classes:
- Morph: abstract contract, error wrapping and memoization
- SimpleMorph: a morph backed by a single function
- ComposedMorph: ordered sub-morphs plus an optional finishing step
- ConditionalMorph: runs a morph only when a predicate holds
- IdentityMorph: returns its input unchanged
- Stage: a morph placed in a pipeline under a label

Usage:
    trim = create_morph("Trim", lambda s, ctx: s.strip(), fusible=True)
    upper = create_morph("Upper", lambda s, ctx: s.upper(), fusible=True)

    trim.apply("  hi ")            # "hi"
    (trim >> upper).apply("  hi ")  # "HI"

Morphs must not mutate their input; they return new values. A failing
transformation surfaces as a TransformError naming the morph that failed.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .cache import MemoCache
from .errors import ConfigurationError, TransformError
from .metadata import MorphMetadata, coerce_morph_metadata
from .settings import DEFAULT_SETTINGS, EngineSettings

EMPTY_CONTEXT = MappingProxyType({})

Transformer = Callable[[Any, Any], Any]
PostProcessor = Callable[[Any, Any], Any]
Predicate = Callable[[Any, Any], bool]


def _is_async_callable(fn: Any) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


class Morph(ABC):
    """
    Base morph: a named, immutable transformation with declared metadata.

    Subclasses implement ``_transform``. Everything else (context defaulting,
    memoization, error wrapping, sync/async dispatch) lives here.

    Attributes:
        name: Identifier used in diagnostics, fusion and the registry
        metadata: Declared pure / fusible / cost / memoizable / cache_ttl
    """

    def __init__(
        self,
        name: str,
        metadata: Any = None,
        settings: Optional[EngineSettings] = None,
    ):
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Morph name must be a non-empty string, got {name!r}")

        settings = settings or DEFAULT_SETTINGS
        self._name = name
        self._metadata = coerce_morph_metadata(metadata)

        # Impure morphs are never cached, whatever memoizable says
        self._cache: Optional[MemoCache] = None
        if self._metadata.cacheable:
            ttl = self._metadata.cache_ttl
            if ttl is None:
                ttl = settings.default_cache_ttl
            self._cache = MemoCache(
                name,
                ttl=ttl,
                maxsize=settings.cache_maxsize,
                projection=self._metadata.context,
                timer=settings.timer,
            )

    @property
    def name(self) -> str:
        return self._name

    @property
    def metadata(self) -> MorphMetadata:
        return self._metadata

    @property
    def pure(self) -> bool:
        return self._metadata.pure

    @property
    def fusible(self) -> bool:
        return self._metadata.fusible

    @property
    def cost(self) -> float:
        return self._metadata.cost

    @property
    def memoizable(self) -> bool:
        return self._metadata.memoizable

    @property
    def cache(self) -> Optional[MemoCache]:
        """The morph's memoization cache, None unless pure and memoizable."""
        return self._cache

    @property
    def is_async(self) -> bool:
        """Whether apply() returns an awaitable."""
        if self._metadata.is_async is not None:
            return self._metadata.is_async
        return self._detect_async()

    def _detect_async(self) -> bool:
        return False

    @abstractmethod
    def _transform(self, input: Any, context: Any) -> Any:
        """Override in subclasses - the actual transformation."""
        pass

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def apply(self, input: Any, context: Any = None) -> Any:
        """
        Transform ``input`` under ``context``.

        Returns the output directly for synchronous morphs and an awaitable
        for asynchronous ones.

        Raises:
            TransformError: If the transformation fails
        """
        if context is None:
            context = EMPTY_CONTEXT
        if self.is_async:
            return self._execute_async(input, context, self._name)
        return self._execute(input, context, self._name)

    async def apply_async(self, input: Any, context: Any = None) -> Any:
        """Transform ``input``, always returning an awaitable."""
        if context is None:
            context = EMPTY_CONTEXT
        return await self._execute_async(input, context, self._name)

    def __call__(self, input: Any, context: Any = None) -> Any:
        return self.apply(input, context)

    def _call(self, input: Any, context: Any, label: str) -> Any:
        """Run the transformation once, wrapping failures under ``label``."""
        try:
            result = self._transform(input, context)
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(label, e, context) from e

        # Synchronous path only: an awaitable here can never be awaited
        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            cause = TypeError(
                f"'{self._name}' returned an awaitable on the synchronous path; "
                f"declare it with is_async=True"
            )
            raise TransformError(label, cause, context) from cause
        return result

    def _execute(self, input: Any, context: Any, label: str) -> Any:
        cache = self._cache
        if cache is None:
            return self._call(input, context, label)

        key = cache.key_for(input, context)
        if key is not None:
            hit, value = cache.lookup(key)
            if hit:
                return value

        result = self._call(input, context, label)
        if key is not None:
            cache.store(key, result)
        return result

    async def _execute_async(self, input: Any, context: Any, label: str) -> Any:
        cache = self._cache
        key = None
        if cache is not None:
            key = cache.key_for(input, context)
            if key is not None:
                hit, value = cache.lookup(key)
                if hit:
                    return value

        try:
            result = self._transform(input, context)
            if inspect.isawaitable(result):
                result = await result
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(label, e, context) from e

        if key is not None:
            cache.store(key, result)
        return result

    # ------------------------------------------------------------------
    # Composition & introspection
    # ------------------------------------------------------------------

    def then(self, next_morph: "Morph", name: Optional[str] = None) -> "ComposedMorph":
        """Compose this morph with ``next_morph`` (this one runs first)."""
        return compose_morphs(self, next_morph, name=name)

    def __rshift__(self, next_morph: "Morph") -> "ComposedMorph":
        """Support >> operator."""
        return self.then(next_morph)

    def describe(self) -> Dict[str, Any]:
        """Summary of the morph for debugging and documentation tooling."""
        info = {
            "name": self._name,
            "kind": type(self).__name__,
            "is_async": self.is_async,
            **self._metadata.to_dict(),
        }
        if self._cache is not None:
            info["cache"] = self._cache.get_stats()
        return info

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._name!r})"


class SimpleMorph(Morph):
    """
    A morph backed directly by one function.

    The function receives ``(input, context)``. ``async def`` functions make
    the morph asynchronous.
    """

    def __init__(
        self,
        name: str,
        fn: Transformer,
        metadata: Any = None,
        settings: Optional[EngineSettings] = None,
    ):
        if not callable(fn):
            raise ConfigurationError(f"Morph '{name}' needs a callable, got {fn!r}")
        self._fn = fn
        super().__init__(name, metadata, settings)

    @property
    def fn(self) -> Transformer:
        return self._fn

    def _detect_async(self) -> bool:
        return _is_async_callable(self._fn)

    def _transform(self, input: Any, context: Any) -> Any:
        return self._fn(input, context)


class ComposedMorph(Morph):
    """
    Ordered sub-morphs plus an optional post-processing step.

    ``apply`` runs each sub-morph in order, then passes the final result
    through ``post_process(result, context)`` when one is given. Used to
    package "sequence + bespoke finishing touch" as one reusable unit.

    Declared metadata always wins. When ``pure`` is not declared the composite
    is pure only if every sub-morph is pure and there is no post-processor,
    whose purity cannot be known. ``fusible`` defaults to False. When no cost
    is declared it defaults to the sum of the sub-morph costs, plus 1 for the
    post-processor.
    """

    def __init__(
        self,
        name: str,
        morphs: Sequence[Morph],
        post_process: Optional[PostProcessor] = None,
        metadata: Any = None,
        settings: Optional[EngineSettings] = None,
    ):
        steps = tuple(morphs)
        for step in steps:
            if not isinstance(step, Morph):
                raise ConfigurationError(
                    f"ComposedMorph '{name}' can only compose morphs, got {step!r}"
                )
        if post_process is not None and not callable(post_process):
            raise ConfigurationError(
                f"ComposedMorph '{name}' post-processor must be callable"
            )

        self._steps = steps
        self._post_process = post_process

        # Undeclared pure/cost are derived; a post-processor is impure by default
        defaults = {
            "pure": post_process is None and all(step.pure for step in steps),
            "cost": sum(step.cost for step in steps) + (1 if post_process else 0),
        }
        if metadata is None:
            metadata = coerce_morph_metadata(**defaults)
        elif isinstance(metadata, Mapping):
            missing = {k: v for k, v in defaults.items() if k not in metadata}
            metadata = coerce_morph_metadata(metadata, **missing)

        super().__init__(name, metadata, settings)

    @property
    def steps(self) -> Tuple[Morph, ...]:
        return self._steps

    @property
    def post_process(self) -> Optional[PostProcessor]:
        return self._post_process

    def _detect_async(self) -> bool:
        if any(step.is_async for step in self._steps):
            return True
        return self._post_process is not None and _is_async_callable(
            self._post_process
        )

    def _transform(self, input: Any, context: Any) -> Any:
        if self.is_async:
            return self._transform_async(input, context)

        result = input
        for step in self._steps:
            result = step._execute(result, context, step.name)
        if self._post_process is not None:
            result = self._post_process(result, context)
        return result

    async def _transform_async(self, input: Any, context: Any) -> Any:
        result = input
        for step in self._steps:
            result = await step._execute_async(result, context, step.name)
        if self._post_process is not None:
            result = self._post_process(result, context)
            if inspect.isawaitable(result):
                result = await result
        return result

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info["steps"] = [step.name for step in self._steps]
        info["post_process"] = self._post_process is not None
        return info


class ConditionalMorph(Morph):
    """
    Runs ``morph`` only when ``predicate(input, context)`` is true; otherwise
    the input passes through unchanged.

    The predicate must be synchronous. Conditional stages are never fused or
    memoized; they are pure when the wrapped morph is. Cost is 80% of the
    wrapped morph's cost since the morph may not run.
    """

    def __init__(
        self,
        name: str,
        predicate: Predicate,
        morph: Morph,
        settings: Optional[EngineSettings] = None,
    ):
        if not callable(predicate):
            raise ConfigurationError(f"Conditional '{name}' needs a callable predicate")
        if not isinstance(morph, Morph):
            raise ConfigurationError(f"Conditional '{name}' needs a morph, got {morph!r}")
        self._predicate = predicate
        self._morph = morph
        super().__init__(
            name,
            MorphMetadata(
                pure=morph.pure,
                fusible=False,
                cost=morph.cost * 0.8,
                memoizable=False,
                is_async=morph.is_async,
            ),
            settings,
        )

    @property
    def predicate(self) -> Predicate:
        return self._predicate

    @property
    def morph(self) -> Morph:
        return self._morph

    def _transform(self, input: Any, context: Any) -> Any:
        if not self._predicate(input, context):
            return input
        if self._morph.is_async:
            return self._morph._execute_async(input, context, self._morph.name)
        return self._morph._execute(input, context, self._morph.name)


class IdentityMorph(Morph):
    """The identity morph: returns its input unchanged. Pure, fusible, free."""

    def __init__(self, name: str = "identity"):
        super().__init__(name, MorphMetadata(pure=True, fusible=True, cost=0))

    def _transform(self, input: Any, context: Any) -> Any:
        return input


@dataclass(frozen=True)
class Stage:
    """A morph placed in a pipeline under a label (defaults to the morph name)."""

    label: str
    morph: Morph

    @classmethod
    def of(cls, morph: Morph, label: Optional[str] = None) -> "Stage":
        return cls(label or morph.name, morph)

    @property
    def cost(self) -> float:
        return self.morph.cost

    def __repr__(self) -> str:
        if self.label == self.morph.name:
            return f"Stage({self.label!r})"
        return f"Stage({self.label!r}, morph={self.morph.name!r})"


def create_morph(
    name: str,
    fn: Transformer,
    metadata: Any = None,
    settings: Optional[EngineSettings] = None,
    **options: Any,
) -> SimpleMorph:
    """
    Create a SimpleMorph.

    Args:
        name: Morph name
        fn: ``(input, context) -> output``, may be ``async def``
        metadata: MorphMetadata or mapping (``pure``, ``fusible``, ``cost``,
            ``memoizable``, ``cacheTTL``/``cache_ttl``, ``context``)
        settings: Engine settings for the morph's cache
        **options: Metadata given as keyword arguments, override ``metadata``

    Example:
        trim = create_morph("Trim", lambda s, ctx: s.strip(), pure=True, fusible=True)
    """
    return SimpleMorph(name, fn, coerce_morph_metadata(metadata, **options), settings)


def compose_morphs(
    first: Morph, second: Morph, name: Optional[str] = None
) -> ComposedMorph:
    """
    Compose two morphs into one ComposedMorph named ``first➝second``.

    The result is pure, fusible and memoizable only when both parts are; its
    cost is the sum of both costs.
    """
    memoizable = first.memoizable and second.memoizable
    ttls = [t for t in (first.metadata.cache_ttl, second.metadata.cache_ttl) if t]
    return ComposedMorph(
        name or f"{first.name}➝{second.name}",
        [first, second],
        metadata=MorphMetadata(
            pure=first.pure and second.pure,
            fusible=first.fusible and second.fusible,
            cost=first.cost + second.cost,
            memoizable=memoizable,
            cache_ttl=min(ttls) if memoizable and ttls else None,
        ),
    )


def as_morph(
    name: Optional[str] = None, **options: Any
) -> Callable[[Transformer], SimpleMorph]:
    """
    Decorator turning a function into a SimpleMorph.

    Usage:
        @as_morph(fusible=True)
        def trim(value, context):
            return value.strip()

        trim.apply("  hi ")  # "hi"
    """

    def decorator(fn: Transformer) -> SimpleMorph:
        return create_morph(name or fn.__name__, fn, **options)

    return decorator


def stage_names(stages: Sequence[Stage]) -> List[str]:
    return [stage.label for stage in stages]
