"""
Pipelines
=========

Fluent builder that accumulates stages and freezes them into a Pipeline.

    pipeline = (
        create_pipeline("normalize-label")
        .pipe(trim)
        .pipe(upper)
        .build({"category": "text", "tags": ["label"]})
    )
    pipeline.apply("  hi ")  # "HI"

``build()`` runs the fusion optimizer once; every later ``apply()`` shares the
same (possibly shorter) stage list and the stages' caches.

Execution is strict sequential dataflow: stage N completes (and is awaited,
when asynchronous) before stage N+1 starts. The first failing stage aborts the
run with a TransformError; earlier stages are not rolled back.
"""

from collections import Counter
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .errors import ConfigurationError
from .metadata import (
    BuildMetadata,
    MorphMetadata,
    coerce_build_metadata,
    coerce_morph_metadata,
)
from .morph import (
    EMPTY_CONTEXT,
    ConditionalMorph,
    Morph,
    Predicate,
    SimpleMorph,
    Stage,
    stage_names,
)
from .optimizer import FusionReport, fuse_stages, unfused_report
from .settings import DEFAULT_SETTINGS, EngineSettings

if TYPE_CHECKING:
    from .registry import MorpheusRegistry


class Pipeline(Morph):
    """
    A frozen, ordered chain of stages built once and applied many times.

    A Pipeline is a Morph, so it can be nested in another pipeline or in a
    ComposedMorph. It is pure when every stage is pure, never fusible and
    never memoized; its cost is the sum of its stage costs.

    Attributes:
        stages: Executed stages (after fusion)
        declared_stages: Stages as declared with pipe()
        build_metadata: Documentation labels given to build()
        fusion_report: What the optimizer did
    """

    def __init__(
        self,
        name: str,
        stages: Sequence[Stage],
        declared_stages: Sequence[Stage],
        build_metadata: BuildMetadata,
        fusion_report: FusionReport,
        settings: Optional[EngineSettings] = None,
    ):
        self._stages = tuple(stages)
        self._declared_stages = tuple(declared_stages)
        self._build_metadata = build_metadata
        self._fusion_report = fusion_report
        self._async = any(stage.morph.is_async for stage in self._stages)
        super().__init__(
            name,
            MorphMetadata(
                pure=all(stage.morph.pure for stage in self._declared_stages),
                fusible=False,
                cost=sum(stage.cost for stage in self._declared_stages),
                memoizable=False,
                is_async=self._async,
            ),
            settings,
        )

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def declared_stages(self) -> Tuple[Stage, ...]:
        return self._declared_stages

    @property
    def build_metadata(self) -> BuildMetadata:
        return self._build_metadata

    @property
    def fusion_report(self) -> FusionReport:
        return self._fusion_report

    @property
    def stage_count(self) -> int:
        """Number of stages actually dispatched per apply()."""
        return len(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def _transform(self, input: Any, context: Any) -> Any:
        if self._async:
            return self._run_async(input, context)

        # Fast synchronous path: every stage is statically known to be sync
        value = input
        for stage in self._stages:
            value = stage.morph._execute(value, context, stage.label)
        return value

    async def _run_async(self, input: Any, context: Any) -> Any:
        value = input
        for stage in self._stages:
            value = await stage.morph._execute_async(value, context, stage.label)
        return value

    async def apply_async(self, input: Any, context: Any = None) -> Any:
        """Run the pipeline on the deferred path, awaiting each stage in turn."""
        if context is None:
            context = EMPTY_CONTEXT
        return await self._run_async(input, context)

    def describe(self) -> Dict[str, Any]:
        info = super().describe()
        info["stages"] = stage_names(self._stages)
        info["declared_stages"] = stage_names(self._declared_stages)
        info["build_metadata"] = self._build_metadata.to_dict()
        info["fusion"] = self._fusion_report.to_dict()
        return info

    def debug(self) -> str:
        """Human-readable listing of the declared stages and what was fused."""
        lines = [f"Pipeline: {self.name}"]
        for index, stage in enumerate(self._declared_stages):
            flags = []
            if stage.morph.fusible:
                flags.append("fusible")
            if stage.morph.cache is not None:
                flags.append("memoized")
            if not stage.morph.pure:
                flags.append("impure")
            if stage.morph.is_async:
                flags.append("async")
            suffix = f" [{', '.join(flags)}]" if flags else ""
            lines.append(f"  {index}. {stage.label} (cost: {stage.cost}){suffix}")
        for group in self._fusion_report.groups:
            lines.append(f"  fused: {' + '.join(group.labels)}")
        lines.append(f"Total cost: {self.cost}")
        lines.append(
            f"Stages: {self._fusion_report.declared} declared, "
            f"{self._fusion_report.executed} executed"
        )
        return "\n".join(lines)


class PipelineBuilder:
    """
    Mutable, ordered stage accumulator. Frozen once built.

    Performance characteristics:
    - pipe(): O(1), appends to an internal list and returns self
    - build(): O(n) duplicate check + O(n) fusion pass, paid once
    """

    def __init__(
        self,
        name: str,
        registry: Optional["MorpheusRegistry"] = None,
        settings: Optional[EngineSettings] = None,
    ):
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Pipeline name must be a non-empty string, got {name!r}")
        self.name = name
        self._registry = registry
        self._settings = settings or DEFAULT_SETTINGS
        self._stages: List[Stage] = []
        self._result: Optional[Pipeline] = None

    @property
    def frozen(self) -> bool:
        return self._result is not None

    def _append(self, stage: Stage) -> "PipelineBuilder":
        if self.frozen:
            raise ConfigurationError(f"Pipeline '{self.name}' is already built")
        self._stages.append(stage)
        return self

    def pipe(self, morph: Morph, label: Optional[str] = None) -> "PipelineBuilder":
        """
        Append ``morph`` as the next stage.

        Args:
            morph: The morph to run
            label: Stage label, needed when the same name appears twice
        """
        if not isinstance(morph, Morph):
            raise ConfigurationError(
                f"Pipeline '{self.name}' can only pipe morphs, got {morph!r}"
            )
        if label is not None and (not isinstance(label, str) or not label):
            raise ConfigurationError(f"Stage label must be a non-empty string, got {label!r}")
        return self._append(Stage.of(morph, label))

    def __rshift__(self, morph: Morph) -> "PipelineBuilder":
        """Support >> operator."""
        return self.pipe(morph)

    def map(
        self,
        fn: Callable[[Any, Any], Any],
        name: Optional[str] = None,
        metadata: Any = None,
        **options: Any,
    ) -> "PipelineBuilder":
        """
        Append a plain function ``(value, context) -> value`` as a stage.

        The stage is named ``map_<position>`` unless ``name`` is given;
        metadata defaults are the morph defaults.
        """
        stage_name = name or f"map_{len(self._stages)}"
        morph = SimpleMorph(
            stage_name,
            fn,
            coerce_morph_metadata(metadata, **options),
            self._settings,
        )
        return self._append(Stage.of(morph))

    def when(
        self, predicate: Predicate, morph: Morph, label: Optional[str] = None
    ) -> "PipelineBuilder":
        """
        Append ``morph`` guarded by ``predicate(value, context)``; when the
        predicate is false the value passes through unchanged.
        """
        stage_name = label or (f"when_{morph.name}" if isinstance(morph, Morph) else "when")
        conditional = ConditionalMorph(
            stage_name,
            predicate,
            morph,
            self._settings,
        )
        return self._append(Stage.of(conditional))

    def pipe_to(self, name: str, label: Optional[str] = None) -> "PipelineBuilder":
        """Append the morph registered under ``name`` in the builder's registry."""
        if self._registry is None:
            raise ConfigurationError(
                f"Pipeline '{self.name}' has no registry to resolve '{name}'"
            )
        record = self._registry.get(name)
        if record is None:
            raise ConfigurationError(f"Morph '{name}' is not registered")
        return self.pipe(record.target, label)

    def __len__(self) -> int:
        return len(self._stages)

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return tuple(self._stages)

    def _check_labels(self) -> None:
        counts = Counter(stage.label for stage in self._stages)
        duplicates = sorted(label for label, count in counts.items() if count > 1)
        if duplicates:
            raise ConfigurationError(
                f"Pipeline '{self.name}' has several stages named "
                f"{', '.join(repr(d) for d in duplicates)}; pass label= to tell them apart"
            )

    def build(self, metadata: Any = None, **options: Any) -> Pipeline:
        """
        Freeze the builder into a Pipeline.

        Args:
            metadata: BuildMetadata or mapping (``description``, ``category``,
                ``tags``, ``inputType``/``input_type``, ``outputType``/``output_type``)
            **options: Same keys as keyword arguments

        Raises:
            ConfigurationError: If already built, if stage labels collide, if
                the metadata is malformed, or if registration fails
        """
        if self.frozen:
            raise ConfigurationError(f"Pipeline '{self.name}' is already built")

        build_metadata = coerce_build_metadata(metadata, **options)
        if not build_metadata.description:
            build_metadata = coerce_build_metadata(
                build_metadata, description=f"Pipeline: {self.name}"
            )
        self._check_labels()

        declared = list(self._stages)
        if self._settings.fusion_enabled:
            stages, report = fuse_stages(declared)
        else:
            stages, report = declared, unfused_report(declared)

        pipeline = Pipeline(
            self.name,
            stages,
            declared,
            build_metadata,
            report,
            self._settings,
        )

        if self._registry is not None:
            self._registry.define(pipeline)

        self._result = pipeline
        return pipeline

    def __repr__(self) -> str:
        state = "built" if self.frozen else "open"
        return f"PipelineBuilder({self.name!r}, stages={len(self._stages)}, {state})"


def create_pipeline(
    name: str,
    registry: Optional["MorpheusRegistry"] = None,
    settings: Optional[EngineSettings] = None,
) -> PipelineBuilder:
    """
    Start a pipeline.

    Args:
        name: Pipeline name
        registry: When given, the built pipeline is registered there and
            ``pipe_to()`` resolves names against it
        settings: Engine settings (fusion switch, cache sizes)
    """
    return PipelineBuilder(name, registry=registry, settings=settings)

