"""
Morpheus - Optimizing Morph Pipelines
=====================================

Morpheus composes named transformations ("morphs") over shapes into pipelines
and optimizes them at build time.

Key features:
- Morphs: named ``(input, context) -> output`` functions with declared metadata
- Pipelines: fluent builder, strict sequential execution, sync or async stages
- Fusion: adjacent fusible stages are merged into one at build time
- Memoization: pure, memoizable morphs cache results with a TTL
- Registry: catalog of morphs and pipelines for discovery

Quick start:
    from morpheus import MorpheusRegistry, create_morph, create_pipeline

    trim = create_morph("Trim", lambda s, ctx: s.strip(), fusible=True)
    upper = create_morph("Upper", lambda s, ctx: s.upper(), fusible=True)

    registry = MorpheusRegistry()
    pipeline = (
        create_pipeline("normalize", registry=registry)
        .pipe(trim)
        .pipe(upper)
        .build(category="text", tags=["label"])
    )

    pipeline.apply("  hi ")  # "HI"
    pipeline.stage_count     # 1, Trim and Upper were fused
"""

from .cache import MemoCache
from .errors import ConfigurationError, MorpheusError, TransformError
from .metadata import (
    BuildMetadata,
    ContextProjection,
    MorphMetadata,
    ProjectionKind,
    RecordMetadata,
)
from .morph import (
    ComposedMorph,
    ConditionalMorph,
    IdentityMorph,
    Morph,
    SimpleMorph,
    Stage,
    as_morph,
    compose_morphs,
    create_morph,
)
from .optimizer import FusedMorph, FusionGroup, FusionReport, fuse_stages
from .pipeline import Pipeline, PipelineBuilder, create_pipeline
from .registry import MorpheusRegistry, RegistryRecord
from .settings import DEFAULT_SETTINGS, EngineSettings

__version__ = "0.1.0"

__all__ = [
    # Morphs
    "Morph",
    "SimpleMorph",
    "ComposedMorph",
    "ConditionalMorph",
    "IdentityMorph",
    "Stage",
    "create_morph",
    "compose_morphs",
    "as_morph",
    # Metadata
    "MorphMetadata",
    "BuildMetadata",
    "RecordMetadata",
    "ContextProjection",
    "ProjectionKind",
    # Pipelines
    "Pipeline",
    "PipelineBuilder",
    "create_pipeline",
    # Optimizer
    "FusedMorph",
    "FusionGroup",
    "FusionReport",
    "fuse_stages",
    # Caching
    "MemoCache",
    # Registry
    "MorpheusRegistry",
    "RegistryRecord",
    # Settings
    "EngineSettings",
    "DEFAULT_SETTINGS",
    # Errors
    "MorpheusError",
    "ConfigurationError",
    "TransformError",
]
