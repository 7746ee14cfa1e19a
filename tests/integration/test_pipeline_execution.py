"""Integration tests for building and applying pipelines."""

import pytest

from morpheus import (
    ComposedMorph,
    ConfigurationError,
    EngineSettings,
    IdentityMorph,
    Pipeline,
    TransformError,
    create_morph,
    create_pipeline,
)

NO_FUSION = EngineSettings(fusion_enabled=False)


def text_morphs():
    trim = create_morph("Trim", lambda s, ctx: s.strip(), pure=True, fusible=True)
    upper = create_morph("Upper", lambda s, ctx: s.upper(), pure=True, fusible=True)
    return trim, upper


@pytest.mark.integration
@pytest.mark.pipeline
def test_trim_upper_pipeline_fuses_into_one_stage():
    trim, upper = text_morphs()

    pipeline = create_pipeline("normalize").pipe(trim).pipe(upper).build()

    assert pipeline.apply("  hi ") == "HI"
    assert pipeline.stage_count == 1
    assert pipeline.fusion_report.eliminated == 1


@pytest.mark.integration
@pytest.mark.pipeline
def test_disabling_fusion_keeps_results_and_stage_count():
    trim, upper = text_morphs()

    pipeline = (
        create_pipeline("normalize", settings=NO_FUSION).pipe(trim).pipe(upper).build()
    )

    assert pipeline.apply("  hi ") == "HI"
    assert pipeline.stage_count == 2
    assert pipeline.fusion_report.enabled is False


@pytest.mark.integration
@pytest.mark.pipeline
@pytest.mark.optimizer
@pytest.mark.parametrize("value", [0, 1, -7, 42])
def test_fusion_is_transparent(value):
    """Fused and unfused pipelines give the same result as a manual fold"""
    morphs = [
        create_morph("Inc", lambda x, ctx: x + ctx["step"], fusible=True),
        create_morph("Dbl", lambda x, ctx: x * 2, fusible=True),
        create_morph("Clamp", lambda x, ctx: min(x, 50)),
        create_morph("Neg", lambda x, ctx: -x, fusible=True),
        create_morph("Sq", lambda x, ctx: x * x, fusible=True),
    ]
    ctx = {"step": 3}

    expected = value
    for morph in morphs:
        expected = morph.apply(expected, ctx)

    fused = create_pipeline("fused")
    unfused = create_pipeline("unfused", settings=NO_FUSION)
    for morph in morphs:
        fused.pipe(morph)
        unfused.pipe(morph)
    fused, unfused = fused.build(), unfused.build()

    assert fused.stage_count == 3
    assert unfused.stage_count == 5
    assert fused.apply(value, ctx) == unfused.apply(value, ctx) == expected


@pytest.mark.integration
@pytest.mark.pipeline
def test_stages_run_in_declared_order(spy, calls):
    pipeline = (
        create_pipeline("ordered")
        .pipe(create_morph("A", spy("A", lambda x, ctx: x + "a")))
        .pipe(create_morph("B", spy("B", lambda x, ctx: x + "b"), fusible=True))
        .pipe(create_morph("C", spy("C", lambda x, ctx: x + "c"), fusible=True))
        .build()
    )

    assert pipeline.apply("") == "abc"
    assert [name for name, _ in calls] == ["A", "B", "C"]


@pytest.mark.integration
@pytest.mark.pipeline
def test_failure_stops_pipeline_and_names_the_stage(spy, calls):
    """Stage 3 is never reached when stage 2 fails"""

    def fail(value, ctx):
        raise ValueError("invalid shape")

    pipeline = (
        create_pipeline("fail-fast")
        .pipe(create_morph("First", spy("First", lambda x, ctx: x)))
        .pipe(create_morph("Second", fail))
        .pipe(create_morph("Third", spy("Third", lambda x, ctx: x)))
        .build()
    )

    with pytest.raises(TransformError) as excinfo:
        pipeline.apply({"w": 1}, {"request": 7})

    assert excinfo.value.morph_name == "Second"
    assert isinstance(excinfo.value.cause, ValueError)
    assert excinfo.value.context == {"request": 7}
    assert [name for name, _ in calls] == ["First"]


@pytest.mark.integration
@pytest.mark.pipeline
def test_failure_inside_fused_run_names_the_stage_label():
    def fail(value, ctx):
        raise RuntimeError("boom")

    pipeline = (
        create_pipeline("fused-failure")
        .pipe(create_morph("A", lambda x, ctx: x, fusible=True))
        .pipe(create_morph("B", fail, fusible=True), label="explode")
        .build()
    )

    assert pipeline.stage_count == 1
    with pytest.raises(TransformError) as excinfo:
        pipeline.apply(1)
    assert excinfo.value.morph_name == "explode"


@pytest.mark.integration
@pytest.mark.pipeline
def test_memoized_stage_within_ttl_runs_once(settings, clock, spy, calls):
    expensive = create_morph(
        "Layout",
        spy("Layout", lambda shape, ctx: {**shape, "area": shape["w"] * shape["h"]}),
        memoizable=True,
        cacheTTL=60,
        settings=settings,
    )
    pipeline = create_pipeline("layout", settings=settings).pipe(expensive).build()

    first = pipeline.apply({"w": 2, "h": 3}, {"locale": "en"})
    second = pipeline.apply({"h": 3, "w": 2}, {"locale": "en"})
    assert first == second == {"w": 2, "h": 3, "area": 6}
    assert len(calls) == 1

    clock.advance(61)
    pipeline.apply({"w": 2, "h": 3}, {"locale": "en"})
    assert len(calls) == 2


@pytest.mark.integration
@pytest.mark.pipeline
def test_different_context_misses_cache(spy, calls):
    label = create_morph(
        "Label", spy("Label", lambda s, ctx: f"{ctx['locale']}:{s}"), memoizable=True
    )
    pipeline = create_pipeline("labels").pipe(label).build()

    assert pipeline.apply("x", {"locale": "en"}) == "en:x"
    assert pipeline.apply("x", {"locale": "fr"}) == "fr:x"
    assert len(calls) == 2


@pytest.mark.integration
@pytest.mark.pipeline
def test_context_projection_ignores_irrelevant_keys(spy, calls):
    label = create_morph(
        "Label",
        spy("Label", lambda s, ctx: f"{ctx['locale']}:{s}"),
        memoizable=True,
        context=["locale"],
    )
    pipeline = create_pipeline("labels").pipe(label).build()

    pipeline.apply("x", {"locale": "en", "request_id": 1})
    pipeline.apply("x", {"locale": "en", "request_id": 2})

    assert len(calls) == 1


@pytest.mark.integration
@pytest.mark.pipeline
@pytest.mark.edge_case
def test_undeclared_awaitable_stage_fails_instead_of_leaking_coroutine(spy, calls):
    """The sync fast path never passes an awaitable on or caches it"""

    async def fetch(value):
        return value + 1

    pipeline = (
        create_pipeline("leaky")
        .pipe(create_morph("Fetch", lambda x, ctx: fetch(x), memoizable=True))
        .pipe(create_morph("Next", spy("Next", lambda x, ctx: x)))
        .build()
    )

    for _ in range(2):
        with pytest.raises(TransformError) as excinfo:
            pipeline.apply(1)
        assert excinfo.value.morph_name == "Fetch"

    assert calls == []


@pytest.mark.integration
@pytest.mark.pipeline
def test_impure_stage_is_never_memoized(spy, calls):
    counter = create_morph(
        "Counter", spy("Counter", lambda x, ctx: x), pure=False, memoizable=True
    )
    pipeline = create_pipeline("impure").pipe(counter).build()

    pipeline.apply(1)
    pipeline.apply(1)

    assert len(calls) == 2


@pytest.mark.integration
@pytest.mark.pipeline
def test_cache_is_shared_by_every_pipeline_using_the_morph(spy, calls):
    square = create_morph("Square", spy("Square", lambda x, ctx: x * x), memoizable=True)
    first = create_pipeline("first").pipe(square).build()
    second = (
        create_pipeline("second")
        .pipe(IdentityMorph())
        .pipe(square)
        .build()
    )

    assert first.apply(9) == 81
    assert second.apply(9) == 81
    assert len(calls) == 1


@pytest.mark.integration
@pytest.mark.pipeline
def test_pipeline_metadata_and_cost():
    trim, upper = text_morphs()
    heavy = create_morph("Heavy", lambda s, ctx: s, cost=10, pure=False)

    pipeline = create_pipeline("p").pipe(trim).pipe(upper).pipe(heavy).build()

    assert isinstance(pipeline, Pipeline)
    assert pipeline.cost == 12
    assert pipeline.pure is False
    assert pipeline.fusible is False
    assert pipeline.memoizable is False


@pytest.mark.integration
@pytest.mark.pipeline
def test_pipelines_nest_as_stages():
    trim, upper = text_morphs()
    inner = create_pipeline("inner").pipe(trim).pipe(upper).build()
    exclaim = create_morph("Exclaim", lambda s, ctx: s + "!")

    outer = create_pipeline("outer").pipe(inner).pipe(exclaim).build()

    assert outer.apply("  hey ") == "HEY!"
    assert outer.stage_count == 2


@pytest.mark.integration
@pytest.mark.pipeline
def test_pipeline_can_be_used_inside_composed_morph():
    trim, upper = text_morphs()
    inner = create_pipeline("inner").pipe(trim).pipe(upper).build()

    composite = ComposedMorph("Shout", [inner], post_process=lambda s, ctx: s + "!")

    assert composite.apply(" a ") == "A!"


@pytest.mark.integration
@pytest.mark.pipeline
def test_empty_pipeline_is_identity():
    pipeline = create_pipeline("empty").build()
    shape = {"w": 1}

    assert pipeline.apply(shape) is shape
    assert pipeline.stage_count == 0


@pytest.mark.integration
@pytest.mark.pipeline
def test_duplicate_stage_names_need_labels():
    trim, _ = text_morphs()

    with pytest.raises(ConfigurationError, match="label="):
        create_pipeline("twice").pipe(trim).pipe(trim).build()

    pipeline = create_pipeline("twice").pipe(trim).pipe(trim, label="Trim again").build()
    assert pipeline.apply("  x  ") == "x"
    assert pipeline.fusion_report.groups[0].labels == ("Trim", "Trim again")


@pytest.mark.integration
@pytest.mark.pipeline
def test_builder_is_frozen_after_build():
    trim, upper = text_morphs()
    builder = create_pipeline("frozen").pipe(trim)
    builder.build()

    assert builder.frozen
    with pytest.raises(ConfigurationError):
        builder.pipe(upper)
    with pytest.raises(ConfigurationError):
        builder.build()


@pytest.mark.integration
@pytest.mark.pipeline
@pytest.mark.edge_case
def test_builder_rejects_non_morph_stages():
    with pytest.raises(ConfigurationError):
        create_pipeline("bad").pipe(lambda s, ctx: s)
    with pytest.raises(ConfigurationError):
        create_pipeline("")


@pytest.mark.integration
@pytest.mark.pipeline
def test_rshift_appends_stages():
    trim, upper = text_morphs()

    pipeline = (create_pipeline("ops") >> trim >> upper).build()

    assert pipeline.apply(" a ") == "A"


@pytest.mark.integration
@pytest.mark.pipeline
def test_map_and_when_stages():
    double = create_morph("Double", lambda x, ctx: x * 2)

    pipeline = (
        create_pipeline("helpers")
        .map(lambda x, ctx: x + 1)
        .when(lambda x, ctx: x > 5, double)
        .map(lambda x, ctx: x - 1, name="dec")
        .build()
    )

    assert [stage.label for stage in pipeline.declared_stages] == [
        "map_0",
        "when_Double",
        "dec",
    ]
    assert pipeline.apply(1) == 1
    assert pipeline.apply(10) == 21


@pytest.mark.integration
@pytest.mark.pipeline
def test_pipe_to_resolves_registered_morphs(registry):
    trim, upper = text_morphs()
    registry.define(trim)
    registry.define(upper)

    pipeline = create_pipeline("by-name", registry=registry).pipe_to("Trim").pipe_to("Upper").build()

    assert pipeline.apply(" a ") == "A"
    with pytest.raises(ConfigurationError):
        create_pipeline("missing", registry=registry).pipe_to("Nope")
    with pytest.raises(ConfigurationError):
        create_pipeline("no-registry").pipe_to("Trim")


@pytest.mark.integration
@pytest.mark.pipeline
def test_build_metadata_and_describe():
    trim, upper = text_morphs()

    pipeline = (
        create_pipeline("documented")
        .pipe(trim)
        .pipe(upper)
        .build(description="Normalize labels", category="text", tags=["label"])
    )

    info = pipeline.describe()
    assert pipeline.build_metadata.description == "Normalize labels"
    assert info["declared_stages"] == ["Trim", "Upper"]
    assert info["stages"] == ["fused[Trim+Upper]"]
    assert info["build_metadata"]["tags"] == ["label"]
    assert info["fusion"]["eliminated"] == 1


@pytest.mark.integration
@pytest.mark.pipeline
def test_debug_listing():
    trim, upper = text_morphs()
    cached = create_morph("Cached", lambda s, ctx: s, memoizable=True, cost=4)

    listing = create_pipeline("dbg").pipe(trim).pipe(upper).pipe(cached).build().debug()

    assert listing.splitlines()[0] == "Pipeline: dbg"
    assert "0. Trim (cost: 1) [fusible]" in listing
    assert "2. Cached (cost: 4) [memoized]" in listing
    assert "fused: Trim + Upper" in listing
    assert "Total cost: 6" in listing
    assert "Stages: 3 declared, 2 executed" in listing
