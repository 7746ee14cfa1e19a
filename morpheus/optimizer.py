"""
Pipeline Fusion Optimizer
=========================

Build-time pass that merges maximal runs of adjacent fusible stages into one
synthetic stage, removing per-stage dispatch overhead without changing results.

Algorithm (single left-to-right pass, O(n)):
1. Accumulate a run of consecutive stages that are each fusion candidates.
2. Close the run at the first non-candidate stage, or at the end of the list.
3. Replace each closed run of length >= 2 by one FusedMorph named
   ``fused[A+B]``, made unique against the declared stage labels.
4. Leave runs of length 1 untouched.

A stage is a fusion candidate when it is declared ``fusible`` and is neither
``memoizable`` (fusing it would hide its standalone cache) nor asynchronous
(fusion never crosses an async boundary).

FusedMorph stages are themselves not fusible, so one pass is enough.

Invariant: for every input, the fused stage list produces the same result as
the declared stage list applied in order.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .metadata import MorphMetadata
from .morph import Morph, Stage


def fused_name(labels: Iterable[str]) -> str:
    """Name of the synthetic stage replacing ``labels``: ``fused[A+B+C]``."""
    return f"fused[{'+'.join(labels)}]"


def is_fusion_candidate(morph: Morph) -> bool:
    """Whether ``morph`` may take part in a fused run."""
    return morph.fusible and not morph.memoizable and not morph.is_async


class FusedMorph(Morph):
    """
    Synthetic stage executing a run of fused stages back to back.

    Members run in declared order with no cache lookups in between. A member
    failure still raises a TransformError naming that member's stage label.

    Metadata: pure is the AND of member purity, cost is the sum of member
    costs, and the stage is neither fusible nor memoizable.
    """

    def __init__(self, members: Sequence[Stage], name: Optional[str] = None):
        self._members = tuple(members)
        super().__init__(
            name or fused_name(member.label for member in self._members),
            MorphMetadata(
                pure=all(member.morph.pure for member in self._members),
                fusible=False,
                cost=sum(member.cost for member in self._members),
                memoizable=False,
                is_async=False,
            ),
        )

    @property
    def members(self) -> Tuple[Stage, ...]:
        return self._members

    def _transform(self, input: Any, context: Any) -> Any:
        value = input
        for member in self._members:
            value = member.morph._call(value, context, member.label)
        return value

    def describe(self):
        info = super().describe()
        info["members"] = [member.label for member in self._members]
        return info


@dataclass(frozen=True)
class FusionGroup:
    """One fused run: where it started in the declared list and its labels."""

    start: int
    labels: Tuple[str, ...]

    @property
    def size(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class FusionReport:
    """Outcome of the fusion pass for one pipeline."""

    enabled: bool
    declared: int
    executed: int
    groups: Tuple[FusionGroup, ...] = ()

    @property
    def eliminated(self) -> int:
        """Number of stage dispatches removed per apply() call."""
        return self.declared - self.executed

    def to_dict(self):
        return {
            "enabled": self.enabled,
            "declared": self.declared,
            "executed": self.executed,
            "eliminated": self.eliminated,
            "groups": [
                {"start": group.start, "labels": list(group.labels)}
                for group in self.groups
            ],
        }


def fuse_stages(stages: Sequence[Stage]) -> Tuple[List[Stage], FusionReport]:
    """
    Run the fusion pass over ``stages``.

    Returns:
        (optimized stage list, FusionReport)
    """
    optimized: List[Stage] = []
    groups: List[FusionGroup] = []
    run: List[Stage] = []
    run_start = 0
    taken = {stage.label for stage in stages}

    def close_run():
        if len(run) >= 2:
            base = name = fused_name(s.label for s in run)
            suffix = run_start
            while name in taken:
                name = f"{base}@{suffix}"
                suffix += 1
            taken.add(name)
            fused = FusedMorph(run, name)
            optimized.append(Stage(fused.name, fused))
            groups.append(FusionGroup(run_start, tuple(s.label for s in run)))
        else:
            optimized.extend(run)
        run.clear()

    for index, stage in enumerate(stages):
        if is_fusion_candidate(stage.morph):
            if not run:
                run_start = index
            run.append(stage)
            continue
        close_run()
        optimized.append(stage)
    close_run()

    report = FusionReport(
        enabled=True,
        declared=len(stages),
        executed=len(optimized),
        groups=tuple(groups),
    )
    for group in groups:
        logging.debug(
            f"Fused {group.size} stages starting at {group.start}: {'+'.join(group.labels)}"
        )
    return optimized, report


def unfused_report(stages: Sequence[Stage]) -> FusionReport:
    """Report for a pipeline built with fusion disabled."""
    return FusionReport(enabled=False, declared=len(stages), executed=len(stages))
