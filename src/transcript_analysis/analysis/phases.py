"""
Phase plans: the task graph each strategy executes.

A plan is a fixed list of phases with dependency edges. Its size is known before
any call is made, so progress totals never change mid-run.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.models.types import AnalysisStrategy, PhaseKind, Template


class PhaseSpec(BaseModel):
    """One node of a phase plan."""

    model_config = ConfigDict(frozen=True)

    phase_id: str
    name: str
    kind: PhaseKind
    depends_on: Tuple[str, ...] = ()
    is_final: bool = False
    section_ids: Tuple[str, ...] = ()
    group_index: Optional[int] = None
    window_index: Optional[int] = None
    window_count: Optional[int] = None


class PhasePlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: AnalysisStrategy
    phases: Tuple[PhaseSpec, ...]

    @property
    def total_units(self) -> int:
        return len(self.phases)

    @property
    def final_phase(self) -> PhaseSpec:
        return next(phase for phase in self.phases if phase.is_final)

    def get(self, phase_id: str) -> PhaseSpec:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        raise KeyError(phase_id)

    def execution_levels(self) -> List[List[PhaseSpec]]:
        """
        Group phases into levels; phases within a level may run concurrently.

        Raises:
            ValueError: If a dependency is unknown or the graph has a cycle
        """
        known = {phase.phase_id for phase in self.phases}
        remaining: Dict[str, PhaseSpec] = {}
        for phase in self.phases:
            missing = [dep for dep in phase.depends_on if dep not in known]
            if missing:
                raise ValueError(f"Phase {phase.phase_id} depends on unknown phases: {missing}")
            remaining[phase.phase_id] = phase

        done: set = set()
        levels: List[List[PhaseSpec]] = []
        while remaining:
            level = [phase for phase in remaining.values() if all(dep in done for dep in phase.depends_on)]
            if not level:
                raise ValueError(f"Phase plan has a dependency cycle among {sorted(remaining)}")
            levels.append(level)
            for phase in level:
                done.add(phase.phase_id)
                del remaining[phase.phase_id]
        return levels

    def validate_plan(self) -> None:
        levels = self.execution_levels()
        finals = [phase for phase in self.phases if phase.is_final]
        if len(finals) != 1:
            raise ValueError(f"Phase plan must have exactly one final phase, found {len(finals)}")
        if levels[-1] != finals:
            raise ValueError("Final phase must run alone after every other phase")


def cascade_assignments(section_ids: Sequence[str], slots: int) -> List[Tuple[int, Tuple[str, ...], int, int]]:
    """
    Spread template sections over ``slots`` cascading phases.

    Sections are split in template order into ``min(len(section_ids), slots)``
    contiguous groups. Spare slots go to the groups in order; a group holding
    several slots splits the transcript into that many windows, one per slot.

    Returns:
        One ``(group_index, section_ids, window_index, window_count)`` per slot
    """
    total = len(section_ids)
    if total == 0:
        raise ValueError("An advanced plan needs at least one template section")
    group_count = min(total, slots)
    groups = [
        tuple(section_ids[index * total // group_count:(index + 1) * total // group_count])
        for index in range(group_count)
    ]
    slots_per_group = [0] * group_count
    for slot in range(slots):
        slots_per_group[slot * group_count // slots] += 1

    assignments = []
    for group_index, (group, windows) in enumerate(zip(groups, slots_per_group)):
        for window_index in range(windows):
            assignments.append((group_index, group, window_index, windows))
    return assignments


def _advanced_phases(template: Template, settings: AnalysisSettings) -> Tuple[PhaseSpec, ...]:
    names = {section.id: section.name for section in template.sections}
    assignments = cascade_assignments([section.id for section in template.sections], settings.advanced_phase_count)

    phases: List[PhaseSpec] = []
    previous_group: List[str] = []
    current_group: List[str] = []
    current_index = 0
    for number, (group_index, section_ids, window_index, window_count) in enumerate(assignments, start=1):
        if group_index != current_index:
            previous_group, current_group = current_group, []
            current_index = group_index
        name = ", ".join(names[section_id] for section_id in section_ids)
        if window_count > 1:
            name = f"{name} (part {window_index + 1} of {window_count})"
        phase_id = f"advanced-phase-{number}"
        phases.append(
            PhaseSpec(
                phase_id=phase_id,
                name=name,
                kind=PhaseKind.CASCADE,
                depends_on=tuple(previous_group),
                section_ids=section_ids,
                group_index=group_index,
                window_index=window_index,
                window_count=window_count,
            )
        )
        current_group.append(phase_id)

    consolidation = PhaseSpec(
        phase_id="advanced-consolidation",
        name="Consolidation",
        kind=PhaseKind.CONSOLIDATION,
        depends_on=tuple(phase.phase_id for phase in phases),
        is_final=True,
    )
    return tuple(phases) + (consolidation,)


def build_phase_plan(
    strategy: AnalysisStrategy,
    settings: AnalysisSettings,
    template: Optional[Template] = None,
) -> PhasePlan:
    """
    Build the task graph for a concrete strategy.

    basic: one combined call. hybrid: section and output passes in parallel, then
    consolidation. advanced: cascading passes over groups of template sections,
    each group after the first seeing a digest of the groups before it, then
    consolidation. Passes over the same group cover different transcript windows
    and run concurrently.

    Raises:
        ValueError: For ``auto``, or for an advanced plan without template sections
    """
    if strategy == AnalysisStrategy.BASIC:
        phases: Tuple[PhaseSpec, ...] = (
            PhaseSpec(phase_id="basic-combined", name="Full analysis", kind=PhaseKind.COMBINED, is_final=True),
        )
    elif strategy == AnalysisStrategy.HYBRID:
        phases = (
            PhaseSpec(phase_id="hybrid-sections", name="Template sections", kind=PhaseKind.SECTIONS),
            PhaseSpec(phase_id="hybrid-outputs", name="Structured outputs", kind=PhaseKind.OUTPUTS),
            PhaseSpec(
                phase_id="hybrid-consolidation",
                name="Consolidation",
                kind=PhaseKind.CONSOLIDATION,
                depends_on=("hybrid-sections", "hybrid-outputs"),
                is_final=True,
            ),
        )
    elif strategy == AnalysisStrategy.ADVANCED:
        if template is None:
            raise ValueError("An advanced plan is built from the template sections")
        phases = _advanced_phases(template, settings)
    else:
        raise ValueError(f"Cannot build a phase plan for unresolved strategy {strategy.value}")

    plan = PhasePlan(strategy=strategy, phases=phases)
    plan.validate_plan()
    return plan
