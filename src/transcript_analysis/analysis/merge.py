"""Conversion of model payloads into phase results, and deterministic merging."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from transcript_analysis.analysis.phases import PhaseSpec
from transcript_analysis.models.types import (
    ActionItem,
    AgendaItem,
    AnalysisResults,
    AnalysisSection,
    Decision,
    OutputKind,
    PhaseResult,
    PhaseStatus,
    Quote,
    Template,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MISSING_SECTION_TEXT = "No content was produced for this section."

_TEXT_FIELDS = {
    AgendaItem: "topic",
    Decision: "decision",
    ActionItem: "task",
    Quote: "text",
}

_ENTITY_KEYS = {
    "agenda_items": ("agendaItems", "agenda_items"),
    "decisions": ("decisions",),
    "action_items": ("actionItems", "action_items"),
    "quotes": ("quotes",),
}


def _pick(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _parse_items(raw: Any, model_cls: Type[M], label: str) -> List[M]:
    """Validate each item on its own; malformed items are skipped, not fatal."""

    if not isinstance(raw, list):
        return []
    items: List[M] = []
    for i, entry in enumerate(raw):
        if isinstance(entry, str) and model_cls in _TEXT_FIELDS:
            entry = {_TEXT_FIELDS[model_cls]: entry}
        try:
            items.append(model_cls.model_validate(entry))
        except PydanticValidationError as e:
            logger.warning("Skipping malformed %s item %d from %s: %s", model_cls.__name__, i, label, e.errors()[:1])
    return items


def _parse_sections(raw: Any, label: str) -> List[AnalysisSection]:
    if isinstance(raw, dict):
        # {"sectionId": "content"} shorthand
        raw = [{"sectionId": key, "content": value} for key, value in raw.items()]
    return _parse_items(raw, AnalysisSection, label)


def _tag(items: List[M], source_phase: Optional[str]) -> Tuple[M, ...]:
    if not source_phase:
        return tuple(items)
    return tuple(
        item if getattr(item, "source_phase", None) else item.model_copy(update={"source_phase": source_phase})
        for item in items
    )


def results_from_payload(payload: Dict[str, Any], source_phase: Optional[str] = None) -> AnalysisResults:
    """Build AnalysisResults from a model payload, tagging entities with their phase."""

    label = source_phase or "payload"
    summary = payload.get("summary")
    return AnalysisResults(
        summary=summary.strip() if isinstance(summary, str) and summary.strip() else None,
        sections=tuple(_parse_sections(payload.get("sections"), label)),
        agenda_items=_tag(_parse_items(_pick(payload, *_ENTITY_KEYS["agenda_items"]), AgendaItem, label), source_phase),
        decisions=_tag(_parse_items(_pick(payload, *_ENTITY_KEYS["decisions"]), Decision, label), source_phase),
        action_items=_tag(_parse_items(_pick(payload, *_ENTITY_KEYS["action_items"]), ActionItem, label), source_phase),
        quotes=_tag(_parse_items(_pick(payload, *_ENTITY_KEYS["quotes"]), Quote, label), source_phase),
    )


def phase_result_from_payload(
    spec: PhaseSpec,
    payload: Dict[str, Any],
    attempts: int,
    duration_seconds: float,
) -> PhaseResult:
    results = results_from_payload(payload, source_phase=spec.phase_id)
    sections = list(results.sections)
    if spec.section_ids:
        # A phase scoped to a section group only contributes those sections.
        owned = [section for section in sections if section.section_id in spec.section_ids]
        if len(owned) != len(sections):
            logger.info("Dropping %d sections outside phase %s", len(sections) - len(owned), spec.phase_id)
        sections = owned
    return PhaseResult(
        phase_id=spec.phase_id,
        name=spec.name,
        kind=spec.kind,
        status=PhaseStatus.SUCCEEDED,
        attempts=attempts,
        summary=results.summary,
        sections=sections,
        agenda_items=list(results.agenda_items),
        decisions=list(results.decisions),
        action_items=list(results.action_items),
        quotes=list(results.quotes),
        duration_seconds=duration_seconds,
    )


def phase_to_results(result: PhaseResult) -> AnalysisResults:
    """View a single phase's output as AnalysisResults."""

    return AnalysisResults(
        summary=result.summary,
        sections=tuple(result.sections),
        agenda_items=tuple(result.agenda_items),
        decisions=tuple(result.decisions),
        action_items=tuple(result.action_items),
        quotes=tuple(result.quotes),
    )


def placeholder_result(
    spec: PhaseSpec,
    error: str,
    attempts: int = 0,
    status: PhaseStatus = PhaseStatus.FAILED_FATAL,
    duration_seconds: float = 0.0,
) -> PhaseResult:
    """Empty stand-in for a phase that did not produce output."""

    return PhaseResult(
        phase_id=spec.phase_id,
        name=spec.name,
        kind=spec.kind,
        status=status,
        attempts=attempts,
        error=error,
        duration_seconds=duration_seconds,
        is_placeholder=True,
    )


def _section_key(section: AnalysisSection, template: Template) -> Optional[str]:
    ids = {s.id for s in template.sections}
    if section.section_id in ids:
        return section.section_id
    for template_section in template.sections:
        if section.section_id.lower() == template_section.name.lower() or (
            section.name and section.name.lower() == template_section.name.lower()
        ):
            return template_section.id
    return None


def prune_results(results: AnalysisResults, template: Template) -> AnalysisResults:
    """
    Shape results to the template.

    Sections follow template order (duplicates merged, unknown ids dropped, missing
    sections filled with a placeholder); output kinds the template did not request
    are removed. Agenda items are kept whenever decisions or action items are.
    """
    by_id: Dict[str, List[AnalysisSection]] = {}
    for section in results.sections:
        key = _section_key(section, template)
        if key is None:
            logger.info("Dropping section %r not present in template", section.section_id)
            continue
        by_id.setdefault(key, []).append(section)

    sections = []
    for template_section in template.sections:
        parts = by_id.get(template_section.id, [])
        content = "\n\n".join(part.content for part in parts if part.content.strip())
        evidence = tuple(ev for part in parts for ev in part.evidence) if template_section.extract_evidence else ()
        sections.append(
            AnalysisSection(
                section_id=template_section.id,
                name=template_section.name,
                content=content or MISSING_SECTION_TEXT,
                output_format=template_section.output_format,
                evidence=evidence,
            )
        )

    wants_decisions = template.wants(OutputKind.DECISIONS)
    wants_actions = template.wants(OutputKind.ACTION_ITEMS)
    return AnalysisResults(
        summary=results.summary if template.wants(OutputKind.SUMMARY) else None,
        sections=tuple(sections),
        agenda_items=results.agenda_items if (wants_decisions or wants_actions) else (),
        decisions=results.decisions if wants_decisions else (),
        action_items=results.action_items if wants_actions else (),
        quotes=results.quotes if template.wants(OutputKind.QUOTES) else (),
        relationship_warnings=results.relationship_warnings,
    )


def merge_phase_results(phase_results: Iterable[PhaseResult], template: Template) -> AnalysisResults:
    """
    Deterministically merge phase outputs without a model call.

    Used for runs that stop before consolidation. Entities are concatenated in
    phase order and section content is joined per template section.
    """
    summaries: List[str] = []
    sections: List[AnalysisSection] = []
    agenda_items: List[AgendaItem] = []
    decisions: List[Decision] = []
    action_items: List[ActionItem] = []
    quotes: List[Quote] = []
    for result in phase_results:
        if result.is_placeholder or not result.succeeded:
            continue
        if result.summary:
            summaries.append(result.summary)
        sections.extend(result.sections)
        agenda_items.extend(result.agenda_items)
        decisions.extend(result.decisions)
        action_items.extend(result.action_items)
        quotes.extend(result.quotes)
    merged = AnalysisResults(
        summary="\n\n".join(summaries) or None,
        sections=tuple(sections),
        agenda_items=tuple(agenda_items),
        decisions=tuple(decisions),
        action_items=tuple(action_items),
        quotes=tuple(quotes),
    )
    return prune_results(merged, template)
