"""
Prompt context assembly for every phase kind.

The timestamped transcript is rendered once per request. Each phase then gets
the slice of context it needs: the full transcript or a window, its own section
instructions, the requested outputs and (for cascading phases) a digest of the
earlier phases.
"""

from __future__ import annotations

import json
import logging
import re
from functools import reduce
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, ConfigDict, Field

from transcript_analysis.analysis.phases import PhaseSpec
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.timecodes import format_marker
from transcript_analysis.common.token_utils import estimate_tokens
from transcript_analysis.models.schemas import EVALUATION_SCHEMA, schema_for_phase, scoped_schema
from transcript_analysis.models.types import (
    AnalysisRequest,
    AnalysisResults,
    OutputFormat,
    OutputKind,
    PhaseKind,
    PhaseResult,
    TemplateSection,
    TranscriptSegment,
)

logger = logging.getLogger(__name__)

SUPPLEMENTAL_START = "=== SUPPLEMENTAL MATERIAL (reference only, not part of the transcript) ==="
SUPPLEMENTAL_END = "=== END SUPPLEMENTAL MATERIAL ==="

TIMESTAMP_INSTRUCTION = (
    "Timestamps: every transcript line starts with a [mm:ss] or [hh:mm:ss] marker. "
    "Report each timestamp as seconds from the start of the recording, taken from the "
    "nearest marker at or before the point where the item is discussed. Only transcript "
    "markers are valid sources; never cite times from supplemental material."
)

_BRACKETED_MARKER_RE = re.compile(r"\[(\d{1,2}(?::\d{2}){1,2})\]")

_FORMAT_LABELS = {
    OutputFormat.BULLET_POINTS: "bullet points",
    OutputFormat.PARAGRAPH: "paragraphs",
    OutputFormat.TABLE: "a markdown table",
}

COMBINED_TEMPLATE = """PHASE: {phase_id}
You are an expert meeting analyst producing a structured report from a transcript.

{timestamp_instruction}

Template sections (write one entry per section, using its sectionId):
{section_instructions}

Structured outputs:
{output_instructions}
{supplemental}
Transcript:
{transcript}
"""

SECTIONS_TEMPLATE = """PHASE: {phase_id}
You are an expert meeting analyst. Write the content of each template section below.
Do not extract agenda items, decisions, action items or quotes in this pass.

{timestamp_instruction}

Template sections (write one entry per section, using its sectionId):
{section_instructions}
{supplemental}
Transcript:
{transcript}
"""

OUTPUTS_TEMPLATE = """PHASE: {phase_id}
You are an expert meeting analyst. Extract the structured outputs listed below.
Do not write section content in this pass.

{timestamp_instruction}

Structured outputs:
{output_instructions}
{supplemental}
Transcript:
{transcript}
"""

CASCADE_TEMPLATE = """PHASE: {phase_id}
You are an expert meeting analyst building a long report one group of template sections at a time.
This pass covers {scope}.
Write only the sections listed below. Build on the earlier findings instead of repeating them.

{timestamp_instruction}

Findings from earlier passes:
{digest}

Template sections for this pass (write one entry per section, using its sectionId):
{section_instructions}

Structured outputs:
{output_instructions}
{supplemental}
{transcript_label}:
{transcript}
"""

CONSOLIDATION_TEMPLATE = """PHASE: {phase_id}
You are an expert meeting analyst. Merge the partial analyses below into one final report.
- Every template section must appear exactly once, combining the partial content in transcript order.
- Remove duplicate agenda items, decisions, action items and quotes; keep the earliest timestamp.
- Set agendaItemId on decisions and decisionId on action items only when they clearly correspond.
- Keep timestamps exactly as given in the partial analyses; do not invent new ones.
Phases that failed and produced no content: {failed_phases}

Template sections:
{section_instructions}

Structured outputs:
{output_instructions}

Partial analyses (JSON):
{partials}
"""

EVALUATION_TEMPLATE = """PHASE: {phase_id}
You are reviewing a draft meeting analysis for accuracy and completeness against the transcript.
Score its quality from 0.0 to 1.0, explain the score, list concrete improvements and warnings.
If the draft can be materially improved, return the full corrected report as revisedResults
(same shape as the draft, keeping ids and timestamps that are correct); otherwise set it to null.

{timestamp_instruction}

Template sections:
{section_instructions}

Draft analysis (JSON):
{draft}

Transcript:
{transcript}
"""


class PhasePrompt(BaseModel):
    """
    A fully assembled prompt for one model call.

    ``section_ids``, ``evidence_section_ids``, ``output_formats`` and ``outputs``
    describe what this call is responsible for, which for hybrid and advanced
    phases is a subset of the template.
    """

    model_config = ConfigDict(frozen=True)

    phase_id: str
    text: str
    schema_hint: Dict[str, Any] = Field(default_factory=dict)
    section_ids: Tuple[str, ...] = ()
    evidence_section_ids: Tuple[str, ...] = ()
    output_formats: Dict[str, OutputFormat] = Field(default_factory=dict)
    outputs: Tuple[OutputKind, ...] = ()
    estimated_tokens: int = 0


class PhaseDigest(BaseModel):
    """Condensed, append-only record of what earlier phases found."""

    model_config = ConfigDict(frozen=True)

    entries: Tuple[str, ...] = ()

    def render(self, max_chars: int) -> str:
        if not self.entries:
            return "(none yet; this is the first pass)"
        budget = max(200, max_chars // len(self.entries))
        rendered = []
        for entry in self.entries:
            rendered.append(entry if len(entry) <= budget else entry[: budget - 3] + "...")
        return "\n\n".join(rendered)


def _shorten(text: str, limit: int = 240) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


def accumulate_digest(digest: PhaseDigest, result: PhaseResult) -> PhaseDigest:
    """Fold one phase result into the digest, returning a new digest."""

    if result.is_placeholder or not result.succeeded:
        entry = f"{result.name}: unavailable ({result.error or 'phase failed'})"
        return PhaseDigest(entries=digest.entries + (entry,))

    lines = [f"{result.name}:"]
    if result.summary:
        lines.append(f"  Summary: {_shorten(result.summary)}")
    for section in result.sections:
        if section.content:
            lines.append(f"  {section.name or section.section_id}: {_shorten(section.content, 160)}")
    for item in result.agenda_items:
        lines.append(f"  Agenda {item.id}: {_shorten(item.topic, 120)}")
    for decision in result.decisions:
        lines.append(f"  Decision {decision.id}: {_shorten(decision.decision, 120)}")
    for action in result.action_items:
        owner = f" ({action.owner})" if action.owner else ""
        lines.append(f"  Action {action.id}{owner}: {_shorten(action.task, 120)}")
    return PhaseDigest(entries=digest.entries + ("\n".join(lines),))


def build_digest(results: Iterable[PhaseResult]) -> PhaseDigest:
    return reduce(accumulate_digest, results, PhaseDigest())


def build_timestamped_transcript(segments: Sequence[TranscriptSegment]) -> str:
    """Render segments as ``[mm:ss] Speaker: text`` lines."""

    lines = []
    for segment in segments:
        text = " ".join(segment.text.split())
        if segment.speaker:
            lines.append(f"{format_marker(segment.start)} {segment.speaker}: {text}")
        else:
            lines.append(f"{format_marker(segment.start)} {text}")
    return "\n".join(lines)


def split_windows(segments: Sequence[TranscriptSegment], count: int) -> List[List[TranscriptSegment]]:
    """
    Split segments into ``count`` contiguous windows in transcript order.

    Every window holds at least one segment; with fewer segments than windows,
    consecutive windows share a segment.
    """
    total = len(segments)
    if total == 0:
        raise ValueError("Cannot window an empty transcript")
    windows = []
    for index in range(count):
        start = index * total // count
        end = (index + 1) * total // count
        if end <= start:
            end = start + 1
        windows.append(list(segments[start:end]))
    return windows


def neutralize_markers(text: str) -> str:
    """Rewrite ``[mm:ss]`` markers so supplemental text cannot pass for a transcript citation."""

    return _BRACKETED_MARKER_RE.sub(r"(\1)", text)


def supplemental_block(material: Optional[str]) -> str:
    if not material or not material.strip():
        return ""
    return f"\n{SUPPLEMENTAL_START}\n{neutralize_markers(material.strip())}\n{SUPPLEMENTAL_END}\n"


def section_instructions(sections: Sequence[TemplateSection]) -> str:
    lines = []
    for section in sections:
        fmt = _FORMAT_LABELS[section.output_format]
        evidence = "; include evidence quotes with start/end seconds" if section.extract_evidence else ""
        prompt = section.prompt.strip() or f"Summarize {section.name}."
        lines.append(f"- [section:{section.id}] {section.name} (format: {fmt}{evidence}): {prompt}")
    return "\n".join(lines)


def output_instructions(outputs: Sequence[OutputKind]) -> str:
    lines = []
    if OutputKind.SUMMARY in outputs:
        lines.append("- summary: a concise overall summary of the meeting")
    if OutputKind.DECISIONS in outputs or OutputKind.ACTION_ITEMS in outputs:
        lines.append("- agendaItems: the topics discussed, with id, topic and timestamp")
    if OutputKind.DECISIONS in outputs:
        lines.append("- decisions: each decision made, with id, timestamp and agendaItemId when known")
    if OutputKind.ACTION_ITEMS in outputs:
        lines.append("- actionItems: each commitment, with id, task, owner, deadline, timestamp and decisionId when known")
    if OutputKind.QUOTES in outputs:
        lines.append("- quotes: notable verbatim quotes, with speaker and timestamp")
    if not lines:
        return "- none requested; return empty arrays"
    lines.append("Return empty arrays for output kinds not listed above.")
    return "\n".join(lines)


def _render(template: str, **values: Any) -> str:
    return PromptTemplate.from_template(template).format(**values)


class ContextAssembler:
    """Builds phase prompts for one analysis request."""

    def __init__(self, request: AnalysisRequest, settings: AnalysisSettings):
        self.request = request
        self.settings = settings
        self.segments = list(request.transcript.segments)
        self.timestamped_transcript = build_timestamped_transcript(self.segments)
        self._template_sections = {section.id: section for section in request.template.sections}
        self._all_outputs = tuple(request.template.outputs)
        self._section_ids = tuple(self._template_sections)
        self._sections = section_instructions(request.template.sections)
        self._outputs = output_instructions(self._all_outputs)
        self._supplemental = supplemental_block(request.supplemental_material)

    def transcript_tokens(self) -> int:
        return estimate_tokens(self.timestamped_transcript)

    def combined_context_tokens(self) -> int:
        """Estimate for transcript, template instructions and supplemental material."""

        return estimate_tokens(self.timestamped_transcript + self._sections + self._outputs + self._supplemental)

    def build(self, spec: PhaseSpec, prior: Mapping[str, PhaseResult]) -> PhasePrompt:
        """
        Assemble the prompt for ``spec``.

        Args:
            spec: Phase to build the prompt for
            prior: Settled results of every upstream phase, in plan order

        Returns:
            PhasePrompt with text, response schema, the sections and outputs
            the phase owns, and a token estimate
        """

        section_ids = self._section_ids
        outputs = self._all_outputs
        schema = schema_for_phase(spec.kind)

        if spec.kind == PhaseKind.COMBINED:
            text = _render(
                COMBINED_TEMPLATE,
                phase_id=spec.phase_id,
                timestamp_instruction=TIMESTAMP_INSTRUCTION,
                section_instructions=self._sections,
                output_instructions=self._outputs,
                supplemental=self._supplemental,
                transcript=self.timestamped_transcript,
            )
        elif spec.kind == PhaseKind.SECTIONS:
            outputs = ()
            text = _render(
                SECTIONS_TEMPLATE,
                phase_id=spec.phase_id,
                timestamp_instruction=TIMESTAMP_INSTRUCTION,
                section_instructions=self._sections,
                supplemental=self._supplemental,
                transcript=self.timestamped_transcript,
            )
        elif spec.kind == PhaseKind.OUTPUTS:
            section_ids = ()
            text = _render(
                OUTPUTS_TEMPLATE,
                phase_id=spec.phase_id,
                timestamp_instruction=TIMESTAMP_INSTRUCTION,
                output_instructions=self._outputs,
                supplemental=self._supplemental,
                transcript=self.timestamped_transcript,
            )
        elif spec.kind == PhaseKind.CASCADE:
            section_ids = spec.section_ids
            outputs = self._cascade_outputs(spec)
            schema = scoped_schema(schema_for_phase(PhaseKind.COMBINED if outputs else PhaseKind.SECTIONS), section_ids)
            text = self._cascade_text(spec, section_ids, outputs, prior)
        elif spec.kind == PhaseKind.CONSOLIDATION:
            text = self._consolidation_text(spec, prior)
        else:
            raise ValueError(f"Unsupported phase kind: {spec.kind}")

        return self._prompt(spec.phase_id, text, schema, section_ids, outputs)

    def _prompt(
        self,
        phase_id: str,
        text: str,
        schema: Dict[str, Any],
        section_ids: Sequence[str],
        outputs: Sequence[OutputKind],
    ) -> PhasePrompt:
        sections = [self._template_sections[section_id] for section_id in section_ids]
        return PhasePrompt(
            phase_id=phase_id,
            text=text,
            schema_hint=schema,
            section_ids=tuple(section_ids),
            evidence_section_ids=tuple(section.id for section in sections if section.extract_evidence),
            output_formats={section.id: section.output_format for section in sections},
            outputs=tuple(outputs),
            estimated_tokens=estimate_tokens(text),
        )

    def _cascade_outputs(self, spec: PhaseSpec) -> Tuple[OutputKind, ...]:
        # Structured outputs are extracted once, by the first section group.
        return self._all_outputs if spec.group_index == 0 else ()

    def _cascade_text(
        self,
        spec: PhaseSpec,
        section_ids: Sequence[str],
        outputs: Sequence[OutputKind],
        prior: Mapping[str, PhaseResult],
    ) -> str:
        count = spec.window_count or 1
        index = spec.window_index or 0
        if count > 1:
            window = split_windows(self.segments, count)[index]
            scope = (
                f"part {index + 1} of {count} of the transcript, from "
                f"{format_marker(window[0].start)} to {format_marker(window[-1].end)}; "
                "other passes cover the remaining parts for the same sections"
            )
            transcript_label = f"Transcript part {index + 1}"
            transcript = build_timestamped_transcript(window)
        else:
            scope = "the whole transcript"
            transcript_label = "Transcript"
            transcript = self.timestamped_transcript

        digest = build_digest(prior.values())
        return _render(
            CASCADE_TEMPLATE,
            phase_id=spec.phase_id,
            scope=scope,
            timestamp_instruction=TIMESTAMP_INSTRUCTION,
            digest=digest.render(self.settings.digest_max_chars),
            section_instructions=section_instructions([self._template_sections[sid] for sid in section_ids]),
            output_instructions=output_instructions(outputs),
            supplemental=self._supplemental,
            transcript_label=transcript_label,
            transcript=transcript,
        )

    def _consolidation_text(self, spec: PhaseSpec, prior: Mapping[str, PhaseResult]) -> str:
        partials = []
        failed = []
        for dep in spec.depends_on:
            result = prior[dep]
            if result.is_placeholder or not result.succeeded:
                failed.append(f"{result.name} ({result.error or 'failed'})")
                continue
            partials.append(
                {
                    "phase": result.name,
                    "result": result.model_dump(
                        mode="json",
                        by_alias=True,
                        exclude_none=True,
                        include={"summary", "sections", "agenda_items", "decisions", "action_items", "quotes"},
                    ),
                }
            )
        return _render(
            CONSOLIDATION_TEMPLATE,
            phase_id=spec.phase_id,
            failed_phases=", ".join(failed) if failed else "none",
            section_instructions=self._sections,
            output_instructions=self._outputs,
            partials=json.dumps(partials, ensure_ascii=False, indent=1),
        )

    def evaluation_prompt(self, draft: AnalysisResults) -> PhasePrompt:
        transcript = self.timestamped_transcript
        limit = self.settings.evaluation_transcript_max_chars
        if len(transcript) > limit:
            transcript = transcript[:limit] + "\n[... transcript truncated ...]"
        text = _render(
            EVALUATION_TEMPLATE,
            phase_id="self-evaluation",
            timestamp_instruction=TIMESTAMP_INSTRUCTION,
            section_instructions=self._sections,
            draft=json.dumps(draft.to_payload(), ensure_ascii=False, indent=1),
            transcript=transcript,
        )
        return self._prompt("self-evaluation", text, EVALUATION_SCHEMA, self._section_ids, self._all_outputs)
