"""
Type definitions for the transcript analysis orchestrator.

Pydantic models for the request boundary, per-phase outputs and the final
Analysis artifact. Python attributes are snake_case; payloads use camelCase
(``to_payload``) and parsing accepts either spelling, since model output is not
consistent about key casing.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from transcript_analysis.common.timecodes import parse_timecode


class CamelModel(BaseModel):
    """Base model with camelCase aliases and lenient key handling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OutputFormat(str, Enum):
    BULLET_POINTS = "bullet_points"
    PARAGRAPH = "paragraph"
    TABLE = "table"


class OutputKind(str, Enum):
    SUMMARY = "summary"
    ACTION_ITEMS = "action_items"
    DECISIONS = "decisions"
    QUOTES = "quotes"


class AnalysisStrategy(str, Enum):
    BASIC = "basic"
    HYBRID = "hybrid"
    ADVANCED = "advanced"
    AUTO = "auto"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_FATAL = "failed_fatal"
    CANCELED = "canceled"


class PhaseKind(str, Enum):
    COMBINED = "combined"
    SECTIONS = "sections"
    OUTPUTS = "outputs"
    CASCADE = "cascade"
    CONSOLIDATION = "consolidation"


# Request boundary

class TranscriptSegment(CamelModel):
    """One timed utterance of the source transcript."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    start: float = Field(ge=0)
    end: float = Field(ge=0)
    text: str
    speaker: Optional[str] = None

    @model_validator(mode="after")
    def _check_range(self) -> "TranscriptSegment":
        if self.start > self.end:
            raise ValueError(f"segment {self.index} starts after it ends ({self.start} > {self.end})")
        return self


class Transcript(CamelModel):
    text: str = ""
    segments: List[TranscriptSegment] = Field(default_factory=list)

    @property
    def duration(self) -> float:
        return max((segment.end for segment in self.segments), default=0.0)


class TemplateSection(CamelModel):
    id: str = Field(min_length=1)
    name: str
    prompt: str = ""
    extract_evidence: bool = False
    output_format: OutputFormat = OutputFormat.BULLET_POINTS


class Template(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    sections: List[TemplateSection] = Field(default_factory=list)
    outputs: List[OutputKind] = Field(default_factory=list)

    @field_validator("outputs", mode="before")
    @classmethod
    def _normalize_outputs(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        normalized = []
        for item in value:
            if isinstance(item, str):
                item = item.strip()
                if not item.isupper():
                    item = _snake(item)
                item = item.replace("-", "_").lower().strip("_")
            if item not in normalized:
                normalized.append(item)
        return normalized

    def wants(self, kind: OutputKind) -> bool:
        return kind in self.outputs


class AnalysisRequest(CamelModel):
    transcript_id: str = Field(min_length=1)
    template_id: str = Field(min_length=1)
    transcript: Transcript
    template: Template
    strategy: AnalysisStrategy = AnalysisStrategy.AUTO
    run_evaluation: bool = True
    supplemental_material: Optional[str] = None


# Routing and strategy

class DeploymentProfile(CamelModel):
    deployment_id: str = Field(min_length=1)
    token_limit: int = Field(gt=0)
    model_id: Optional[str] = None


class DeploymentChoice(CamelModel):
    model_config = ConfigDict(frozen=True)

    deployment_id: str
    token_limit: int
    estimated_tokens: int
    utilization_percentage: float
    is_extended_context: bool


class StrategySelection(CamelModel):
    strategy: AnalysisStrategy
    was_auto_selected: bool
    requested_strategy: AnalysisStrategy
    estimated_tokens: int
    reasoning: str
    warning: Optional[str] = None


# Extracted entities

class TimestampedItem(CamelModel):
    """Shared fields for entities that cite a transcript time."""

    model_config = ConfigDict(frozen=True)

    timestamp: Optional[float] = None
    timestamp_verified: Optional[bool] = None
    source_phase: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Optional[float]:
        return parse_timecode(value)


def _first_reference(data: Any, single: str, plural: str) -> Any:
    # Models sometimes return a list of references where one is expected.
    if isinstance(data, dict) and not data.get(single) and not data.get(_snake(single)):
        refs = data.get(plural) or data.get(_snake(plural))
        if isinstance(refs, list) and refs:
            data = dict(data)
            data[single] = str(refs[0])
    return data


def _snake(name: str) -> str:
    return "".join("_" + ch.lower() if ch.isupper() else ch for ch in name)


class AgendaItem(TimestampedItem):
    id: str = ""
    topic: str
    context: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_title(cls, data: Any) -> Any:
        if isinstance(data, dict) and "topic" not in data and "title" in data:
            data = dict(data)
            data["topic"] = data["title"]
        return data


class Decision(TimestampedItem):
    id: str = ""
    decision: str
    context: Optional[str] = None
    agenda_item_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _single_agenda_reference(cls, data: Any) -> Any:
        return _first_reference(data, "agendaItemId", "agendaItemIds")


class ActionItem(TimestampedItem):
    id: str = ""
    task: str
    owner: Optional[str] = None
    deadline: Optional[str] = None
    decision_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_fields(cls, data: Any) -> Any:
        if isinstance(data, dict) and "task" not in data and "description" in data:
            data = dict(data)
            data["task"] = data["description"]
        return _first_reference(data, "decisionId", "decisionIds")


class Quote(TimestampedItem):
    id: str = ""
    text: str
    speaker: Optional[str] = None


class Evidence(CamelModel):
    model_config = ConfigDict(frozen=True)

    text: str
    start: Optional[float] = None
    end: Optional[float] = None
    relevance: Optional[float] = None
    verified: Optional[bool] = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def _coerce_times(cls, value: Any) -> Optional[float]:
        return parse_timecode(value)

    @field_validator("relevance", mode="before")
    @classmethod
    def _coerce_relevance(cls, value: Any) -> Optional[float]:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return min(1.0, max(0.0, float(value)))
        return None


class AnalysisSection(CamelModel):
    model_config = ConfigDict(frozen=True)

    section_id: str
    name: str = ""
    content: str = ""
    output_format: Optional[OutputFormat] = None
    evidence: Tuple[Evidence, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize_section(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not (data.get("sectionId") or data.get("section_id")) and data.get("id"):
            data["sectionId"] = data["id"]
        content = data.get("content")
        if isinstance(content, list):
            data["content"] = "\n".join(f"- {item}" for item in content if item)
        elif content is None:
            data["content"] = ""
        return data

    @field_validator("output_format", mode="before")
    @classmethod
    def _drop_unknown_format(cls, value: Any) -> Any:
        if isinstance(value, OutputFormat) or value in {fmt.value for fmt in OutputFormat}:
            return value
        return None


class AnalysisResults(CamelModel):
    model_config = ConfigDict(frozen=True)

    summary: Optional[str] = None
    sections: Tuple[AnalysisSection, ...] = ()
    agenda_items: Tuple[AgendaItem, ...] = ()
    decisions: Tuple[Decision, ...] = ()
    action_items: Tuple[ActionItem, ...] = ()
    quotes: Tuple[Quote, ...] = ()
    relationship_warnings: Tuple[str, ...] = ()


# Execution records

class PhaseResult(CamelModel):
    """Raw output and bookkeeping for one executed phase."""

    phase_id: str
    name: str
    kind: PhaseKind
    status: PhaseStatus = PhaseStatus.PENDING
    attempts: int = 0
    summary: Optional[str] = None
    sections: List[AnalysisSection] = Field(default_factory=list)
    agenda_items: List[AgendaItem] = Field(default_factory=list)
    decisions: List[Decision] = Field(default_factory=list)
    action_items: List[ActionItem] = Field(default_factory=list)
    quotes: List[Quote] = Field(default_factory=list)
    error: Optional[str] = None
    duration_seconds: float = 0.0
    is_placeholder: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == PhaseStatus.SUCCEEDED


class Evaluation(CamelModel):
    model_config = ConfigDict(frozen=True)

    quality_score: float = Field(ge=0, le=1)
    reasoning: str = ""
    improvements: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    revised: bool = False


class FailedPhase(CamelModel):
    model_config = ConfigDict(frozen=True)

    phase_id: str
    name: str
    error: str


class AnalysisMetadata(CamelModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["completed", "partial", "canceled"]
    was_auto_selected: bool
    requested_strategy: AnalysisStrategy
    strategy_reasoning: str
    strategy_warning: Optional[str] = None
    deployment: DeploymentChoice
    total_phases: int
    completed_phases: int
    failed_phases: Tuple[FailedPhase, ...] = ()
    model_calls: int = 0
    evaluation_status: Literal["not_requested", "completed", "failed", "skipped"] = "not_requested"
    evaluation_error: Optional[str] = None
    transcript_tokens: int
    duration_seconds: float
    started_at: str
    completed_at: str
    warnings: Tuple[str, ...] = ()


class Analysis(CamelModel):
    """Final, immutable analysis artifact."""

    model_config = ConfigDict(frozen=True)

    id: str
    transcript_id: str
    template_id: str
    analysis_strategy: AnalysisStrategy
    draft_results: Optional[AnalysisResults] = None
    evaluation: Optional[Evaluation] = None
    results: AnalysisResults
    metadata: AnalysisMetadata
