"""Self-evaluation pass: scores a draft analysis and optionally revises it."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from transcript_analysis.analysis.context import ContextAssembler
from transcript_analysis.analysis.executor import PhaseExecutor
from transcript_analysis.analysis.linker import link_relationships
from transcript_analysis.analysis.merge import MISSING_SECTION_TEXT, prune_results, results_from_payload
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import ModelError
from transcript_analysis.models.types import AnalysisResults, Evaluation, Template, TranscriptSegment

logger = logging.getLogger(__name__)

EVALUATION_LABEL = "self-evaluation"

_ENTITY_FIELDS = ("agenda_items", "decisions", "action_items", "quotes")


class EvaluationOutcome(BaseModel):
    evaluation: Evaluation
    revised_results: Optional[AnalysisResults] = None


def normalize_quality_score(value: Any) -> float:
    """
    Map a model-reported quality score onto [0, 1].

    Scores above 1 are read as a 0-10 scale.

    Raises:
        ModelError: If the score is missing or not a number
    """
    if isinstance(value, bool) or value is None:
        raise ModelError.fatal("Evaluation response has no qualityScore")
    try:
        score = float(value)
    except (TypeError, ValueError) as e:
        raise ModelError.fatal(f"Evaluation qualityScore is not a number: {value!r}") from e
    if score > 1:
        score = score / 10
    return min(1.0, max(0.0, score))


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _signature(results: AnalysisResults) -> Dict[str, Any]:
    exclude: Dict[str, Any] = {"relationship_warnings": True}
    for field in _ENTITY_FIELDS:
        exclude[field] = {"__all__": {"source_phase", "timestamp_verified"}}
    return results.model_dump(mode="json", exclude=exclude)


def _loses_content(candidate: AnalysisResults, draft: AnalysisResults) -> bool:
    # A revision that blanks out sections the draft had filled is not an improvement.
    draft_content = {section.section_id: section.content for section in draft.sections}
    for section in candidate.sections:
        previous = draft_content.get(section.section_id, MISSING_SECTION_TEXT)
        if previous != MISSING_SECTION_TEXT and section.content == MISSING_SECTION_TEXT:
            return True
    return False


class SelfEvaluator:
    """Runs the optional quality pass over a draft analysis."""

    def __init__(
        self,
        executor: PhaseExecutor,
        assembler: ContextAssembler,
        template: Template,
        segments: Sequence[TranscriptSegment],
        settings: AnalysisSettings,
    ):
        self.executor = executor
        self.assembler = assembler
        self.template = template
        self.segments = segments
        self.settings = settings

    async def evaluate(self, draft: AnalysisResults) -> EvaluationOutcome:
        """
        Score ``draft`` and return a revision when the model proposes a different one.

        Raises:
            ModelError: If the evaluation call fails or returns an unusable payload
        """
        prompt = self.assembler.evaluation_prompt(draft)
        payload = await self.executor.call_model(prompt, EVALUATION_LABEL)

        score = normalize_quality_score(payload.get("qualityScore", payload.get("quality_score")))
        revised_raw = payload.get("revisedResults") or payload.get("revised_results")

        revised: Optional[AnalysisResults] = None
        if isinstance(revised_raw, dict):
            candidate = link_relationships(
                prune_results(results_from_payload(revised_raw, source_phase=EVALUATION_LABEL), self.template),
                self.segments,
                similarity_threshold=self.settings.link_similarity_threshold,
                timestamp_tolerance=self.settings.timestamp_tolerance_seconds,
            )
            if _loses_content(candidate, draft):
                logger.warning("Ignoring evaluation revision that drops section content")
            elif _signature(candidate) != _signature(draft):
                revised = candidate

        evaluation = Evaluation(
            quality_score=score,
            reasoning=str(payload.get("reasoning") or "").strip(),
            improvements=_strings(payload.get("improvements")),
            warnings=_strings(payload.get("warnings")),
            revised=revised is not None,
        )
        logger.info(
            "Self-evaluation scored %.2f (%s)",
            evaluation.quality_score, "revised" if evaluation.revised else "no revision",
        )
        return EvaluationOutcome(evaluation=evaluation, revised_results=revised)
