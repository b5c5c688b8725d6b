"""
Analysis orchestrator: the request-level workflow.

validate -> choose strategy -> route deployment -> run phase plan ->
link relationships -> optional self-evaluation -> immutable Analysis.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from transcript_analysis.analysis.context import ContextAssembler
from transcript_analysis.analysis.evaluator import EvaluationOutcome, SelfEvaluator
from transcript_analysis.analysis.executor import (
    CancellationToken,
    ModelClient,
    PhaseExecutor,
    ProgressCallback,
)
from transcript_analysis.analysis.linker import link_relationships
from transcript_analysis.analysis.merge import merge_phase_results, phase_to_results, prune_results
from transcript_analysis.analysis.phases import build_phase_plan
from transcript_analysis.analysis.strategy import select_strategy
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import AnalysisCancelledError, AnalysisError, ValidationError
from transcript_analysis.common.json_utils import validate_request_payload
from transcript_analysis.common.token_utils import DeploymentCatalog, StaticDeploymentCatalog, select_deployment
from transcript_analysis.models.types import (
    Analysis,
    AnalysisMetadata,
    AnalysisRequest,
    AnalysisResults,
    FailedPhase,
)

logger = logging.getLogger(__name__)


def parse_analysis_request(payload: Any) -> AnalysisRequest:
    """
    Validate a raw request payload and build an AnalysisRequest.

    Args:
        payload: Request dict with camelCase or snake_case keys

    Returns:
        Parsed request

    Raises:
        ValidationError: If required fields are missing, the transcript has no
            segments or the template has no sections
    """
    errors = validate_request_payload(payload)
    if errors:
        raise ValidationError(errors)
    try:
        return AnalysisRequest.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
        ) from e


def _check_request(request: AnalysisRequest) -> None:
    errors = []
    if not request.transcript.segments:
        errors.append("Transcript must contain at least one segment")
    if not request.template.sections:
        errors.append("Template must contain at least one section")
    if errors:
        raise ValidationError(errors)


class AnalysisOrchestrator:
    """Runs analysis requests; holds no per-request state."""

    def __init__(
        self,
        model_client: ModelClient,
        deployment_catalog: Optional[DeploymentCatalog] = None,
        settings: Optional[AnalysisSettings] = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.model_client = model_client
        self.settings = settings or AnalysisSettings.from_env()
        self.deployment_catalog = deployment_catalog or StaticDeploymentCatalog(self.settings.deployments)
        self._sleep = sleep

    def _link(self, results: AnalysisResults, request: AnalysisRequest) -> AnalysisResults:
        return link_relationships(
            results,
            request.transcript.segments,
            similarity_threshold=self.settings.link_similarity_threshold,
            timestamp_tolerance=self.settings.timestamp_tolerance_seconds,
        )

    async def analyze(
        self,
        request: AnalysisRequest,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Analysis:
        """
        Analyze one transcript against one template.

        Args:
            request: Validated analysis request
            progress_callback: Called with (completed, total, message) at every phase transition
            cancel_token: Cancels outstanding work when triggered

        Returns:
            Immutable Analysis; ``metadata.status`` is completed, partial or canceled

        Raises:
            ValidationError: Request has no segments or no sections
            ContextTooLargeError: No deployment can hold the context
            ConfigurationError: Deployments or model client are misconfigured
            ConsolidationError: The final phase failed
        """
        _check_request(request)
        settings = self.settings
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()

        assembler = ContextAssembler(request, settings)
        transcript_tokens = assembler.transcript_tokens()
        selection = select_strategy(transcript_tokens, request.strategy, settings)
        deployment = select_deployment(
            assembler.combined_context_tokens(),
            self.deployment_catalog.list_deployments(),
            settings.safety_margin,
        )
        plan = build_phase_plan(selection.strategy, settings, request.template)
        logger.info(
            "Analyzing transcript %s with %s strategy (%d phases) on %s",
            request.transcript_id, selection.strategy.value, plan.total_units, deployment.deployment_id,
        )

        executor = PhaseExecutor(
            self.model_client,
            deployment.deployment_id,
            settings,
            progress_callback=progress_callback,
            cancel_token=cancel_token,
            sleep=self._sleep,
        )
        outcome = await executor.run(plan, assembler.build)

        warnings: List[str] = []
        if selection.warning:
            warnings.append(selection.warning)
        for failed in outcome.failed_phases:
            warnings.append(f"Phase {failed.name} failed; its content is missing from the results")

        evaluation_status = "not_requested"
        evaluation_error: Optional[str] = None
        evaluated: Optional[EvaluationOutcome] = None

        if outcome.canceled:
            status = "canceled"
            draft = self._link(merge_phase_results(outcome.ordered_results, request.template), request)
            if request.run_evaluation:
                evaluation_status = "skipped"
        else:
            status = "partial" if outcome.failed_phases else "completed"
            draft = self._link(prune_results(phase_to_results(outcome.final_result), request.template), request)
            if request.run_evaluation:
                evaluation_status, evaluation_error, evaluated = await self._evaluate(
                    executor, assembler, request, draft,
                )
                if evaluation_status == "skipped":
                    status = "canceled"
                if evaluation_error:
                    warnings.append(f"Self-evaluation failed: {evaluation_error}")

        results = draft
        draft_results = None
        if evaluated is not None and evaluated.revised_results is not None:
            results = evaluated.revised_results
            draft_results = draft.model_copy(deep=True)

        completed_at = datetime.now(timezone.utc)
        metadata = AnalysisMetadata(
            status=status,
            was_auto_selected=selection.was_auto_selected,
            requested_strategy=selection.requested_strategy,
            strategy_reasoning=selection.reasoning,
            strategy_warning=selection.warning,
            deployment=deployment,
            total_phases=plan.total_units,
            completed_phases=outcome.completed_phases,
            failed_phases=[
                FailedPhase(phase_id=failed.phase_id, name=failed.name, error=failed.error or "failed")
                for failed in outcome.failed_phases
            ],
            model_calls=executor.model_calls,
            evaluation_status=evaluation_status,
            evaluation_error=evaluation_error,
            transcript_tokens=transcript_tokens,
            duration_seconds=round(time.monotonic() - started, 3),
            started_at=started_at.isoformat(),
            completed_at=completed_at.isoformat(),
            warnings=warnings,
        )

        analysis = Analysis(
            id=str(uuid.uuid4()),
            transcript_id=request.transcript_id,
            template_id=request.template_id,
            analysis_strategy=selection.strategy,
            draft_results=draft_results,
            evaluation=evaluated.evaluation if evaluated is not None else None,
            results=results,
            metadata=metadata,
        )
        logger.info(
            "Analysis %s %s: %d/%d phases, %d model calls, %.2fs",
            analysis.id, status, outcome.completed_phases, plan.total_units,
            executor.model_calls, metadata.duration_seconds,
        )
        return analysis

    async def _evaluate(
        self,
        executor: PhaseExecutor,
        assembler: ContextAssembler,
        request: AnalysisRequest,
        draft: AnalysisResults,
    ):
        if executor.cancelled:
            return "skipped", None, None

        evaluator = SelfEvaluator(executor, assembler, request.template, request.transcript.segments, self.settings)
        executor.report_progress("Running self-evaluation")
        try:
            evaluated = await executor.run_cancellable(evaluator.evaluate(draft))
        except AnalysisCancelledError:
            logger.warning("Self-evaluation cancelled; keeping draft results")
            return "skipped", None, None
        except AnalysisError as e:
            logger.error("Self-evaluation failed, keeping draft results: %s", e)
            executor.report_progress("Self-evaluation failed")
            return "failed", str(e), None

        executor.report_progress("Self-evaluation complete")
        return "completed", None, evaluated


def analyze_payload(
    payload: Any,
    model_client: ModelClient,
    settings: Optional[AnalysisSettings] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> Analysis:
    """Validate a raw payload and run it to completion on a fresh event loop."""

    request = parse_analysis_request(payload)
    orchestrator = AnalysisOrchestrator(model_client, settings=settings)
    return asyncio.run(orchestrator.analyze(request, progress_callback=progress_callback))
