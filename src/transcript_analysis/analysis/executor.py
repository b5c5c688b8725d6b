"""
Phase execution: runs a phase plan against the model client.

Phases start as soon as their dependencies have settled. In-flight calls are
capped by a semaphore, each call has its own timeout, and transient failures
are retried with backoff. A non-final phase that ultimately fails is replaced
by a placeholder so the run can continue; a failed final phase aborts the run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set, TypeVar, Union

from transcript_analysis.analysis.context import PhasePrompt
from transcript_analysis.analysis.merge import phase_result_from_payload, placeholder_result
from transcript_analysis.analysis.phases import PhasePlan, PhaseSpec
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import (
    AnalysisCancelledError,
    ConsolidationError,
    ModelError,
    PhaseTimeoutError,
)
from transcript_analysis.common.json_utils import parse_model_json
from transcript_analysis.common.retry import RetryPolicy, call_with_retry
from transcript_analysis.models.types import PhaseResult, PhaseStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int, str], None]
PromptBuilder = Callable[[PhaseSpec, Mapping[str, PhaseResult]], PhasePrompt]


class ModelClient(Protocol):
    """Invokes a model deployment with a prompt and a response-shape hint."""

    async def invoke(
        self,
        deployment_id: str,
        prompt: str,
        schema_hint: Optional[Dict[str, Any]] = None,
    ) -> Union[str, Dict[str, Any]]:
        ...


class CancellationToken:
    """Caller-held handle for cancelling one analysis request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ExecutionOutcome:
    """Settled phase results of one plan run, in plan order."""

    def __init__(self, plan: PhasePlan, results: Dict[str, PhaseResult], canceled: bool):
        self.plan = plan
        self.results = results
        self.canceled = canceled

    @property
    def ordered_results(self) -> List[PhaseResult]:
        return [self.results[phase.phase_id] for phase in self.plan.phases if phase.phase_id in self.results]

    @property
    def final_result(self) -> Optional[PhaseResult]:
        result = self.results.get(self.plan.final_phase.phase_id)
        return result if result is not None and result.succeeded else None

    @property
    def completed_phases(self) -> int:
        return sum(1 for result in self.results.values() if result.succeeded)

    @property
    def failed_phases(self) -> List[PhaseResult]:
        return [
            result for result in self.ordered_results
            if result.status == PhaseStatus.FAILED_FATAL
        ]


class PhaseExecutor:
    """Runs phase plans for one request against one deployment."""

    def __init__(
        self,
        client: ModelClient,
        deployment_id: str,
        settings: AnalysisSettings,
        *,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self.deployment_id = deployment_id
        self.settings = settings
        self._progress_callback = progress_callback
        self._cancel_token = cancel_token
        self._sleep = sleep
        self._policy = RetryPolicy.from_settings(settings)
        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._attempts: Dict[str, int] = {}
        self._completed = 0
        self._total = 0
        self.states: Dict[str, PhaseStatus] = {}
        self.model_calls = 0

    @property
    def cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.cancelled

    def report_progress(self, message: str, completed: Optional[int] = None) -> None:
        if completed is not None:
            self._completed = max(self._completed, completed)
        if self._progress_callback is not None:
            self._progress_callback(self._completed, self._total, message)

    def _release_slot(self, call: "asyncio.Future[Any]") -> None:
        if not call.cancelled():
            # Retrieved so an abandoned call's error is not reported as never retrieved.
            call.exception()
        self._semaphore.release()

    async def call_model(self, prompt: PhasePrompt, label: Optional[str] = None) -> Dict[str, Any]:
        """
        Invoke the model for one prompt with timeout, retry and JSON parsing.

        Args:
            prompt: Assembled prompt
            label: Name for logs and attempt bookkeeping (defaults to the phase id)

        Returns:
            Parsed JSON payload

        Raises:
            ModelError: Fatal error, or the last transient error after all attempts
            ConfigurationError: If the client reports a misconfiguration
        """
        name = label or prompt.phase_id
        timeout = self.settings.call_timeout_seconds

        async def attempt_once(attempt: int) -> Dict[str, Any]:
            self._attempts[name] = attempt
            if name in self.states:
                self.states[name] = PhaseStatus.IN_FLIGHT
            await self._semaphore.acquire()
            self.model_calls += 1
            call = asyncio.ensure_future(self._client.invoke(self.deployment_id, prompt.text, prompt.schema_hint))
            # The slot stays taken until the call itself settles, even after a timeout.
            call.add_done_callback(self._release_slot)
            try:
                done, _ = await asyncio.wait({call}, timeout=timeout)
            except asyncio.CancelledError:
                call.cancel()
                raise
            if call not in done:
                call.cancel()
                raise PhaseTimeoutError(name, timeout)
            return parse_model_json(call.result())

        def mark_retryable(attempt: int, error: ModelError) -> None:
            if name in self.states:
                self.states[name] = PhaseStatus.FAILED_RETRYABLE

        return await call_with_retry(
            attempt_once,
            self._policy,
            label=name,
            on_retry=mark_retryable,
            sleep=self._sleep,
        )

    async def run_cancellable(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, abandoning it if the request is cancelled first."""

        task = asyncio.ensure_future(awaitable)
        if self._cancel_token is None:
            return await task
        waiter = asyncio.ensure_future(self._cancel_token.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AnalysisCancelledError("Analysis cancelled by caller")

    async def _run_phase(self, spec: PhaseSpec, prior: Mapping[str, PhaseResult], build_prompt: PromptBuilder) -> PhaseResult:
        self.states[spec.phase_id] = PhaseStatus.IN_FLIGHT
        self.report_progress(f"Starting {spec.name}")
        logger.info("Starting phase %s (%s)", spec.phase_id, spec.kind.value)
        started = time.monotonic()

        try:
            prompt = build_prompt(spec, prior)
            payload = await self.call_model(prompt, spec.phase_id)
            result = phase_result_from_payload(
                spec,
                payload,
                attempts=self._attempts.get(spec.phase_id, 1),
                duration_seconds=round(time.monotonic() - started, 3),
            )
        except ModelError as e:
            elapsed = round(time.monotonic() - started, 3)
            self.states[spec.phase_id] = PhaseStatus.FAILED_FATAL
            self.report_progress(f"{spec.name} failed: {e}", completed=self._completed + 1)
            if spec.is_final:
                logger.error("Final phase %s failed: %s", spec.phase_id, e)
                raise ConsolidationError(spec.phase_id, str(e)) from e
            logger.error("Phase %s failed after %.2fs, continuing with placeholder: %s", spec.phase_id, elapsed, e)
            return placeholder_result(
                spec,
                str(e),
                attempts=self._attempts.get(spec.phase_id, 0),
                duration_seconds=elapsed,
            )

        self.states[spec.phase_id] = PhaseStatus.SUCCEEDED
        self.report_progress(f"Completed {spec.name}", completed=self._completed + 1)
        logger.info("Phase %s completed in %.2fs", spec.phase_id, result.duration_seconds)
        return result

    @staticmethod
    def _upstream(plan: PhasePlan, spec: PhaseSpec, results: Mapping[str, PhaseResult]) -> Dict[str, PhaseResult]:
        ancestors: Set[str] = set()
        stack = list(spec.depends_on)
        while stack:
            phase_id = stack.pop()
            if phase_id in ancestors:
                continue
            ancestors.add(phase_id)
            stack.extend(plan.get(phase_id).depends_on)
        return {phase.phase_id: results[phase.phase_id] for phase in plan.phases if phase.phase_id in ancestors}

    async def run(self, plan: PhasePlan, build_prompt: PromptBuilder) -> ExecutionOutcome:
        """
        Execute every phase of ``plan``.

        Args:
            plan: Validated phase plan
            build_prompt: Builds a phase's prompt from its upstream results

        Returns:
            ExecutionOutcome with every settled phase result

        Raises:
            ConsolidationError: If the final phase fails
            ConfigurationError: If the model client is misconfigured
        """
        self._total = plan.total_units
        self._completed = 0
        self.states = {phase.phase_id: PhaseStatus.PENDING for phase in plan.phases}
        results: Dict[str, PhaseResult] = {}
        pending: List[PhaseSpec] = list(plan.phases)
        running: Dict["asyncio.Future[PhaseResult]", PhaseSpec] = {}
        waiter = asyncio.ensure_future(self._cancel_token.wait()) if self._cancel_token is not None else None

        try:
            while pending or running:
                if self.cancelled:
                    break
                for spec in [p for p in pending if all(dep in results for dep in p.depends_on)]:
                    pending.remove(spec)
                    prior = self._upstream(plan, spec, results)
                    running[asyncio.ensure_future(self._run_phase(spec, prior, build_prompt))] = spec

                waitables: Set["asyncio.Future[Any]"] = set(running)
                if waiter is not None:
                    waitables.add(waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is waiter:
                        continue
                    spec = running.pop(task)
                    results[spec.phase_id] = task.result()
        finally:
            if waiter is not None:
                waiter.cancel()
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        canceled = self.cancelled and plan.final_phase.phase_id not in results
        if canceled:
            for spec in list(running.values()) + pending:
                self.states[spec.phase_id] = PhaseStatus.CANCELED
                results[spec.phase_id] = placeholder_result(spec, "canceled", status=PhaseStatus.CANCELED)
            logger.warning(
                "Analysis cancelled after %d of %d phases",
                sum(1 for r in results.values() if r.succeeded), plan.total_units,
            )
            self.report_progress("Analysis cancelled")

        return ExecutionOutcome(plan, results, canceled)
