"""
Error taxonomy for the transcript analysis orchestrator.

Validation, configuration and context-size errors abort a request before any
model call is made. Model errors carry a transient flag that drives the retry
policy of the phase executor.
"""

from typing import List, Optional


class AnalysisError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(AnalysisError):
    """Malformed request: missing transcript segments, empty template, bad shape."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid analysis request: " + "; ".join(self.errors))


class ConfigurationError(AnalysisError):
    """Model client or deployment catalog is unreachable or misconfigured."""


class ContextTooLargeError(AnalysisError):
    """Estimated context exceeds every available deployment's safe limit."""

    def __init__(self, estimated_tokens: int, largest_limit: int):
        self.estimated_tokens = estimated_tokens
        self.largest_limit = largest_limit
        super().__init__(
            f"Estimated context of {estimated_tokens:,} tokens exceeds the largest "
            f"deployment limit of {largest_limit:,} tokens"
        )


class ModelError(AnalysisError):
    """A model invocation failed.

    Transient errors (throttling, timeouts, unparseable output) are retried with
    backoff; fatal errors (invalid request, content refusal) fail the phase at once.
    """

    def __init__(self, message: str, transient: bool = True, retry_after: Optional[float] = None):
        self.transient = transient
        self.retry_after = retry_after
        super().__init__(message)

    @classmethod
    def fatal(cls, message: str) -> "ModelError":
        return cls(message, transient=False)

    @property
    def kind(self) -> str:
        return "transient" if self.transient else "fatal"


class PhaseTimeoutError(ModelError):
    """A single model call exceeded its per-call timeout."""

    def __init__(self, phase_id: str, timeout_seconds: float):
        self.phase_id = phase_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Phase {phase_id} timed out after {timeout_seconds:.1f}s", transient=True)


class AnalysisCancelledError(AnalysisError):
    """The caller cancelled the request through its cancellation token."""


class ConsolidationError(AnalysisError):
    """The final phase of a plan failed, so no trustworthy result can be assembled."""

    def __init__(self, phase_id: str, cause: str):
        self.phase_id = phase_id
        self.cause = cause
        super().__init__(f"Final phase {phase_id} failed: {cause}")
