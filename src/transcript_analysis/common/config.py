"""
Runtime configuration for the analysis orchestrator.

All knobs are read from environment variables (the same convention the Lambda
handlers use for REGION, BUCKET and model ids) and validated through a pydantic
model so that a bad deployment fails before any Bedrock spend.
"""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from transcript_analysis.common.errors import ConfigurationError
from transcript_analysis.models.types import DeploymentProfile

T = TypeVar("T", int, float)

DEFAULT_MODEL_ID = "global.anthropic.claude-sonnet-4-5-20250929-v1:0"


def _default_deployments() -> List[DeploymentProfile]:
    return [
        DeploymentProfile(deployment_id="standard", token_limit=256_000, model_id=DEFAULT_MODEL_ID),
        DeploymentProfile(deployment_id="extended", token_limit=1_000_000, model_id=DEFAULT_MODEL_ID),
    ]


class AnalysisSettings(BaseModel):
    """Thresholds, limits and retry policy for one orchestrator instance."""

    basic_max_tokens: int = Field(default=15_000, gt=0)
    hybrid_max_tokens: int = Field(default=60_000, gt=0)
    safety_margin: float = Field(default=0.9, gt=0, le=1)

    max_concurrency: int = Field(default=3, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    backoff_jitter: float = Field(default=0.1, ge=0, le=1)
    call_timeout_seconds: float = Field(default=300.0, gt=0)

    # Advanced plans run this many cascading section phases plus one consolidation.
    advanced_phase_count: int = Field(default=8, ge=8, le=9)
    digest_max_chars: int = Field(default=6_000, ge=500)
    evaluation_transcript_max_chars: int = Field(default=20_000, ge=1_000)
    max_output_tokens: int = Field(default=8_000, gt=0)

    link_similarity_threshold: float = Field(default=0.2, gt=0, le=1)
    timestamp_tolerance_seconds: float = Field(default=2.0, ge=0)

    deployments: List[DeploymentProfile] = Field(default_factory=_default_deployments)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "AnalysisSettings":
        if self.hybrid_max_tokens <= self.basic_max_tokens:
            raise ValueError("hybrid_max_tokens must be greater than basic_max_tokens")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self

    @property
    def model_ids(self) -> Dict[str, str]:
        """Deployment id -> Bedrock model id / inference profile."""
        return {
            profile.deployment_id: profile.model_id or profile.deployment_id
            for profile in self.deployments
        }

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalysisSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of ``os.environ`` (used by tests)

        Returns:
            Validated settings

        Raises:
            ConfigurationError: If a variable cannot be parsed or fails validation
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        numeric_fields = {
            "ANALYSIS_BASIC_MAX_TOKENS": ("basic_max_tokens", int),
            "ANALYSIS_HYBRID_MAX_TOKENS": ("hybrid_max_tokens", int),
            "ANALYSIS_SAFETY_MARGIN": ("safety_margin", float),
            "ANALYSIS_MAX_CONCURRENCY": ("max_concurrency", int),
            "ANALYSIS_MAX_ATTEMPTS": ("max_attempts", int),
            "ANALYSIS_BACKOFF_BASE_SECONDS": ("backoff_base_seconds", float),
            "ANALYSIS_BACKOFF_MAX_SECONDS": ("backoff_max_seconds", float),
            "ANALYSIS_CALL_TIMEOUT_SECONDS": ("call_timeout_seconds", float),
            "ANALYSIS_ADVANCED_PHASES": ("advanced_phase_count", int),
            "ANALYSIS_DIGEST_MAX_CHARS": ("digest_max_chars", int),
            "ANALYSIS_MAX_OUTPUT_TOKENS": ("max_output_tokens", int),
        }
        for env_name, (field_name, cast) in numeric_fields.items():
            parsed = _parse_env(env, env_name, cast)
            if parsed is not None:
                values[field_name] = parsed

        fallback_model = env.get("INFERENCE_PROFILE_ARN") or env.get("BEDROCK_MODEL_ID") or DEFAULT_MODEL_ID
        values["deployments"] = [
            DeploymentProfile(
                deployment_id=env.get("STANDARD_DEPLOYMENT_ID", "standard"),
                token_limit=_parse_env(env, "STANDARD_TOKEN_LIMIT", int) or 256_000,
                model_id=env.get("STANDARD_MODEL_ID", fallback_model),
            ),
            DeploymentProfile(
                deployment_id=env.get("EXTENDED_DEPLOYMENT_ID", "extended"),
                token_limit=_parse_env(env, "EXTENDED_TOKEN_LIMIT", int) or 1_000_000,
                model_id=env.get("EXTENDED_MODEL_ID", fallback_model),
            ),
        ]

        try:
            return cls(**values)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid analysis settings: {e}") from e


def _parse_env(env: Mapping[str, str], name: str, cast: Callable[[str], T]) -> Optional[T]:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return cast(raw.strip())
    except ValueError as e:
        raise ConfigurationError(f"Environment variable {name}={raw!r} is not a valid {cast.__name__}") from e


def mock_mode_enabled(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Return True when the offline mock model should replace Bedrock."""

    env = os.environ if environ is None else environ
    flag = env.get("MOCK_BEDROCK") or env.get("USE_MOCK_BEDROCK")
    return bool(flag and flag.lower() not in {"0", "false", "no"})
