"""
Token estimation and deployment routing.

The estimator is a cheap character heuristic (about four characters per token).
It is deliberately monotonic in text length so that routing decisions are
stable; use ``scripts/count_tokens.py`` for an exact tokenizer count.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Protocol

from transcript_analysis.common.errors import ConfigurationError, ContextTooLargeError
from transcript_analysis.models.types import DeploymentChoice, DeploymentProfile

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    """Approximate token count: ``ceil(len(text) / 4)``; 0 for empty input."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_token_count(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def utilization_severity(percentage: float) -> str:
    if percentage > 90:
        return "critical"
    if percentage > 80:
        return "high"
    if percentage > 60:
        return "medium"
    return "low"


class DeploymentCatalog(Protocol):
    """Lists the model deployments available to this orchestrator."""

    def list_deployments(self) -> List[DeploymentProfile]:
        ...


class StaticDeploymentCatalog:
    """Deployment catalog backed by a fixed list of profiles."""

    def __init__(self, profiles: Iterable[DeploymentProfile]):
        self._profiles = list(profiles)

    def list_deployments(self) -> List[DeploymentProfile]:
        return list(self._profiles)


def select_deployment(
    estimated_tokens: int,
    profiles: Iterable[DeploymentProfile],
    safety_margin: float = 0.9,
) -> DeploymentChoice:
    """
    Pick the smallest deployment whose safe limit fits the estimated context.

    Args:
        estimated_tokens: Estimate for transcript, template and supplemental material
        profiles: Candidate deployments (any order)
        safety_margin: Fraction of each token limit considered usable

    Returns:
        DeploymentChoice for the smallest fitting deployment

    Raises:
        ConfigurationError: If no deployments are configured
        ContextTooLargeError: If no deployment can hold the context
    """
    ordered = sorted(profiles, key=lambda profile: profile.token_limit)
    if not ordered:
        raise ConfigurationError("No model deployments are configured")

    smallest_limit = ordered[0].token_limit
    for profile in ordered:
        if estimated_tokens <= profile.token_limit * safety_margin:
            utilization = round(estimated_tokens / profile.token_limit * 100, 2)
            choice = DeploymentChoice(
                deployment_id=profile.deployment_id,
                token_limit=profile.token_limit,
                estimated_tokens=estimated_tokens,
                utilization_percentage=utilization,
                is_extended_context=profile.token_limit > smallest_limit,
            )
            severity = utilization_severity(utilization)
            if severity in ("high", "critical"):
                logger.warning(
                    "Deployment %s at %.1f%% utilization (%s)",
                    profile.deployment_id, utilization, severity,
                )
            else:
                logger.info(
                    "Routing %s tokens to deployment %s (%.1f%% of %s)",
                    format_token_count(estimated_tokens), profile.deployment_id,
                    utilization, format_token_count(profile.token_limit),
                )
            return choice

    largest_limit = ordered[-1].token_limit
    logger.error(
        "Context of %s tokens exceeds every deployment (largest %s)",
        format_token_count(estimated_tokens), format_token_count(largest_limit),
    )
    raise ContextTooLargeError(estimated_tokens, largest_limit)
