"""Analysis strategy selection, recommendation and labeling."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel

from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.token_utils import format_token_count
from transcript_analysis.models.types import AnalysisStrategy, StrategySelection

logger = logging.getLogger(__name__)

# Rough speaking rate used to turn a token estimate into meeting minutes.
TOKENS_PER_MINUTE = 150

STRATEGY_PROFILES: Dict[AnalysisStrategy, Dict[str, str]] = {
    AnalysisStrategy.BASIC: {
        "name": "Basic",
        "description": "Single pass over the whole transcript",
        "speed": "Fastest",
        "processing_time": "2-4 minutes",
    },
    AnalysisStrategy.HYBRID: {
        "name": "Hybrid",
        "description": "Sections and structured outputs in parallel, then consolidation",
        "speed": "Balanced",
        "processing_time": "4-6 minutes",
    },
    AnalysisStrategy.ADVANCED: {
        "name": "Advanced",
        "description": "Cascading passes over the template sections in order, then consolidation",
        "speed": "Thorough",
        "processing_time": "6-8 minutes",
    },
}


class StrategyRecommendation(BaseModel):
    strategy: AnalysisStrategy
    reasoning: str
    estimated_minutes: int
    alternatives: List[AnalysisStrategy]


def _auto_strategy(estimated_tokens: int, settings: AnalysisSettings) -> AnalysisStrategy:
    if estimated_tokens < settings.basic_max_tokens:
        return AnalysisStrategy.BASIC
    if estimated_tokens < settings.hybrid_max_tokens:
        return AnalysisStrategy.HYBRID
    return AnalysisStrategy.ADVANCED


def recommend_strategy(estimated_tokens: int, settings: AnalysisSettings) -> StrategyRecommendation:
    """Recommend a strategy for a transcript, with reasoning and alternatives."""

    strategy = _auto_strategy(estimated_tokens, settings)
    minutes = round(estimated_tokens / TOKENS_PER_MINUTE)
    size = format_token_count(estimated_tokens)

    if strategy == AnalysisStrategy.BASIC:
        reasoning = (
            f"Short transcript (~{size} tokens, about {minutes} min) is below "
            f"{format_token_count(settings.basic_max_tokens)} tokens; a single pass is sufficient."
        )
        alternatives = [AnalysisStrategy.HYBRID]
    elif strategy == AnalysisStrategy.HYBRID:
        reasoning = (
            f"Medium transcript (~{size} tokens, about {minutes} min) is below "
            f"{format_token_count(settings.hybrid_max_tokens)} tokens; parallel section and "
            "output passes balance speed and depth."
        )
        alternatives = [AnalysisStrategy.BASIC, AnalysisStrategy.ADVANCED]
    else:
        reasoning = (
            f"Long transcript (~{size} tokens, about {minutes} min) is at or above "
            f"{format_token_count(settings.hybrid_max_tokens)} tokens; cascading passes keep each "
            "call focused while preserving narrative continuity."
        )
        alternatives = [AnalysisStrategy.HYBRID]

    return StrategyRecommendation(
        strategy=strategy,
        reasoning=reasoning,
        estimated_minutes=minutes,
        alternatives=alternatives,
    )


def strategy_warning(
    estimated_tokens: int,
    strategy: AnalysisStrategy,
    settings: AnalysisSettings,
) -> Optional[str]:
    """Describe why an explicitly requested strategy may be a poor fit, if it is."""

    size = format_token_count(estimated_tokens)
    if strategy == AnalysisStrategy.BASIC and estimated_tokens >= settings.hybrid_max_tokens:
        return f"Basic analysis of a long transcript (~{size} tokens) may lose detail; consider hybrid or advanced."
    if strategy == AnalysisStrategy.ADVANCED and estimated_tokens < settings.basic_max_tokens:
        return f"Advanced analysis of a short transcript (~{size} tokens) spends extra calls; basic is usually enough."
    return None


def select_strategy(
    estimated_tokens: int,
    requested: AnalysisStrategy,
    settings: AnalysisSettings,
) -> StrategySelection:
    """
    Resolve the requested strategy into a concrete one.

    Explicit requests are honored as-is (a warning is attached when the choice
    looks suboptimal); ``auto`` is resolved from the configured thresholds.

    Args:
        estimated_tokens: Token estimate of the transcript
        requested: Strategy requested by the caller
        settings: Thresholds to resolve ``auto`` against

    Returns:
        StrategySelection with the concrete strategy and whether it was auto-selected
    """
    if requested != AnalysisStrategy.AUTO:
        warning = strategy_warning(estimated_tokens, requested, settings)
        if warning:
            logger.warning(warning)
        return StrategySelection(
            strategy=requested,
            was_auto_selected=False,
            requested_strategy=requested,
            estimated_tokens=estimated_tokens,
            reasoning=f"{STRATEGY_PROFILES[requested]['name']} strategy explicitly requested.",
            warning=warning,
        )

    recommendation = recommend_strategy(estimated_tokens, settings)
    logger.info(
        "Auto-selected %s strategy for ~%s tokens",
        recommendation.strategy.value, format_token_count(estimated_tokens),
    )
    return StrategySelection(
        strategy=recommendation.strategy,
        was_auto_selected=True,
        requested_strategy=AnalysisStrategy.AUTO,
        estimated_tokens=estimated_tokens,
        reasoning=recommendation.reasoning,
    )


def expected_model_calls(strategy: AnalysisStrategy, settings: AnalysisSettings) -> int:
    """Number of model calls a strategy makes when no call is retried."""

    if strategy == AnalysisStrategy.BASIC:
        return 1
    if strategy == AnalysisStrategy.HYBRID:
        return 3
    if strategy == AnalysisStrategy.ADVANCED:
        return settings.advanced_phase_count + 1
    raise ValueError("auto must be resolved before counting calls")


def describe_strategy(strategy: AnalysisStrategy, settings: AnalysisSettings) -> Dict[str, str]:
    """UI label for a strategy, derived from the same thresholds used for selection."""

    if strategy == AnalysisStrategy.AUTO:
        return {
            "name": "Auto",
            "description": (
                f"Basic below {format_token_count(settings.basic_max_tokens)} tokens, hybrid below "
                f"{format_token_count(settings.hybrid_max_tokens)}, advanced above"
            ),
            "api_calls": "1-{} calls".format(settings.advanced_phase_count + 1),
        }

    profile = dict(STRATEGY_PROFILES[strategy])
    calls = expected_model_calls(strategy, settings)
    profile["api_calls"] = "1 call" if calls == 1 else f"{calls} calls"
    if strategy == AnalysisStrategy.BASIC:
        profile["best_for"] = f"Transcripts under {format_token_count(settings.basic_max_tokens)} tokens"
    elif strategy == AnalysisStrategy.HYBRID:
        profile["best_for"] = (
            f"Transcripts of {format_token_count(settings.basic_max_tokens)}-"
            f"{format_token_count(settings.hybrid_max_tokens)} tokens"
        )
    else:
        profile["best_for"] = f"Transcripts over {format_token_count(settings.hybrid_max_tokens)} tokens"
    return profile
