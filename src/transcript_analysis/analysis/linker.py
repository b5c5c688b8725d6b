"""
Deterministic relationship linking and citation checks.

Builds the agenda -> decision -> action chain from explicit ids and keyword
overlap, and verifies every cited timestamp against the transcript segments.
No model calls are made here; the same input always links the same way.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from transcript_analysis.common.timecodes import format_marker
from transcript_analysis.models.types import AnalysisResults, AnalysisSection, TimestampedItem, TranscriptSegment

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=TimestampedItem)

STOPWORDS = {
    "the", "and", "for", "with", "that", "this", "from", "will", "was", "were", "are", "have", "has",
    "had", "been", "into", "onto", "about", "over", "under", "they", "them", "their", "there", "then",
    "than", "what", "when", "where", "which", "while", "who", "whom", "why", "how", "all", "any",
    "each", "per", "our", "ours", "you", "your", "its", "not", "but", "can", "should", "would",
    "could", "also", "just", "more", "most", "some", "such", "only", "own", "same", "very",
    "agreed", "decided", "discussed", "team", "meeting", "next", "need", "needs",
}

_WORD_RE = re.compile(r"[a-z0-9]+")


def extract_keywords(text: Optional[str]) -> Set[str]:
    if not text:
        return set()
    keywords = set()
    for word in _WORD_RE.findall(text.lower()):
        if len(word) < 3 or word in STOPWORDS:
            continue
        if len(word) > 4 and word.endswith("s") and not word.endswith("ss"):
            word = word[:-1]
        keywords.add(word)
    return keywords


def keyword_similarity(first: Set[str], second: Set[str]) -> float:
    """Jaccard similarity of two keyword sets."""

    if not first or not second:
        return 0.0
    return len(first & second) / len(first | second)


def _assign_ids(items: Sequence[T], prefix: str) -> Tuple[T, ...]:
    existing = {item.id for item in items if item.id}
    used: Set[str] = set()
    counter = 1
    assigned = []
    for item in items:
        if not item.id or item.id in used:
            while f"{prefix}-{counter}" in used or f"{prefix}-{counter}" in existing:
                counter += 1
            new_id = f"{prefix}-{counter}"
            if item.id:
                logger.info("Renaming duplicate id %s to %s", item.id, new_id)
            item = item.model_copy(update={"id": new_id})
        used.add(item.id)
        assigned.append(item)
    return tuple(assigned)


def ensure_unique_ids(results: AnalysisResults) -> AnalysisResults:
    """Return a copy in which every entity has an id unique within its kind."""

    return results.model_copy(
        update={
            "agenda_items": _assign_ids(results.agenda_items, "agenda"),
            "decisions": _assign_ids(results.decisions, "decision"),
            "action_items": _assign_ids(results.action_items, "action"),
            "quotes": _assign_ids(results.quotes, "quote"),
        }
    )


def _proximity(timestamp: Optional[float], candidate: Optional[float]) -> Tuple[int, float]:
    # Prefer candidates at or before the item, then the closest one.
    if timestamp is None or candidate is None:
        return (0, -math.inf)
    if candidate <= timestamp:
        return (1, -(timestamp - candidate))
    return (0, -(candidate - timestamp))


def _best_match(
    keywords: Set[str],
    timestamp: Optional[float],
    candidates: Sequence[Tuple[str, Set[str], Optional[float]]],
    threshold: float,
) -> Optional[str]:
    best_id = None
    best_key: Optional[Tuple[float, Tuple[int, float]]] = None
    for candidate_id, candidate_keywords, candidate_ts in candidates:
        score = keyword_similarity(keywords, candidate_keywords)
        if score < threshold:
            continue
        key = (score, _proximity(timestamp, candidate_ts))
        if best_key is None or key > best_key:
            best_id, best_key = candidate_id, key
    return best_id


def _preceding_agenda(timestamp: Optional[float], agenda: Sequence[Tuple[str, Set[str], Optional[float]]]) -> Optional[str]:
    if timestamp is None:
        return None
    best_id = None
    best_ts = -math.inf
    for agenda_id, _, agenda_ts in agenda:
        if agenda_ts is not None and best_ts < agenda_ts <= timestamp:
            best_id, best_ts = agenda_id, agenda_ts
    return best_id


def validate_relationship_ids(results: AnalysisResults) -> Tuple[AnalysisResults, List[str]]:
    """Drop references to ids that do not exist, returning a warning for each."""

    warnings = []
    agenda_ids = {item.id for item in results.agenda_items}
    decision_ids = {decision.id for decision in results.decisions}
    decisions = []
    for decision in results.decisions:
        if decision.agenda_item_id and decision.agenda_item_id not in agenda_ids:
            warnings.append(f"Decision {decision.id} referenced unknown agenda item {decision.agenda_item_id}")
            decision = decision.model_copy(update={"agenda_item_id": None})
        decisions.append(decision)
    actions = []
    for action in results.action_items:
        if action.decision_id and action.decision_id not in decision_ids:
            warnings.append(f"Action item {action.id} referenced unknown decision {action.decision_id}")
            action = action.model_copy(update={"decision_id": None})
        actions.append(action)
    return results.model_copy(update={"decisions": tuple(decisions), "action_items": tuple(actions)}), warnings


def validate_relationship_chain(results: AnalysisResults) -> Tuple[AnalysisResults, List[str]]:
    """
    Walk every action -> decision -> agenda chain and report any loop.

    References only ever point one level up the chain, so a loop indicates a
    corrupted result; the offending reference is removed.
    """
    warnings = []
    decisions = {decision.id: decision for decision in results.decisions}
    broken_decisions: Set[str] = set()
    actions = []
    for action in results.action_items:
        seen = {("action", action.id)}
        decision = decisions.get(action.decision_id) if action.decision_id else None
        if decision is None:
            actions.append(action)
            continue
        node = ("decision", decision.id)
        if node in seen:
            warnings.append(f"Action item {action.id} formed a reference loop")
            actions.append(action.model_copy(update={"decision_id": None}))
            continue
        actions.append(action)
        seen.add(node)
        if decision.agenda_item_id and ("agenda", decision.agenda_item_id) in seen:
            warnings.append(f"Decision {decision.id} formed a reference loop")
            broken_decisions.add(decision.id)

    checked = tuple(
        decision.model_copy(update={"agenda_item_id": None}) if decision.id in broken_decisions else decision
        for decision in results.decisions
    )
    return results.model_copy(update={"decisions": checked, "action_items": tuple(actions)}), warnings


def _segment_ranges(segments: Iterable[TranscriptSegment], tolerance: float) -> List[Tuple[float, float]]:
    # Markers render whole seconds, so a cited time may sit just below a segment's start.
    return [(math.floor(segment.start) - tolerance, segment.end + tolerance) for segment in segments]


def _time_known(value: float, ranges: Sequence[Tuple[float, float]]) -> bool:
    return any(start <= value <= end for start, end in ranges)


def _verify_items(label: str, items: Sequence[T], ranges: Sequence[Tuple[float, float]], warnings: List[str]) -> Tuple[T, ...]:
    verified = []
    for item in items:
        if item.timestamp is None:
            known = False
            warnings.append(f"{label} {item.id} has no timestamp")
        else:
            known = _time_known(item.timestamp, ranges)
            if not known:
                warnings.append(
                    f"{label} {item.id} cites {format_marker(item.timestamp)}, which matches no transcript segment"
                )
        verified.append(item.model_copy(update={"timestamp_verified": known}))
    return tuple(verified)


def _verify_section(section: AnalysisSection, ranges: Sequence[Tuple[float, float]], warnings: List[str]) -> AnalysisSection:
    evidence = []
    for item in section.evidence:
        times = [t for t in (item.start, item.end) if t is not None]
        known = bool(times) and all(_time_known(t, ranges) for t in times)
        if not known:
            warnings.append(f"Evidence in section {section.section_id} cites a time outside the transcript")
        evidence.append(item.model_copy(update={"verified": known}))
    return section.model_copy(update={"evidence": tuple(evidence)})


def validate_citations(
    results: AnalysisResults,
    segments: Sequence[TranscriptSegment],
    tolerance: float = 2.0,
) -> Tuple[AnalysisResults, List[str]]:
    """
    Flag cited timestamps that match no transcript segment.

    Items are never removed; the returned copy has ``timestamp_verified`` /
    ``verified`` set on each, and a warning is returned for every missing or
    unknown citation.
    """
    ranges = _segment_ranges(segments, tolerance)
    warnings: List[str] = []
    verified = results.model_copy(
        update={
            "agenda_items": _verify_items("Agenda item", results.agenda_items, ranges, warnings),
            "decisions": _verify_items("Decision", results.decisions, ranges, warnings),
            "action_items": _verify_items("Action item", results.action_items, ranges, warnings),
            "quotes": _verify_items("Quote", results.quotes, ranges, warnings),
        }
    )
    sections = tuple(_verify_section(section, ranges, warnings) for section in results.sections)
    return verified.model_copy(update={"sections": sections}), warnings


def link_relationships(
    results: AnalysisResults,
    segments: Sequence[TranscriptSegment],
    similarity_threshold: float = 0.2,
    timestamp_tolerance: float = 2.0,
) -> AnalysisResults:
    """
    Link decisions to agenda items and action items to decisions.

    Explicit references that resolve are kept. Unlinked items are matched by
    keyword overlap, ties going to the nearest preceding candidate; decisions
    with no keyword match fall back to the agenda item most recently started
    before them. Unmatched items stay unlinked.

    Args:
        results: Consolidated results (not modified)
        segments: Transcript segments for citation checks
        similarity_threshold: Minimum Jaccard similarity for a keyword match
        timestamp_tolerance: Seconds of slack when matching citations to segments

    Returns:
        New AnalysisResults with ids, links, verification flags and warnings
    """
    warnings = list(results.relationship_warnings)
    linked, dangling = validate_relationship_ids(ensure_unique_ids(results))
    warnings.extend(dangling)

    agenda = [(item.id, extract_keywords(f"{item.topic} {item.context or ''}"), item.timestamp) for item in linked.agenda_items]
    decisions = []
    for decision in linked.decisions:
        if not decision.agenda_item_id:
            keywords = extract_keywords(f"{decision.decision} {decision.context or ''}")
            match = _best_match(keywords, decision.timestamp, agenda, similarity_threshold)
            decision = decision.model_copy(update={"agenda_item_id": match or _preceding_agenda(decision.timestamp, agenda)})
        decisions.append(decision)

    candidates = [(d.id, extract_keywords(f"{d.decision} {d.context or ''}"), d.timestamp) for d in decisions]
    actions = []
    for action in linked.action_items:
        if not action.decision_id:
            match = _best_match(extract_keywords(action.task), action.timestamp, candidates, similarity_threshold)
            action = action.model_copy(update={"decision_id": match})
        actions.append(action)
    linked = linked.model_copy(update={"decisions": tuple(decisions), "action_items": tuple(actions)})

    linked, loops = validate_relationship_chain(linked)
    warnings.extend(loops)
    linked, citations = validate_citations(linked, segments, timestamp_tolerance)
    warnings.extend(citations)

    linked = linked.model_copy(update={"relationship_warnings": tuple(dict.fromkeys(warnings))})
    linked_decisions = sum(1 for d in linked.decisions if d.agenda_item_id)
    linked_actions = sum(1 for a in linked.action_items if a.decision_id)
    logger.info(
        "Linked %d/%d decisions and %d/%d action items (%d warnings)",
        linked_decisions, len(linked.decisions), linked_actions, len(linked.action_items),
        len(linked.relationship_warnings),
    )
    return linked
