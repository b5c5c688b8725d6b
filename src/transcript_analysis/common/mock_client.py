"""Offline stand-in for Bedrock that produces heuristic analyses from the prompt."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from transcript_analysis.common.timecodes import parse_timecode

logger = logging.getLogger(__name__)

_PHASE_RE = re.compile(r"^PHASE: (\S+)", re.MULTILINE)
_SECTION_RE = re.compile(r"^- \[section:([^\]]+)\] (.+?) \(format: ([^;)]+)(; include evidence)?", re.MULTILINE)
_LINE_RE = re.compile(r"^(\[\d{2}(?::\d{2}){1,2}\]) (?:([^:\[\]]{1,40}): )?(.+)$", re.MULTILINE)

DECISION_TOKENS = ("decide", "decided", "agreed", "approve", "approved", "we will go with")
ACTION_TOKENS = ("action", "follow up", "todo", "task", "next steps", " will ", "i'll ", "by friday", "by monday")
AGENDA_TOKENS = ("agenda", "next item", "moving on", "let's discuss", "let's talk about", "topic")


class MockModelClient:
    """Deterministic ModelClient for local runs and smoke tests."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []

    async def invoke(
        self,
        deployment_id: str,
        prompt: str,
        schema_hint: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        kind = (schema_hint or {}).get("title", "results")
        phase_match = _PHASE_RE.search(prompt)
        phase_id = phase_match.group(1) if phase_match else "mock"
        self.calls.append((deployment_id, phase_id))
        logger.info("Mock model answering %s (%s)", phase_id, kind)

        if kind == "evaluation":
            return {"qualityScore": 0.8, "reasoning": "Mock evaluation of the draft.", "improvements": [], "warnings": [], "revisedResults": None}
        if phase_id.endswith("consolidation"):
            return _mock_consolidate(prompt)

        lines = _transcript_lines(prompt)
        payload: Dict[str, Any] = {}
        if kind in ("sections", "results"):
            payload["summary"] = _mock_summary(lines)
            payload["sections"] = _mock_sections(prompt, lines)
        if kind in ("outputs", "results"):
            payload.update(_mock_outputs(lines, phase_id))
        return payload


def _transcript_lines(prompt: str) -> List[Dict[str, Any]]:
    lines = []
    for marker, speaker, text in _LINE_RE.findall(prompt):
        lines.append({"timestamp": parse_timecode(marker), "speaker": speaker or None, "text": text.strip()})
    return lines


def _mock_summary(lines: List[Dict[str, Any]]) -> str:
    if not lines:
        return "No transcript content was available."
    return " ".join(line["text"] for line in lines[:2])[:400]


def _mock_sections(prompt: str, lines: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    sections = []
    for section_id, name, _fmt, evidence in _SECTION_RE.findall(prompt):
        points = [line["text"] for line in lines[:3]]
        section: Dict[str, Any] = {
            "sectionId": section_id,
            "name": name,
            "content": "\n".join(f"- {point}" for point in points) or "- No discussion captured.",
        }
        if evidence and lines:
            first = lines[0]
            section["evidence"] = [
                {"text": first["text"][:200], "start": first["timestamp"], "end": first["timestamp"], "relevance": 0.5}
            ]
        sections.append(section)
    return sections


def _mock_outputs(lines: List[Dict[str, Any]], phase_id: str) -> Dict[str, Any]:
    agenda, decisions, actions = [], [], []
    for line in lines:
        lowered = f" {line['text'].lower()} "
        if any(token in lowered for token in AGENDA_TOKENS):
            agenda.append({"id": f"{phase_id}-agenda-{len(agenda) + 1}", "topic": line["text"][:120], "timestamp": line["timestamp"]})
        if any(token in lowered for token in DECISION_TOKENS):
            decisions.append({"id": f"{phase_id}-decision-{len(decisions) + 1}", "decision": line["text"][:200], "timestamp": line["timestamp"]})
        elif any(token in lowered for token in ACTION_TOKENS):
            actions.append(
                {
                    "id": f"{phase_id}-action-{len(actions) + 1}",
                    "task": line["text"][:200],
                    "owner": line["speaker"],
                    "deadline": None,
                    "timestamp": line["timestamp"],
                }
            )
    if not agenda and lines:
        agenda.append({"id": f"{phase_id}-agenda-1", "topic": lines[0]["text"][:120], "timestamp": lines[0]["timestamp"]})

    quotes = sorted(lines, key=lambda line: len(line["text"]), reverse=True)[:2]
    return {
        "agendaItems": agenda,
        "decisions": decisions,
        "actionItems": actions,
        "quotes": [
            {"text": line["text"][:200], "speaker": line["speaker"], "timestamp": line["timestamp"]}
            for line in sorted(quotes, key=lambda line: line["timestamp"] or 0)
        ],
    }


def _mock_consolidate(prompt: str) -> Dict[str, Any]:
    start = prompt.find("Partial analyses (JSON):")
    partials = json.loads(prompt[start + len("Partial analyses (JSON):"):].strip()) if start != -1 else []

    merged: Dict[str, Any] = {"sections": [], "agendaItems": [], "decisions": [], "actionItems": [], "quotes": []}
    section_content: Dict[str, List[str]] = {}
    section_names: Dict[str, str] = {}
    summaries = []
    for partial in partials:
        result = partial.get("result", {})
        if result.get("summary"):
            summaries.append(result["summary"])
        for section in result.get("sections", []):
            section_content.setdefault(section["sectionId"], []).append(section.get("content", ""))
            section_names[section["sectionId"]] = section.get("name", section["sectionId"])
        for key in ("agendaItems", "decisions", "actionItems", "quotes"):
            merged[key].extend(result.get(key, []))

    for section_id, parts in section_content.items():
        merged["sections"].append({"sectionId": section_id, "name": section_names[section_id], "content": "\n".join(parts)})
    merged["summary"] = " ".join(summaries)[:600] or None
    return merged
