"""
JSON schemas handed to the model as response-shape hints.

Each phase kind has a schema describing the JSON object the model must return.
Timestamps are seconds from the start of the recording.
"""

import copy
from typing import Any, Dict, Sequence

from transcript_analysis.models.types import PhaseKind

_TIMESTAMP = {"type": ["number", "null"], "minimum": 0, "description": "Seconds from recording start"}

EVIDENCE_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["text", "start", "end"],
    "properties": {
        "text": {"type": "string"},
        "start": _TIMESTAMP,
        "end": _TIMESTAMP,
        "relevance": {"type": "number", "minimum": 0.0, "maximum": 1.0},
    },
}

SECTION_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["sectionId", "name", "content"],
    "properties": {
        "sectionId": {"type": "string"},
        "name": {"type": "string"},
        "content": {"type": "string"},
        "evidence": {"type": "array", "items": EVIDENCE_ITEM},
    },
}

AGENDA_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "topic"],
    "properties": {
        "id": {"type": "string"},
        "topic": {"type": "string"},
        "timestamp": _TIMESTAMP,
        "context": {"type": "string"},
    },
}

DECISION_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "decision", "timestamp"],
    "properties": {
        "id": {"type": "string"},
        "decision": {"type": "string"},
        "timestamp": _TIMESTAMP,
        "context": {"type": "string"},
        "agendaItemId": {"type": ["string", "null"]},
    },
}

ACTION_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "task", "timestamp"],
    "properties": {
        "id": {"type": "string"},
        "task": {"type": "string"},
        "owner": {"type": ["string", "null"]},
        "deadline": {"type": ["string", "null"]},
        "timestamp": _TIMESTAMP,
        "decisionId": {"type": ["string", "null"]},
    },
}

QUOTE_ITEM: Dict[str, Any] = {
    "type": "object",
    "required": ["text", "timestamp"],
    "properties": {
        "id": {"type": "string"},
        "text": {"type": "string"},
        "speaker": {"type": ["string", "null"]},
        "timestamp": _TIMESTAMP,
    },
}


# Section content only (hybrid phase 1)
SECTIONS_SCHEMA: Dict[str, Any] = {
    "title": "sections",
    "type": "object",
    "required": ["sections"],
    "properties": {
        "summary": {"type": "string"},
        "sections": {"type": "array", "items": SECTION_ITEM},
    },
}

# Structured outputs only (hybrid phase 2)
OUTPUTS_SCHEMA: Dict[str, Any] = {
    "title": "outputs",
    "type": "object",
    "required": ["agendaItems", "decisions", "actionItems", "quotes"],
    "properties": {
        "agendaItems": {"type": "array", "items": AGENDA_ITEM},
        "decisions": {"type": "array", "items": DECISION_ITEM},
        "actionItems": {"type": "array", "items": ACTION_ITEM},
        "quotes": {"type": "array", "items": QUOTE_ITEM},
    },
}

# Full results shape (basic call, first advanced section group, consolidation)
RESULTS_SCHEMA: Dict[str, Any] = {
    "title": "results",
    "type": "object",
    "required": ["sections"],
    "properties": {
        **SECTIONS_SCHEMA["properties"],
        **OUTPUTS_SCHEMA["properties"],
    },
}

EVALUATION_SCHEMA: Dict[str, Any] = {
    "title": "evaluation",
    "type": "object",
    "required": ["qualityScore", "reasoning"],
    "properties": {
        "qualityScore": {"type": "number", "minimum": 0.0, "maximum": 1.0},
        "reasoning": {"type": "string"},
        "improvements": {"type": "array", "items": {"type": "string"}},
        "warnings": {"type": "array", "items": {"type": "string"}},
        "revisedResults": {"type": ["object", "null"], "properties": RESULTS_SCHEMA["properties"]},
    },
}


def get_schema_by_type(schema_type: str) -> Dict[str, Any]:
    """
    Get the response schema for a schema type.

    Args:
        schema_type: One of sections, outputs, results, evaluation

    Returns:
        JSON schema dictionary

    Raises:
        ValueError: If the schema type is not recognized
    """
    schemas = {
        "sections": SECTIONS_SCHEMA,
        "outputs": OUTPUTS_SCHEMA,
        "results": RESULTS_SCHEMA,
        "evaluation": EVALUATION_SCHEMA,
    }

    if schema_type not in schemas:
        raise ValueError(f"Unknown schema type: {schema_type}")

    return schemas[schema_type]


def schema_for_phase(kind: PhaseKind) -> Dict[str, Any]:
    """Response schema expected from a phase of the given kind."""

    if kind == PhaseKind.SECTIONS:
        return SECTIONS_SCHEMA
    if kind == PhaseKind.OUTPUTS:
        return OUTPUTS_SCHEMA
    return RESULTS_SCHEMA


def scoped_schema(schema: Dict[str, Any], section_ids: Sequence[str]) -> Dict[str, Any]:
    """
    Copy of ``schema`` whose section entries may only use ``section_ids``.

    Args:
        schema: A schema with a ``sections`` array
        section_ids: Template section ids the phase is responsible for

    Returns:
        A new schema; the module-level schemas are never modified
    """
    scoped = copy.deepcopy(schema)
    item = scoped["properties"]["sections"]["items"]
    item["properties"]["sectionId"] = {"type": "string", "enum": list(section_ids)}
    scoped["properties"]["sections"]["minItems"] = len(section_ids)
    scoped["properties"]["sections"]["maxItems"] = len(section_ids)
    return scoped
