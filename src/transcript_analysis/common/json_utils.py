"""
JSON utilities for model responses and request validation.

Model output is parsed with LangChain's JsonOutputParser, which tolerates
markdown fences and surrounding prose. Anything that still does not yield a
JSON object is reported as a transient model error so the call is retried.
"""

import logging
from typing import Any, Dict, List, Union

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import JsonOutputParser

from transcript_analysis.common.errors import ModelError

logger = logging.getLogger(__name__)

_parser = JsonOutputParser()


def extract_json_from_text(text: str) -> str:
    """
    Return the first balanced JSON object embedded in ``text``.

    Args:
        text: Raw model output

    Returns:
        The JSON object substring, or ``text`` unchanged when no object is found
    """
    start_idx = text.find("{")
    if start_idx == -1:
        return text
    depth = 0
    in_string = False
    escaped = False
    for i, char in enumerate(text[start_idx:]):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start_idx:start_idx + i + 1]
    return text


def parse_model_json(response: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    """
    Parse a model response into a JSON object.

    Args:
        response: Raw text, or an already-parsed object from the model client

    Returns:
        Parsed JSON object

    Raises:
        ModelError: Transient error when the response is empty or not a JSON object
    """
    if isinstance(response, dict):
        return response
    if not isinstance(response, str) or not response.strip():
        raise ModelError("Model returned an empty response")

    try:
        parsed = _parser.parse(response)
    except OutputParserException as e:
        logger.warning(f"Direct JSON parse failed: {e}. Attempting to extract JSON object from text...")
        try:
            parsed = _parser.parse(extract_json_from_text(response))
        except OutputParserException:
            logger.error(f"Failed to parse JSON response. First 500 chars: {response[:500]}")
            raise ModelError(f"Model response is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise ModelError(f"Model response is not a JSON object (got {type(parsed).__name__})")
    return parsed


def validate_json_structure(data: Any, required_fields: List[str]) -> List[str]:
    """
    Validate that JSON data contains required fields.

    Args:
        data: JSON data to validate
        required_fields: List of required field names

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not isinstance(data, dict):
        errors.append("Data must be a JSON object")
        return errors

    for field in required_fields:
        if field not in data:
            errors.append(f"Missing required field: {field}")
        elif data[field] is None:
            errors.append(f"Field '{field}' cannot be null")

    return errors


def validate_request_payload(payload: Any) -> List[str]:
    """
    Check the shape of an analysis request before it is parsed.

    Catches the failures that must stop a request before any model spend:
    missing ids, no transcript segments, no template sections.

    Args:
        payload: Raw request payload (camelCase or snake_case keys)

    Returns:
        List of validation errors
    """
    if not isinstance(payload, dict):
        return ["Request must be a JSON object"]

    def pick(data: Dict[str, Any], camel: str, snake: str) -> Any:
        return data.get(camel, data.get(snake))

    errors = []
    for camel, snake in (("transcriptId", "transcript_id"), ("templateId", "template_id")):
        value = pick(payload, camel, snake)
        if not isinstance(value, str) or not value.strip():
            errors.append(f"Missing required field: {camel}")

    transcript = payload.get("transcript")
    if not isinstance(transcript, dict):
        errors.append("Missing required field: transcript")
    else:
        segments = transcript.get("segments")
        if not isinstance(segments, list) or not segments:
            errors.append("Transcript must contain at least one segment")
        else:
            for i, segment in enumerate(segments):
                segment_errors = validate_json_structure(segment, ["start", "end", "text"])
                for error in segment_errors:
                    errors.append(f"Segment {i}: {error}")

    template = payload.get("template")
    if not isinstance(template, dict):
        errors.append("Missing required field: template")
    else:
        sections = template.get("sections")
        if not isinstance(sections, list) or not sections:
            errors.append("Template must contain at least one section")
        else:
            seen = set()
            for i, section in enumerate(sections):
                section_errors = validate_json_structure(section, ["id", "name"])
                for error in section_errors:
                    errors.append(f"Section {i}: {error}")
                if isinstance(section, dict) and section.get("id") in seen:
                    errors.append(f"Section {i}: duplicate id '{section.get('id')}'")
                if isinstance(section, dict):
                    seen.add(section.get("id"))

    return errors
