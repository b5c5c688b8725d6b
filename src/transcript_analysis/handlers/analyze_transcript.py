"""
Lambda handler for running a transcript analysis.

The request is taken inline from ``event['request']`` (or the event itself), or
read from S3 when ``input_key`` is given. The finished Analysis is returned and,
when ``output_key`` is set, also written to S3.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from transcript_analysis.analysis.orchestrator import AnalysisOrchestrator, parse_analysis_request
from transcript_analysis.common.bedrock_client import BedrockClient, BedrockModelClient
from transcript_analysis.common.config import AnalysisSettings, mock_mode_enabled
from transcript_analysis.common.errors import (
    ConfigurationError,
    ConsolidationError,
    ContextTooLargeError,
    ValidationError,
)
from transcript_analysis.common.mock_client import MockModelClient
from transcript_analysis.common.s3io import AnalysisStore, S3Client

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (ValidationError, 400),
    (ContextTooLargeError, 413),
    (ConsolidationError, 502),
    (ConfigurationError, 500),
)


def build_model_client(settings: AnalysisSettings):
    """Return the mock client in mock mode, otherwise a Bedrock-backed client."""

    if mock_mode_enabled():
        logger.info("MOCK_BEDROCK set; using offline mock model")
        return MockModelClient()
    bedrock = BedrockClient(read_timeout=settings.call_timeout_seconds)
    return BedrockModelClient(bedrock, settings.model_ids, max_tokens=settings.max_output_tokens)


def _load_payload(event: Dict[str, Any], s3_client: Optional[S3Client]) -> Dict[str, Any]:
    if event.get('input_key'):
        if s3_client is None:
            s3_client = S3Client()
        logger.info(f"Loading analysis request from {event['input_key']}")
        return s3_client.read_json_file(event['input_key'])
    return event.get('request', event)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Lambda handler for transcript analysis.

    Args:
        event: Analysis request, or {request | input_key, output_key?}
        context: Lambda context (unused)

    Returns:
        {'statusCode': 200, 'analysis': ..., 'output_key'?: ...} on success,
        {'statusCode': 4xx/5xx, 'error': ..., 'error_type': ...} on failure
    """
    try:
        settings = AnalysisSettings.from_env()
        s3_client = S3Client() if (event.get('input_key') or event.get('output_key')) else None

        payload = _load_payload(event, s3_client)
        request = parse_analysis_request(payload)
        logger.info(f"Analyzing transcript {request.transcript_id} with template {request.template_id}")

        orchestrator = AnalysisOrchestrator(build_model_client(settings), settings=settings)

        def log_progress(completed: int, total: int, message: str) -> None:
            logger.info(f"[{completed}/{total}] {message}")

        analysis = asyncio.run(orchestrator.analyze(request, progress_callback=log_progress))

        response: Dict[str, Any] = {
            'statusCode': 200,
            'transcript_id': analysis.transcript_id,
            'analysis_id': analysis.id,
            'status': analysis.metadata.status,
            'analysis': analysis.to_payload(),
        }
        if event.get('output_key'):
            response['output_key'] = AnalysisStore(s3_client).save(analysis, key=event['output_key'])
        return response

    except Exception as e:
        status_code = next((code for error_type, code in _ERROR_STATUS if isinstance(e, error_type)), 500)
        logger.error(f"Error analyzing transcript: {str(e)}")
        body: Dict[str, Any] = {
            'statusCode': status_code,
            'error': str(e),
            'error_type': type(e).__name__,
        }
        if isinstance(e, ValidationError):
            body['errors'] = e.errors
        return body
