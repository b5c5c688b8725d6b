"""
Amazon Bedrock client utilities for the transcript analysis orchestrator.

BedrockClient makes single, synchronous InvokeModel calls and translates AWS
failures into the orchestrator's error taxonomy. Retries are owned by the phase
executor, so boto3's own retry loop is disabled. BedrockModelClient adapts the
blocking client to the async ModelClient interface.
"""

import asyncio
import functools
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional, Union

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from transcript_analysis.common.errors import ConfigurationError, ModelError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

TRANSIENT_ERROR_CODES = {
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailableException",
    "InternalServerException",
    "ModelTimeoutException",
    "ModelNotReadyException",
}

CONFIGURATION_ERROR_CODES = {
    "AccessDeniedException",
    "ResourceNotFoundException",
    "UnrecognizedClientException",
    "ExpiredTokenException",
}

SYSTEM_PROMPT = (
    "You are an expert meeting analyst. You only report what the transcript supports, "
    "cite transcript timestamps accurately, and always answer with a single JSON object."
)


def classify_client_error(error: ClientError) -> Exception:
    """
    Map a botocore ClientError onto ModelError or ConfigurationError.

    Args:
        error: Error raised by the bedrock-runtime client

    Returns:
        Exception to raise in its place
    """
    details = error.response.get("Error", {})
    code = details.get("Code", "")
    message = details.get("Message", str(error))
    if code in TRANSIENT_ERROR_CODES:
        return ModelError(f"Bedrock {code}: {message}", transient=True)
    if code in CONFIGURATION_ERROR_CODES:
        return ConfigurationError(f"Bedrock {code}: {message}")
    return ModelError.fatal(f"Bedrock {code or 'error'}: {message}")


class BedrockClient:
    """Client for interacting with Amazon Bedrock inference."""

    def __init__(
        self,
        region: Optional[str] = None,
        default_model_id: Optional[str] = None,
        client: Any = None,
        read_timeout: float = 900,
    ):
        """
        Initialize Bedrock client.

        Args:
            region: AWS region (defaults to environment variable)
            default_model_id: Model id or inference profile ARN used when a call names none
            client: Pre-built bedrock-runtime client (tests inject a stub here)
            read_timeout: Seconds botocore waits for a response before giving up
        """
        self.region = region or os.getenv('REGION', 'us-east-1')
        self.default_model_id = (
            default_model_id or os.getenv('INFERENCE_PROFILE_ARN') or os.getenv('BEDROCK_MODEL_ID')
        )

        if client is not None:
            self.client = client
            return

        # The read timeout bounds how long a worker thread can block; retries are handled by the executor.
        config = Config(
            read_timeout=read_timeout,
            connect_timeout=60,
            retries={'max_attempts': 0}
        )
        try:
            self.client = boto3.client('bedrock-runtime', region_name=self.region, config=config)
        except BotoCoreError as e:
            raise ConfigurationError(f"Cannot create bedrock-runtime client: {e}") from e

    def invoke_model(
        self,
        user_prompt: str,
        system_prompt: str = SYSTEM_PROMPT,
        model_id: Optional[str] = None,
        max_tokens: int = 8000,
        temperature: float = 0.3,
    ) -> str:
        """
        Invoke a Claude model on Bedrock once.

        Args:
            user_prompt: User's actual prompt
            system_prompt: System context/instructions for the model
            model_id: Model id or inference profile (defaults to the client default)
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature

        Returns:
            Model response text

        Raises:
            ModelError: Transient (throttling, 5xx, timeouts, empty output) or fatal
                (invalid request, refusal, truncated output)
            ConfigurationError: Missing model id, credentials, permissions or endpoint
        """
        target = model_id or self.default_model_id
        if not target:
            raise ConfigurationError("No Bedrock model id configured (set INFERENCE_PROFILE_ARN or BEDROCK_MODEL_ID)")

        request_body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [
                {
                    "role": "user",
                    "content": user_prompt
                }
            ]
        }

        try:
            response = self.client.invoke_model(
                modelId=target,
                body=json.dumps(request_body),
                contentType='application/json',
                accept='application/json'
            )
        except ClientError as e:
            mapped = classify_client_error(e)
            logger.warning(f"Bedrock client error on {target}: {mapped}")
            raise mapped from e
        except (ReadTimeoutError, ConnectTimeoutError) as e:
            # ConnectTimeoutError subclasses EndpointConnectionError, so it must be caught first.
            logger.warning(f"Bedrock request timed out: {e}")
            raise ModelError(f"Bedrock request timed out: {e}", transient=True) from e
        except (NoCredentialsError, EndpointConnectionError) as e:
            logger.error(f"Bedrock unreachable: {e}")
            raise ConfigurationError(f"Bedrock unreachable: {e}") from e
        except BotoCoreError as e:
            logger.error(f"Boto core error: {e}")
            raise ModelError(f"AWS SDK error: {e}", transient=True) from e

        response_body = json.loads(response['body'].read())
        stop_reason = response_body.get('stop_reason')
        if stop_reason == 'max_tokens':
            raise ModelError.fatal(f"Model output truncated at {max_tokens} tokens")
        if stop_reason == 'refusal':
            raise ModelError.fatal("Model refused to answer the request")

        content = response_body.get('content') or []
        response_text = "".join(block.get('text', '') for block in content if block.get('type', 'text') == 'text')
        if not response_text.strip():
            logger.warning("Bedrock returned empty response text")
            raise ModelError("Model returned empty response text", transient=True)
        return response_text


class BedrockModelClient:
    """Async ModelClient backed by BedrockClient; blocking calls run in the default executor."""

    def __init__(
        self,
        client: BedrockClient,
        model_ids: Optional[Mapping[str, str]] = None,
        max_tokens: int = 8000,
    ):
        self.client = client
        self.model_ids = dict(model_ids or {})
        self.max_tokens = max_tokens

    def build_prompt(self, prompt: str, schema_hint: Optional[Dict[str, Any]]) -> str:
        if not schema_hint:
            return prompt
        schema = json.dumps(schema_hint, indent=1)
        return f"{prompt}\nRespond with one JSON object matching this schema, with no text before or after it:\n{schema}\n"

    async def invoke(
        self,
        deployment_id: str,
        prompt: str,
        schema_hint: Optional[Dict[str, Any]] = None,
    ) -> Union[str, Dict[str, Any]]:
        model_id = self.model_ids.get(deployment_id, deployment_id)
        call = functools.partial(
            self.client.invoke_model,
            self.build_prompt(prompt, schema_hint),
            model_id=model_id,
            max_tokens=self.max_tokens,
        )
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, call)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # A running boto3 call cannot be interrupted; settle only once its thread is free.
            await asyncio.wait({future})
            if not future.cancelled():
                future.exception()
            raise
