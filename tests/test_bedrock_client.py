"""
Tests for the Bedrock client wrapper, JSON parsing and S3 storage, with mocked AWS clients.
"""

import asyncio
import io
import json
import unittest
import os
import sys
import threading
import time
from unittest.mock import Mock, patch

from botocore.exceptions import ClientError, NoCredentialsError, ReadTimeoutError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import RecordingSleep, make_payload
from transcript_analysis.analysis.context import PhasePrompt
from transcript_analysis.analysis.executor import PhaseExecutor
from transcript_analysis.common.bedrock_client import BedrockClient, BedrockModelClient, classify_client_error
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import ConfigurationError, ModelError, PhaseTimeoutError
from transcript_analysis.common.json_utils import (
    extract_json_from_text,
    parse_model_json,
    validate_json_structure,
    validate_request_payload,
)
from transcript_analysis.common.s3io import AnalysisStore, S3Client
from transcript_analysis.models.schemas import get_schema_by_type


def client_error(code, message="boom"):
    return ClientError({"Error": {"Code": code, "Message": message}}, "InvokeModel")


def bedrock_response(text, stop_reason="end_turn"):
    body = {"content": [{"type": "text", "text": text}], "stop_reason": stop_reason}
    return {"body": io.BytesIO(json.dumps(body).encode("utf-8"))}


class BlockingBedrock:
    """BedrockClient stand-in whose calls block a worker thread, like a slow InvokeModel."""

    def __init__(self, seconds):
        self.seconds = seconds
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0
        self.finished = 0

    def invoke_model(self, user_prompt, model_id=None, max_tokens=8000):
        with self.lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            time.sleep(self.seconds)
            return '{"summary": "late"}'
        finally:
            with self.lock:
                self.in_flight -= 1
                self.finished += 1


class TestErrorClassification(unittest.TestCase):
    """Test mapping of AWS failures onto transient, fatal and configuration errors."""

    def test_throttling_is_transient(self):
        error = classify_client_error(client_error("ThrottlingException"))
        self.assertIsInstance(error, ModelError)
        self.assertTrue(error.transient)

    def test_validation_is_fatal(self):
        error = classify_client_error(client_error("ValidationException"))
        self.assertIsInstance(error, ModelError)
        self.assertFalse(error.transient)
        self.assertEqual(error.kind, "fatal")

    def test_access_denied_is_configuration(self):
        self.assertIsInstance(classify_client_error(client_error("AccessDeniedException")), ConfigurationError)


class TestBedrockClient(unittest.TestCase):
    """Test single InvokeModel calls against a stubbed runtime client."""

    def setUp(self):
        self.runtime = Mock()
        self.client = BedrockClient(region="us-east-1", default_model_id="model-x", client=self.runtime)

    def test_invoke_returns_text(self):
        self.runtime.invoke_model.return_value = bedrock_response('{"summary": "ok"}')
        text = self.client.invoke_model("Analyze this", max_tokens=100)

        self.assertEqual(text, '{"summary": "ok"}')
        kwargs = self.runtime.invoke_model.call_args.kwargs
        self.assertEqual(kwargs["modelId"], "model-x")
        body = json.loads(kwargs["body"])
        self.assertEqual(body["max_tokens"], 100)
        self.assertEqual(body["messages"][0]["content"], "Analyze this")

    def test_client_error_is_mapped(self):
        self.runtime.invoke_model.side_effect = client_error("ServiceUnavailableException")
        with self.assertRaises(ModelError) as ctx:
            self.client.invoke_model("Analyze this")
        self.assertTrue(ctx.exception.transient)

    def test_read_timeout_is_transient(self):
        self.runtime.invoke_model.side_effect = ReadTimeoutError(endpoint_url="https://bedrock")
        with self.assertRaises(ModelError) as ctx:
            self.client.invoke_model("Analyze this")
        self.assertTrue(ctx.exception.transient)

    def test_missing_credentials_is_configuration(self):
        self.runtime.invoke_model.side_effect = NoCredentialsError()
        with self.assertRaises(ConfigurationError):
            self.client.invoke_model("Analyze this")

    def test_truncated_output_is_fatal(self):
        self.runtime.invoke_model.return_value = bedrock_response('{"summary": ', stop_reason="max_tokens")
        with self.assertRaises(ModelError) as ctx:
            self.client.invoke_model("Analyze this")
        self.assertFalse(ctx.exception.transient)

    def test_empty_output_is_transient(self):
        self.runtime.invoke_model.return_value = bedrock_response("   ")
        with self.assertRaises(ModelError) as ctx:
            self.client.invoke_model("Analyze this")
        self.assertTrue(ctx.exception.transient)

    def test_missing_model_id(self):
        client = BedrockClient(client=self.runtime)
        client.default_model_id = None
        with self.assertRaises(ConfigurationError):
            client.invoke_model("Analyze this")
        self.runtime.invoke_model.assert_not_called()

    @patch('transcript_analysis.common.bedrock_client.boto3.client')
    def test_read_timeout_reaches_botocore(self, mock_boto_client):
        BedrockClient(region="us-east-1", default_model_id="model-x", read_timeout=120)
        config = mock_boto_client.call_args.kwargs["config"]
        self.assertEqual(config.read_timeout, 120)
        self.assertEqual(config.retries, {"max_attempts": 0})


class TestBedrockModelClient(unittest.IsolatedAsyncioTestCase):
    """Test the async adapter used by the phase executor."""

    async def test_invoke_maps_deployment_and_appends_schema(self):
        bedrock = Mock()
        bedrock.invoke_model.return_value = '{"summary": "ok"}'
        client = BedrockModelClient(bedrock, {"extended": "model-1m"}, max_tokens=500)

        result = await client.invoke("extended", "PHASE: basic-combined", get_schema_by_type("results"))

        self.assertEqual(result, '{"summary": "ok"}')
        args, kwargs = bedrock.invoke_model.call_args
        self.assertIn("Respond with one JSON object", args[0])
        self.assertEqual(kwargs, {"model_id": "model-1m", "max_tokens": 500})

    async def test_cancelled_invoke_waits_for_its_thread(self):
        bedrock = BlockingBedrock(0.3)
        client = BedrockModelClient(bedrock)

        task = asyncio.ensure_future(client.invoke("standard", "PHASE: basic-combined"))
        await asyncio.sleep(0.05)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(bedrock.finished, 1)
        self.assertEqual(bedrock.in_flight, 0)

    async def test_timed_out_call_keeps_its_slot(self):
        bedrock = BlockingBedrock(0.3)
        settings = AnalysisSettings(call_timeout_seconds=0.1, max_concurrency=1, max_attempts=2)
        executor = PhaseExecutor(BedrockModelClient(bedrock), "standard", settings, sleep=RecordingSleep())
        prompt = PhasePrompt(phase_id="basic-combined", text="PHASE: basic-combined")

        with self.assertRaises(PhaseTimeoutError):
            await executor.call_model(prompt)
        while bedrock.finished < 2:
            await asyncio.sleep(0.05)

        self.assertEqual(executor.model_calls, 2)
        self.assertEqual(bedrock.max_in_flight, 1)


class TestJsonUtils(unittest.TestCase):
    """Test model output parsing and request validation."""

    def test_parse_fenced_json(self):
        self.assertEqual(parse_model_json('```json\n{"a": 1}\n```'), {"a": 1})

    def test_parse_json_inside_prose(self):
        text = 'Here is the analysis: {"a": {"b": "x}"}} Hope this helps.'
        self.assertEqual(extract_json_from_text(text), '{"a": {"b": "x}"}}')
        self.assertEqual(parse_model_json(text), {"a": {"b": "x}"}})

    def test_unparseable_is_transient(self):
        for bad in ("", "no json here", "[1, 2]"):
            with self.assertRaises(ModelError) as ctx:
                parse_model_json(bad)
            self.assertTrue(ctx.exception.transient, bad)

    def test_dict_passes_through(self):
        payload = {"a": 1}
        self.assertIs(parse_model_json(payload), payload)

    def test_validate_json_structure(self):
        self.assertEqual(validate_json_structure({"a": 1}, ["a"]), [])
        errors = validate_json_structure({"a": None}, ["a", "b"])
        self.assertEqual(len(errors), 2)

    def test_validate_request_payload(self):
        self.assertEqual(validate_request_payload(make_payload()), [])

        payload = make_payload(segments=[{"start": 0, "end": 1}])
        payload["template"]["sections"].append({"id": "overview", "name": "Again"})
        del payload["transcriptId"]
        errors = validate_request_payload(payload)
        self.assertIn("Missing required field: transcriptId", errors)
        self.assertIn("Segment 0: Missing required field: text", errors)
        self.assertTrue(any("duplicate id 'overview'" in error for error in errors))
        self.assertEqual(validate_request_payload([]), ["Request must be a JSON object"])

    def test_schema_lookup(self):
        self.assertEqual(get_schema_by_type("evaluation")["title"], "evaluation")
        with self.assertRaises(ValueError):
            get_schema_by_type("invalid_type")


class TestS3Storage(unittest.TestCase):
    """Test JSON storage of requests and analyses."""

    def setUp(self):
        self.s3 = Mock()
        self.client = S3Client(bucket_name="bucket", client=self.s3)

    def test_missing_object(self):
        self.s3.get_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        with self.assertRaises(FileNotFoundError):
            self.client.read_json_file("requests/missing.json")

    def test_invalid_json(self):
        self.s3.get_object.return_value = {"Body": io.BytesIO(b"not json")}
        with self.assertRaises(ValueError):
            self.client.read_json_file("requests/bad.json")

    def test_store_key_layout(self):
        store = AnalysisStore(self.client, prefix="/analyses/")
        self.assertEqual(store.key_for("t1", "a1"), "analyses/t1/a1.json")

    def test_store_writes_analysis_payload(self):
        analysis = Mock(transcript_id="t1", id="a1")
        analysis.to_payload.return_value = {"id": "a1", "transcriptId": "t1"}
        store = AnalysisStore(self.client)

        self.assertEqual(store.save(analysis), "analyses/t1/a1.json")
        self.assertEqual(store.save(analysis, key="out/custom.json"), "out/custom.json")
        keys = [call.kwargs["Key"] for call in self.s3.put_object.call_args_list]
        self.assertEqual(keys, ["analyses/t1/a1.json", "out/custom.json"])
        self.assertEqual(json.loads(self.s3.put_object.call_args.kwargs["Body"]), {"id": "a1", "transcriptId": "t1"})

    def test_bucket_is_required(self):
        with patch.dict(os.environ, {"BUCKET": ""}):
            with self.assertRaises(ConfigurationError):
                S3Client(client=self.s3)


if __name__ == '__main__':
    unittest.main()
