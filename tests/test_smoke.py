"""
Smoke tests for the transcript analysis orchestrator.

Basic tests to ensure the project structure is correct and
imports work as expected.
"""

import unittest
import os
import sys

# Add src to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from pydantic import ValidationError as PydanticValidationError

from transcript_analysis.models.schemas import RESULTS_SCHEMA, get_schema_by_type, schema_for_phase, scoped_schema
from transcript_analysis.models.types import Analysis, AnalysisSection, PhaseKind, Template


class TestProjectStructure(unittest.TestCase):
    """Test basic project structure and imports."""

    def test_imports_work(self):
        """Test that all main modules can be imported."""
        try:
            from transcript_analysis.analysis.orchestrator import AnalysisOrchestrator
            from transcript_analysis.common.bedrock_client import BedrockClient
            from transcript_analysis.common.s3io import S3Client
            from transcript_analysis.handlers.analyze_transcript import lambda_handler
        except ImportError as e:
            self.fail(f"Failed to import modules: {e}")

    def test_section_normalization(self):
        """Model output with list content and unknown formats is normalized."""
        section = AnalysisSection.model_validate(
            {"id": "risks", "content": ["Budget overrun", "Hiring delay"], "outputFormat": "slides"}
        )
        self.assertEqual(section.section_id, "risks")
        self.assertEqual(section.content, "- Budget overrun\n- Hiring delay")
        self.assertIsNone(section.output_format)

    def test_template_outputs_accept_any_casing(self):
        template = Template.model_validate(
            {"sections": [{"id": "s", "name": "S"}], "outputs": ["Summary", "action-items", "QUOTES"]}
        )
        self.assertEqual([o.value for o in template.outputs], ["summary", "action_items", "quotes"])

    def test_analysis_is_immutable(self):
        analysis = Analysis.model_validate(
            {
                "id": "analysis-1",
                "transcriptId": "t-1",
                "templateId": "tpl-1",
                "analysisStrategy": "basic",
                "results": {
                    "summary": "Budget review.",
                    "sections": [{"sectionId": "overview", "content": "- Budget", "evidence": [{"text": "budget", "start": 1}]}],
                    "decisions": [{"id": "d1", "decision": "Approve the budget", "timestamp": 10}],
                },
                "metadata": {
                    "status": "completed",
                    "wasAutoSelected": True,
                    "requestedStrategy": "auto",
                    "strategyReasoning": "short",
                    "deployment": {
                        "deploymentId": "standard",
                        "tokenLimit": 256000,
                        "estimatedTokens": 100,
                        "utilizationPercentage": 0.04,
                        "isExtendedContext": False,
                    },
                    "totalPhases": 1,
                    "completedPhases": 1,
                    "transcriptTokens": 100,
                    "durationSeconds": 0.1,
                    "startedAt": "2024-01-01T00:00:00+00:00",
                    "completedAt": "2024-01-01T00:00:01+00:00",
                    "warnings": ["one"],
                },
            }
        )
        self.assertIsInstance(analysis.results.decisions, tuple)
        self.assertIsInstance(analysis.results.sections[0].evidence, tuple)
        self.assertIsInstance(analysis.metadata.warnings, tuple)

        with self.assertRaises(PydanticValidationError):
            analysis.results = analysis.results
        with self.assertRaises(PydanticValidationError):
            analysis.results.summary = "Changed"
        with self.assertRaises(PydanticValidationError):
            analysis.results.decisions[0].agenda_item_id = "a1"
        with self.assertRaises(PydanticValidationError):
            analysis.results.sections[0].evidence[0].verified = True
        with self.assertRaises(PydanticValidationError):
            analysis.metadata.deployment.deployment_id = "extended"
        with self.assertRaises(AttributeError):
            analysis.results.decisions.append(analysis.results.decisions[0])


class TestSchemas(unittest.TestCase):
    """Test JSON schema definitions."""

    def test_results_schema_exists(self):
        self.assertIn("properties", RESULTS_SCHEMA)
        self.assertIn("actionItems", RESULTS_SCHEMA["properties"])

    def test_schema_lookup(self):
        """Test schema lookup by type."""
        self.assertEqual(get_schema_by_type("sections")["title"], "sections")
        self.assertIs(schema_for_phase(PhaseKind.CASCADE), RESULTS_SCHEMA)
        self.assertIs(schema_for_phase(PhaseKind.OUTPUTS), get_schema_by_type("outputs"))

        with self.assertRaises(ValueError):
            get_schema_by_type("invalid_type")

    def test_scoped_schema_limits_section_ids(self):
        scoped = scoped_schema(RESULTS_SCHEMA, ["risks", "next_steps"])
        sections = scoped["properties"]["sections"]
        self.assertEqual(sections["items"]["properties"]["sectionId"]["enum"], ["risks", "next_steps"])
        self.assertEqual((sections["minItems"], sections["maxItems"]), (2, 2))
        self.assertEqual(scoped["title"], "results")
        self.assertNotIn("enum", RESULTS_SCHEMA["properties"]["sections"]["items"]["properties"]["sectionId"])


if __name__ == '__main__':
    unittest.main()
