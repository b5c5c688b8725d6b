"""
End-to-end tests for the analysis orchestrator against a scripted model client.
"""

import asyncio
import unittest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import RecordingSleep, ScriptedModelClient, default_outputs, make_payload, make_segments
from transcript_analysis.analysis.executor import CancellationToken
from transcript_analysis.analysis.merge import MISSING_SECTION_TEXT
from transcript_analysis.analysis.orchestrator import AnalysisOrchestrator, analyze_payload, parse_analysis_request
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.common.errors import ConsolidationError, ContextTooLargeError, ModelError, ValidationError
from transcript_analysis.common.mock_client import MockModelClient
from transcript_analysis.models.types import AnalysisRequest, AnalysisStrategy, DeploymentProfile


def revised_payload(summary):
    payload = default_outputs()
    payload["summary"] = summary
    payload["sections"] = [
        {"sectionId": "overview", "content": "- Budget approved and hiring opened"},
        {"sectionId": "discussion", "content": "- Budget increase\n- Two engineering positions"},
    ]
    return payload


class TestStrategies(unittest.IsolatedAsyncioTestCase):
    """Test that each strategy makes the expected calls."""

    def make_orchestrator(self, client, settings=None):
        return AnalysisOrchestrator(client, settings=settings or AnalysisSettings(), sleep=RecordingSleep())

    async def test_short_transcript_runs_basic(self):
        client = ScriptedModelClient()
        analysis = await self.make_orchestrator(client).analyze(parse_analysis_request(make_payload()))

        self.assertEqual(client.calls, ["basic-combined"])
        self.assertEqual(analysis.analysis_strategy, AnalysisStrategy.BASIC)
        meta = analysis.metadata
        self.assertTrue(meta.was_auto_selected)
        self.assertEqual(meta.requested_strategy, AnalysisStrategy.AUTO)
        self.assertEqual(meta.status, "completed")
        self.assertEqual((meta.total_phases, meta.completed_phases, meta.model_calls), (1, 1, 1))
        self.assertEqual(meta.evaluation_status, "not_requested")
        self.assertEqual(meta.deployment.deployment_id, "standard")
        self.assertIsNone(analysis.evaluation)
        self.assertIsNone(analysis.draft_results)

        results = analysis.results
        self.assertEqual([s.section_id for s in results.sections], ["overview", "discussion"])
        self.assertEqual({d.id: d.agenda_item_id for d in results.decisions}, {"d1": "a1", "d2": "a2"})
        self.assertTrue(all(d.timestamp_verified for d in results.decisions))

    async def test_explicit_hybrid_makes_three_calls(self):
        client = ScriptedModelClient()
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(strategy="hybrid"))
        )
        self.assertEqual(sorted(client.calls[:2]), ["hybrid-outputs", "hybrid-sections"])
        self.assertEqual(client.calls[2], "hybrid-consolidation")
        self.assertFalse(analysis.metadata.was_auto_selected)
        self.assertEqual(analysis.metadata.requested_strategy, AnalysisStrategy.HYBRID)
        self.assertEqual(analysis.metadata.model_calls, 3)

    async def test_explicit_advanced_on_short_transcript(self):
        client = ScriptedModelClient()
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(strategy="advanced"))
        )
        self.assertEqual(len(client.calls), 9)
        self.assertEqual(analysis.analysis_strategy, AnalysisStrategy.ADVANCED)
        self.assertIsNotNone(analysis.metadata.strategy_warning)
        self.assertIn(analysis.metadata.strategy_warning, analysis.metadata.warnings)
        first = client.prompts["advanced-phase-1"][0]
        self.assertIn("[section:overview]", first)
        self.assertNotIn("[section:discussion]", first)
        self.assertIn("[section:discussion]", client.prompts["advanced-phase-5"][0])

    async def test_medium_transcript_auto_selects_hybrid(self):
        client = ScriptedModelClient()
        request = parse_analysis_request(make_payload(make_segments(300, filler=10)))
        analysis = await self.make_orchestrator(client).analyze(request)
        self.assertEqual(analysis.analysis_strategy, AnalysisStrategy.HYBRID)
        self.assertTrue(analysis.metadata.was_auto_selected)
        self.assertEqual(len(client.calls), 3)

    async def test_long_transcript_auto_selects_advanced(self):
        client = ScriptedModelClient()
        request = parse_analysis_request(make_payload(make_segments(1000, filler=10)))
        analysis = await self.make_orchestrator(client).analyze(request)
        self.assertEqual(analysis.analysis_strategy, AnalysisStrategy.ADVANCED)
        self.assertEqual(analysis.metadata.model_calls, 9)
        self.assertGreaterEqual(analysis.metadata.transcript_tokens, 60_000)


class TestFailures(unittest.IsolatedAsyncioTestCase):
    """Test partial failures, fatal errors and pre-flight rejection."""

    def make_orchestrator(self, client, settings=None):
        return AnalysisOrchestrator(client, settings=settings or AnalysisSettings(), sleep=RecordingSleep())

    async def test_failed_branch_yields_partial_analysis(self):
        client = ScriptedModelClient(responses={"hybrid-outputs": [ModelError.fatal("refused")]})
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(strategy="hybrid"))
        )
        meta = analysis.metadata
        self.assertEqual(meta.status, "partial")
        self.assertEqual([failed.phase_id for failed in meta.failed_phases], ["hybrid-outputs"])
        self.assertEqual(meta.completed_phases, 2)
        self.assertTrue(any("Structured outputs" in warning for warning in meta.warnings))
        self.assertIn("Structured outputs (refused)", client.prompts["hybrid-consolidation"][0])
        self.assertNotEqual(analysis.results.sections[0].content, MISSING_SECTION_TEXT)

    async def test_consolidation_failure_raises(self):
        client = ScriptedModelClient(responses={"hybrid-consolidation": [ModelError.fatal("refused")]})
        with self.assertRaises(ConsolidationError):
            await self.make_orchestrator(client).analyze(parse_analysis_request(make_payload(strategy="hybrid")))

    async def test_invalid_request_makes_no_calls(self):
        client = ScriptedModelClient()
        with self.assertRaises(ValidationError) as ctx:
            parse_analysis_request(make_payload(segments=[]))
        self.assertIn("Transcript must contain at least one segment", ctx.exception.errors)

        payload = make_payload()
        payload["template"]["sections"] = []
        request = AnalysisRequest.model_validate(payload)
        with self.assertRaises(ValidationError):
            await self.make_orchestrator(client).analyze(request)
        self.assertEqual(client.calls, [])

    async def test_oversized_context_makes_no_calls(self):
        client = ScriptedModelClient()
        settings = AnalysisSettings(deployments=[DeploymentProfile(deployment_id="tiny", token_limit=100)])
        with self.assertRaises(ContextTooLargeError):
            await self.make_orchestrator(client, settings).analyze(parse_analysis_request(make_payload()))
        self.assertEqual(client.calls, [])

    async def test_unknown_citation_is_flagged_not_dropped(self):
        payload = default_outputs()
        payload["decisions"].append({"id": "d3", "decision": "Move the offsite", "timestamp": 9999})
        client = ScriptedModelClient(responses={"basic-combined": [payload]})
        analysis = await self.make_orchestrator(client).analyze(parse_analysis_request(make_payload()))

        decisions = {d.id: d for d in analysis.results.decisions}
        self.assertFalse(decisions["d3"].timestamp_verified)
        self.assertTrue(any("d3" in w for w in analysis.results.relationship_warnings))


class TestEvaluation(unittest.IsolatedAsyncioTestCase):
    """Test the optional self-evaluation pass."""

    def make_orchestrator(self, client):
        return AnalysisOrchestrator(client, settings=AnalysisSettings(), sleep=RecordingSleep())

    async def test_revision_keeps_draft(self):
        baseline = await self.make_orchestrator(ScriptedModelClient()).analyze(
            parse_analysis_request(make_payload(run_evaluation=False))
        )
        client = ScriptedModelClient(
            responses={
                "self-evaluation": [
                    {"qualityScore": 8, "reasoning": "Summary too vague.", "revisedResults": revised_payload("Budget approved.")}
                ]
            }
        )
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(run_evaluation=True))
        )
        self.assertEqual(client.calls, ["basic-combined", "self-evaluation"])
        self.assertTrue(analysis.evaluation.revised)
        self.assertAlmostEqual(analysis.evaluation.quality_score, 0.8)
        self.assertEqual(analysis.results.summary, "Budget approved.")
        self.assertEqual(analysis.draft_results.to_payload(), baseline.results.to_payload())
        self.assertNotEqual(analysis.results.to_payload(), baseline.results.to_payload())
        self.assertIsNot(analysis.draft_results, analysis.results)
        self.assertEqual(analysis.metadata.evaluation_status, "completed")
        self.assertEqual(analysis.metadata.model_calls, 2)

    async def test_no_revision(self):
        client = ScriptedModelClient()
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(run_evaluation=True))
        )
        self.assertFalse(analysis.evaluation.revised)
        self.assertAlmostEqual(analysis.evaluation.quality_score, 0.9)
        self.assertIsNone(analysis.draft_results)

    async def test_revision_that_blanks_sections_is_ignored(self):
        blanked = default_outputs()
        blanked["summary"] = "Different"
        client = ScriptedModelClient(
            responses={"self-evaluation": [{"qualityScore": 0.5, "revisedResults": blanked}]}
        )
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(run_evaluation=True))
        )
        self.assertFalse(analysis.evaluation.revised)
        self.assertIsNone(analysis.draft_results)

    async def test_evaluation_failure_is_not_fatal(self):
        client = ScriptedModelClient(responses={"self-evaluation": [ModelError.fatal("refused")]})
        analysis = await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(run_evaluation=True))
        )
        meta = analysis.metadata
        self.assertEqual(meta.status, "completed")
        self.assertEqual(meta.evaluation_status, "failed")
        self.assertEqual(meta.evaluation_error, "refused")
        self.assertIsNone(analysis.evaluation)
        self.assertEqual(len(analysis.results.decisions), 2)

    async def test_progress_reports_evaluation(self):
        events = []
        client = ScriptedModelClient()
        await self.make_orchestrator(client).analyze(
            parse_analysis_request(make_payload(run_evaluation=True)),
            progress_callback=lambda done, total, message: events.append((done, total, message)),
        )
        messages = [message for _, _, message in events]
        self.assertIn("Running self-evaluation", messages)
        self.assertEqual(messages[-1], "Self-evaluation complete")
        self.assertEqual({total for _, total, _ in events}, {1})
        completed = [done for done, _, _ in events]
        self.assertEqual(completed, sorted(completed))


class TestCancellation(unittest.IsolatedAsyncioTestCase):
    """Test cancelling a request mid-run."""

    async def test_cancel_returns_canceled_analysis(self):
        token = CancellationToken()
        client = ScriptedModelClient(delays={"hybrid-outputs": [5.0]})
        orchestrator = AnalysisOrchestrator(client, settings=AnalysisSettings(), sleep=RecordingSleep())

        asyncio.get_running_loop().call_later(0.1, token.cancel)
        analysis = await orchestrator.analyze(
            parse_analysis_request(make_payload(strategy="hybrid", run_evaluation=True)),
            cancel_token=token,
        )

        meta = analysis.metadata
        self.assertEqual(meta.status, "canceled")
        self.assertEqual(meta.evaluation_status, "skipped")
        self.assertEqual(meta.completed_phases, 1)
        self.assertNotIn("hybrid-consolidation", client.calls)
        self.assertEqual(analysis.results.sections[0].content, "- Notes for Overview")
        self.assertIsNone(analysis.evaluation)


class TestPayloadBoundary(unittest.TestCase):
    """Test the synchronous entry point and serialized shape."""

    def test_analyze_payload_with_mock_model(self):
        client = MockModelClient()
        analysis = analyze_payload(make_payload(run_evaluation=True), client, settings=AnalysisSettings())

        self.assertEqual([phase for _, phase in client.calls], ["basic-combined", "self-evaluation"])
        payload = analysis.to_payload()
        self.assertEqual(payload["analysisStrategy"], "basic")
        self.assertTrue(payload["metadata"]["wasAutoSelected"])
        self.assertEqual(payload["metadata"]["status"], "completed")
        self.assertIn("sections", payload["results"])

    def test_snake_case_payload_is_accepted(self):
        request = parse_analysis_request(
            {
                "transcript_id": "t",
                "template_id": "tpl",
                "transcript": {"segments": make_segments(2)},
                "template": {"sections": [{"id": "s", "name": "S"}], "outputs": ["ACTION_ITEMS", "actionItems"]},
            }
        )
        self.assertEqual(request.transcript_id, "t")
        self.assertEqual([o.value for o in request.template.outputs], ["action_items"])
        self.assertEqual(request.strategy, AnalysisStrategy.AUTO)
        self.assertTrue(request.run_evaluation)


if __name__ == '__main__':
    unittest.main()
