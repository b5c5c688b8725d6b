"""
Tests for relationship linking, citation checks and result merging.
"""

import unittest
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.dirname(__file__))

from fakes import default_outputs, make_segments
from transcript_analysis.analysis.linker import (
    ensure_unique_ids,
    extract_keywords,
    keyword_similarity,
    link_relationships,
)
from transcript_analysis.analysis.merge import (
    MISSING_SECTION_TEXT,
    merge_phase_results,
    phase_result_from_payload,
    placeholder_result,
    prune_results,
    results_from_payload,
)
from transcript_analysis.analysis.phases import build_phase_plan
from transcript_analysis.common.config import AnalysisSettings
from transcript_analysis.models.types import AnalysisStrategy, Template, TranscriptSegment


def segments(count=6):
    return [TranscriptSegment.model_validate(segment) for segment in make_segments(count)]


def template(outputs=("summary", "decisions", "action_items", "quotes")):
    return Template.model_validate(
        {
            "sections": [
                {"id": "overview", "name": "Overview"},
                {"id": "discussion", "name": "Discussion", "extractEvidence": True},
            ],
            "outputs": list(outputs),
        }
    )


class TestKeywords(unittest.TestCase):
    """Test keyword extraction and similarity."""

    def test_stopwords_and_plurals(self):
        self.assertEqual(extract_keywords("The team agreed on the budgets"), {"budget"})
        self.assertEqual(extract_keywords(None), set())

    def test_jaccard(self):
        self.assertEqual(keyword_similarity({"a", "b"}, {"b", "c"}), 1 / 3)
        self.assertEqual(keyword_similarity(set(), {"a"}), 0.0)


class TestLinking(unittest.TestCase):
    """Test agenda -> decision -> action linking."""

    def test_links_by_keyword_overlap(self):
        results = results_from_payload(default_outputs())
        linked = link_relationships(results, segments())

        decisions = {d.id: d for d in linked.decisions}
        self.assertEqual(decisions["d1"].agenda_item_id, "a1")
        self.assertEqual(decisions["d2"].agenda_item_id, "a2")
        actions = {a.id: a for a in linked.action_items}
        self.assertEqual(actions["t1"].decision_id, "d1")
        self.assertEqual(actions["t2"].decision_id, "d2")

    def test_links_never_loop(self):
        linked = link_relationships(results_from_payload(default_outputs()), segments())
        decisions = {d.id: d for d in linked.decisions}
        for action in linked.action_items:
            chain = [("action", action.id)]
            decision = decisions.get(action.decision_id)
            if decision is not None:
                chain.append(("decision", decision.id))
                if decision.agenda_item_id:
                    chain.append(("agenda", decision.agenda_item_id))
            self.assertEqual(len(set(chain)), len(chain))

    def test_input_is_not_modified(self):
        results = results_from_payload(default_outputs())
        link_relationships(results, segments())
        self.assertIsNone(results.decisions[0].agenda_item_id)
        self.assertIsNone(results.decisions[0].timestamp_verified)

    def test_decision_falls_back_to_preceding_agenda_item(self):
        payload = {
            "agendaItems": [
                {"id": "a1", "topic": "Quarterly budget review", "timestamp": 0},
                {"id": "a2", "topic": "Office relocation", "timestamp": 30},
            ],
            "decisions": [{"id": "d1", "decision": "Sign the lease next week", "timestamp": 40}],
        }
        linked = link_relationships(results_from_payload(payload), segments())
        self.assertEqual(linked.decisions[0].agenda_item_id, "a2")

    def test_unmatched_action_stays_unlinked(self):
        payload = {
            "decisions": [{"id": "d1", "decision": "Approve the quarterly budget", "timestamp": 10}],
            "actionItems": [{"id": "t1", "task": "Book the team offsite venue", "timestamp": 20}],
        }
        linked = link_relationships(results_from_payload(payload), segments())
        self.assertIsNone(linked.action_items[0].decision_id)

    def test_tie_prefers_nearest_preceding_candidate(self):
        payload = {
            "agendaItems": [
                {"id": "a1", "topic": "Budget", "timestamp": 0},
                {"id": "a2", "topic": "Budget", "timestamp": 30},
                {"id": "a3", "topic": "Budget", "timestamp": 50},
            ],
            "decisions": [{"id": "d1", "decision": "Budget", "timestamp": 40}],
        }
        linked = link_relationships(results_from_payload(payload), segments())
        self.assertEqual(linked.decisions[0].agenda_item_id, "a2")

    def test_dangling_references_are_dropped(self):
        payload = dict(default_outputs())
        payload["decisions"] = [{"id": "d1", "decision": "Approve the quarterly budget", "agendaItemId": "missing", "timestamp": 10}]
        linked = link_relationships(results_from_payload(payload), segments())
        self.assertEqual(linked.decisions[0].agenda_item_id, "a1")
        self.assertTrue(any("unknown agenda item missing" in w for w in linked.relationship_warnings))

    def test_explicit_references_are_kept(self):
        payload = dict(default_outputs())
        payload["decisions"] = [
            {"id": "d1", "decision": "Approve the quarterly budget increase", "agendaItemIds": ["a2"], "timestamp": 10},
        ]
        linked = link_relationships(results_from_payload(payload), segments())
        self.assertEqual(linked.decisions[0].agenda_item_id, "a2")

    def test_ids_are_made_unique(self):
        payload = {
            "quotes": [{"text": "One"}, {"text": "Two", "id": "q"}, {"text": "Three", "id": "q"}],
            "agendaItems": [{"topic": "First"}, {"topic": "Second"}],
        }
        unique = ensure_unique_ids(results_from_payload(payload))
        quote_ids = [quote.id for quote in unique.quotes]
        self.assertEqual(len(set(quote_ids)), 3)
        self.assertEqual(quote_ids[1], "q")
        self.assertEqual([item.id for item in unique.agenda_items], ["agenda-1", "agenda-2"])


class TestCitations(unittest.TestCase):
    """Test timestamp verification against transcript segments."""

    def test_known_and_unknown_citations(self):
        payload = dict(default_outputs())
        payload["quotes"] = [
            {"id": "q1", "text": "We cannot keep deferring the hiring plan.", "timestamp": "[00:35]"},
            {"id": "q2", "text": "Invented", "timestamp": 9999},
            {"id": "q3", "text": "Undated"},
        ]
        linked = link_relationships(results_from_payload(payload), segments())
        quotes = {quote.id: quote for quote in linked.quotes}

        self.assertEqual(quotes["q1"].timestamp, 35.0)
        self.assertTrue(quotes["q1"].timestamp_verified)
        self.assertFalse(quotes["q2"].timestamp_verified)
        self.assertFalse(quotes["q3"].timestamp_verified)
        self.assertEqual(len(linked.quotes), 3)
        self.assertTrue(any("q2" in w and "matches no transcript segment" in w for w in linked.relationship_warnings))
        self.assertTrue(any("q3" in w for w in linked.relationship_warnings))

    def test_tolerance_covers_marker_rounding(self):
        segs = [TranscriptSegment(index=0, start=10.6, end=14.0, text="Hello")]
        payload = {"quotes": [{"id": "q1", "text": "Hello", "timestamp": 10}, {"id": "q2", "text": "Hello", "timestamp": 17}]}
        linked = link_relationships(results_from_payload(payload), segs, timestamp_tolerance=2.0)
        self.assertTrue(linked.quotes[0].timestamp_verified)
        self.assertFalse(linked.quotes[1].timestamp_verified)

    def test_evidence_is_verified(self):
        payload = {
            "sections": [
                {
                    "sectionId": "discussion",
                    "content": "- Budget",
                    "evidence": [{"text": "budget", "start": 10, "end": 12}, {"text": "nope", "start": 500}],
                }
            ]
        }
        linked = link_relationships(results_from_payload(payload), segments())
        evidence = linked.sections[0].evidence
        self.assertTrue(evidence[0].verified)
        self.assertFalse(evidence[1].verified)


class TestMerging(unittest.TestCase):
    """Test shaping results to the template."""

    def test_prune_orders_sections_and_fills_missing(self):
        results = results_from_payload(
            {
                "sections": [
                    {"sectionId": "discussion", "content": "- Hiring"},
                    {"sectionId": "unknown", "content": "- Dropped"},
                ],
            }
        )
        pruned = prune_results(results, template())
        self.assertEqual([s.section_id for s in pruned.sections], ["overview", "discussion"])
        self.assertEqual(pruned.sections[0].content, MISSING_SECTION_TEXT)
        self.assertEqual(pruned.sections[1].content, "- Hiring")

    def test_prune_drops_unrequested_outputs(self):
        pruned = prune_results(results_from_payload(default_outputs()), template(outputs=("action_items",)))
        self.assertIsNone(pruned.summary)
        self.assertEqual(pruned.decisions, ())
        self.assertEqual(pruned.quotes, ())
        self.assertEqual(len(pruned.action_items), 2)
        self.assertEqual(len(pruned.agenda_items), 2)

    def test_malformed_items_are_skipped(self):
        results = results_from_payload({"decisions": [{"decision": "Keep"}, {"context": "no decision text"}, "Plain"]})
        self.assertEqual([d.decision for d in results.decisions], ["Keep", "Plain"])

    def test_merge_skips_placeholders(self):
        plan = build_phase_plan(AnalysisStrategy.HYBRID, AnalysisSettings())
        sections = phase_result_from_payload(
            plan.get("hybrid-sections"),
            {"summary": "Budget meeting.", "sections": [{"sectionId": "overview", "content": "- Budget"}]},
            1,
            0.2,
        )
        outputs = placeholder_result(plan.get("hybrid-outputs"), "canceled")
        merged = merge_phase_results([sections, outputs], template())
        self.assertEqual(merged.summary, "Budget meeting.")
        self.assertEqual(merged.sections[0].content, "- Budget")
        self.assertEqual(merged.decisions, ())


if __name__ == '__main__':
    unittest.main()
