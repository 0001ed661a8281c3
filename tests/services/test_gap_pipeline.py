"""
Unit tests for `learnflow/services/gap_pipeline.py` – GapAggregationPipeline.

The AI Service Layer is replaced by `FakeAIService` (categorization and recommendation
prompts are scripted per test) and the Progress Store forwarder by a `MagicMock`, so the
tests observe exactly which gaps would be forwarded without scheduling background tasks.

Covered behavior:
- creation with baseline severity and keyword categorization
- merging by natural key, severity never lowered, escalation every N occurrences
- AI categorization with retries, and rejection when no category can be found
- recommendations with a generic fallback
- explicit zero-gap result on internal errors, and no partial ledger write on cancellation
- resolution as the only way a gap stops being open
"""

import asyncio
import unittest
from unittest.mock import MagicMock, patch

from fakes import CATEGORY_MARKER, RECOMMENDATION_MARKER, FakeAIService, deadline, make_config, make_session
from learnflow.core.exceptions import GapCategorizationError
from learnflow.llm_cloud import AIUnavailable
from learnflow.services.gap_pipeline import GapAggregationPipeline
from learnflow.shared.models import GapKey, GapSignal, GapSource, SignalStrength, Severity


def _signal(concept="loop termination", evidence="while True never exits", strength=SignalStrength.MISS,
            source=GapSource.CODE, related=()):
    return GapSignal(concept=concept, evidence=evidence, source=source, strength=strength,
                     related_concepts=frozenset(related))


class TestGapIngestion(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.ai = FakeAIService()
        self.forwarder = MagicMock()
        self.pipeline = GapAggregationPipeline(self.ai, self.forwarder, config=make_config())
        self.session = make_session()

    async def test_new_signal_creates_categorized_gap(self):
        gap = await self.pipeline.ingest("u1", self.session, _signal("Loop Termination."), deadline())

        self.assertEqual(gap.concept, "loop termination")
        self.assertEqual(gap.category, "control_flow")
        self.assertIs(gap.severity, Severity.MODERATE)
        self.assertEqual(gap.occurrences, 1)
        self.assertIs(gap.detected_from, GapSource.CODE)
        self.assertIs(self.session.gap_ledger[GapKey.of("u1", "loop termination")], gap)

    async def test_repeated_signal_merges_into_one_gap(self):
        first = await self.pipeline.ingest("u1", self.session, _signal(), deadline())
        merged = await self.pipeline.ingest(
            "u1", self.session, _signal("LOOP TERMINATION", evidence="for(;;) with no break",
                                        strength=SignalStrength.HINT),
            deadline(),
        )

        self.assertEqual(len(self.session.gap_ledger), 1)
        self.assertEqual(merged.occurrences, 2)
        # A weaker signal never lowers severity
        self.assertIs(merged.severity, Severity.MODERATE)
        self.assertEqual(merged.evidence, ("while True never exits", "for(;;) with no break"))
        self.assertEqual(merged.first_detected_at, first.first_detected_at)
        self.assertGreaterEqual(merged.last_seen_at, first.last_seen_at)

    async def test_severity_escalates_every_threshold_occurrences(self):
        severities = []
        for _ in range(3):
            gap = await self.pipeline.ingest("u1", self.session, _signal(), deadline())
            severities.append(gap.severity)

        self.assertEqual(severities, [Severity.MODERATE, Severity.MODERATE, Severity.CRITICAL])

    async def test_critical_gap_stays_critical(self):
        await self.pipeline.ingest("u1", self.session, _signal(strength=SignalStrength.SEVERE), deadline())
        gap = await self.pipeline.ingest("u1", self.session, _signal(strength=SignalStrength.HINT), deadline())
        self.assertIs(gap.severity, Severity.CRITICAL)

    async def test_related_concepts_drive_keyword_categorization(self):
        gap = await self.pipeline.ingest(
            "u1", self.session, _signal("memoization", related=["Dynamic Programming"]), deadline(),
        )
        self.assertEqual(gap.category, "algorithms")
        self.assertEqual(gap.related_concepts, frozenset({"dynamic programming"}))
        self.assertEqual(self.ai.prompts_with(CATEGORY_MARKER), [])

    async def test_signal_after_resolution_opens_a_new_gap(self):
        await self.pipeline.ingest("u1", self.session, _signal(), deadline())
        self.pipeline.resolve("u1", self.session, "loop termination")

        gap = await self.pipeline.ingest("u1", self.session, _signal(), deadline())

        self.assertTrue(gap.is_open)
        self.assertEqual(gap.occurrences, 1)


class TestCategorization(unittest.IsolatedAsyncioTestCase):

    async def test_unknown_concept_is_categorized_by_ai(self):
        ai = FakeAIService(rules=[(CATEGORY_MARKER, "Functions")])
        pipeline = GapAggregationPipeline(ai, config=make_config())

        gap = await pipeline.ingest("u1", make_session(), _signal("monads"), deadline())

        self.assertEqual(gap.category, "functions")

    async def test_uncategorizable_signal_is_rejected_after_retries(self):
        ai = FakeAIService(rules=[(CATEGORY_MARKER, "no idea")])
        pipeline = GapAggregationPipeline(ai, config=make_config())
        session = make_session()

        result = await pipeline.process("u1", session, [_signal("monads")], deadline())

        self.assertEqual(result.gaps, [])
        self.assertEqual(len(result.failures), 1)
        self.assertFalse(result.ok)
        self.assertEqual(session.gap_ledger, {})
        # One attempt plus two retries
        self.assertEqual(len(ai.prompts_with(CATEGORY_MARKER)), 3)

    async def test_categorize_without_ai_raises(self):
        pipeline = GapAggregationPipeline(config=make_config())
        with self.assertRaises(GapCategorizationError):
            await pipeline.categorize(_signal("monads"), deadline())


class TestRecommendationsAndBatches(unittest.IsolatedAsyncioTestCase):

    async def test_recommendation_falls_back_when_ai_fails(self):
        ai = FakeAIService(rules=[(RECOMMENDATION_MARKER, AIUnavailable("down"))])
        pipeline = GapAggregationPipeline(ai, config=make_config())
        gap = await pipeline.ingest("u1", make_session(), _signal(), deadline())

        recommendations = await pipeline.recommend(gap, deadline())

        self.assertEqual(len(recommendations), 1)
        self.assertEqual(recommendations[0].title, "Review loop termination")
        self.assertTrue(recommendations[0].exercises)

    async def test_process_recommends_and_forwards_each_gap(self):
        forwarder = MagicMock()
        pipeline = GapAggregationPipeline(FakeAIService(), forwarder, config=make_config())
        session = make_session()

        result = await pipeline.process(
            "u1", session, [_signal(), _signal("recursion base case", evidence="no if in fact()")], deadline(), "q-1",
        )

        self.assertTrue(result.ok)
        self.assertEqual([gap.concept for gap in result.gaps], ["loop termination", "recursion base case"])
        self.assertEqual([r.title for r in result.recommendations], ["Practice the concept", "Practice the concept"])
        self.assertEqual(forwarder.forward.call_count, 2)
        forwarder.forward.assert_any_call("u1", result.gaps[0])

    async def test_merged_gap_gets_no_new_recommendation(self):
        pipeline = GapAggregationPipeline(FakeAIService(), config=make_config())
        session = make_session()
        await pipeline.process("u1", session, [_signal()], deadline())

        result = await pipeline.process("u1", session, [_signal(evidence="still no exit")], deadline())

        self.assertEqual(result.gaps[0].occurrences, 2)
        self.assertEqual(result.recommendations, [])

    async def test_internal_error_yields_explicit_zero_gap_result(self):
        pipeline = GapAggregationPipeline(FakeAIService(), config=make_config())
        with patch.object(pipeline, "_ingest", side_effect=RuntimeError("boom")):
            result = await pipeline.process("u1", make_session(), [_signal()], deadline())

        self.assertEqual(result.gaps, [])
        self.assertEqual(result.failures, ["internal error: RuntimeError"])

    async def test_cancellation_leaves_no_partial_gap(self):
        ai = FakeAIService(rules=[(CATEGORY_MARKER, "functions")], delays={CATEGORY_MARKER: 1.0})
        pipeline = GapAggregationPipeline(ai, config=make_config())
        session = make_session()

        task = asyncio.create_task(pipeline.process("u1", session, [_signal("monads")], deadline()))
        await asyncio.sleep(0.05)
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertEqual(session.gap_ledger, {})


class TestResolution(unittest.IsolatedAsyncioTestCase):

    async def test_resolve_marks_gap_and_forwards_resolution(self):
        forwarder = MagicMock()
        pipeline = GapAggregationPipeline(FakeAIService(), forwarder, config=make_config())
        session = make_session()
        await pipeline.ingest("u1", session, _signal(), deadline())

        resolved = pipeline.resolve("u1", session, "Loop termination")

        self.assertIsNotNone(resolved.resolved_at)
        self.assertEqual(session.open_gaps(), [])
        forwarder.forward_resolution.assert_called_once_with("u1", resolved)
        self.assertEqual(resolved.key, GapKey.of("u1", "loop termination"))
        self.assertIsNone(pipeline.resolve("u1", session, "loop termination"))

    async def test_resolving_unknown_concept_returns_none(self):
        pipeline = GapAggregationPipeline(config=make_config())
        self.assertIsNone(pipeline.resolve("u1", make_session(), "closures"))


if __name__ == "__main__":
    unittest.main()
