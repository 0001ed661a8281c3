"""
Unit tests for `learnflow/services/progress_sync.py` – ProgressForwarder delivery and retries.

`FlakyProgressStore` is the in-memory Progress Store with an outage switch, so each test can
fail deliveries, bring the store back, and check what the scheduled retry pass delivers.
"""

import dataclasses
import unittest

from fakes import FakeAIService, FlakyProgressStore, deadline, make_config, make_session
from learnflow.services.gap_pipeline import GapAggregationPipeline
from learnflow.services.progress_sync import ProgressForwarder
from learnflow.shared.models import ConceptualGap, GapKey, GapSignal, GapSource, Severity, SignalStrength, utc_now


def _gap(concept="loop termination", occurrences=1):
    now = utc_now()
    return ConceptualGap(
        key=GapKey.of("u1", concept),
        category="control_flow",
        severity=Severity.MODERATE,
        evidence=("while True never exits",),
        related_concepts=frozenset(),
        detected_from=GapSource.CODE,
        first_detected_at=now,
        last_seen_at=now,
        occurrences=occurrences,
    )


def _resolved(gap):
    return dataclasses.replace(gap, resolved_at=utc_now())


class TestProgressForwarder(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = FlakyProgressStore()
        self.forwarder = ProgressForwarder(self.store, config=make_config(progress={"max_attempts": 2}))

    async def test_forward_delivers_in_the_background(self):
        gap = _gap()
        delivered = await self.forwarder.forward("u1", gap)

        self.assertTrue(delivered)
        self.assertEqual(await self.store.list_gaps("u1"), [gap])
        self.assertEqual(self.forwarder.pending_count, 0)

    async def test_failed_delivery_is_retried_later(self):
        self.store.down = True
        self.assertFalse(await self.forwarder.forward("u1", _gap()))
        self.assertEqual(self.forwarder.pending_count, 1)

        self.store.down = False
        self.assertEqual(await self.forwarder.retry_pending(), 1)

        self.assertEqual(self.forwarder.pending_count, 0)
        self.assertEqual(len(await self.store.list_gaps("u1")), 1)

    async def test_delivery_is_dropped_after_max_attempts(self):
        self.store.down = True
        await self.forwarder.forward("u1", _gap())

        self.assertEqual(await self.forwarder.retry_pending(), 0)

        self.assertEqual(self.forwarder.pending_count, 0)
        self.assertEqual(self.store.attempts, 2)

    async def test_newer_state_replaces_parked_delivery(self):
        self.store.down = True
        await self.forwarder.forward("u1", _gap(occurrences=1))
        await self.forwarder.forward("u1", _gap(occurrences=2))
        self.assertEqual(self.forwarder.pending_count, 1)

        self.store.down = False
        await self.forwarder.retry_pending()

        stored = await self.store.list_gaps("u1")
        self.assertEqual([gap.occurrences for gap in stored], [2])

    async def test_resolution_is_forwarded(self):
        gap = _gap()
        await self.forwarder.forward("u1", gap)

        self.assertTrue(await self.forwarder.forward_resolution("u1", _resolved(gap)))

        stored = await self.store.list_gaps("u1")
        self.assertIsNotNone(stored[0].resolved_at)

    async def test_resolution_replaces_parked_open_gap(self):
        self.store.down = True
        gap = _gap()
        self.assertFalse(await self.forwarder.forward("u1", gap))
        self.assertEqual(self.forwarder.pending_count, 1)

        self.store.down = False
        self.assertTrue(await self.forwarder.forward_resolution("u1", _resolved(gap)))
        self.assertEqual(self.forwarder.pending_count, 0)
        self.assertEqual(await self.forwarder.retry_pending(), 0)

        stored = await self.store.list_gaps("u1")
        self.assertEqual(len(stored), 1)
        self.assertIsNotNone(stored[0].resolved_at)

    async def test_superseded_failure_is_not_parked(self):
        self.store.down = True
        gap = _gap()
        open_delivery = self.forwarder.forward("u1", gap)
        resolution = self.forwarder.forward_resolution("u1", _resolved(gap))

        self.assertFalse(await open_delivery)
        self.assertFalse(await resolution)
        self.assertEqual(self.forwarder.pending_count, 1)

        self.store.down = False
        self.assertEqual(await self.forwarder.retry_pending(), 1)

        stored = await self.store.list_gaps("u1")
        self.assertIsNotNone(stored[0].resolved_at)

    async def test_resolved_gap_stays_resolved_after_pipeline_retry(self):
        forwarder = ProgressForwarder(self.store, config=make_config(progress={"max_attempts": 5}))
        pipeline = GapAggregationPipeline(FakeAIService(), forwarder, config=make_config())
        session = make_session()
        signal = GapSignal(concept="loop termination", evidence="while True never exits",
                           source=GapSource.CODE, strength=SignalStrength.MISS)

        self.store.down = True
        await pipeline.process("u1", session, [signal], deadline())
        await forwarder.drain()
        self.assertEqual(forwarder.pending_count, 1)

        self.store.down = False
        pipeline.resolve("u1", session, "loop termination")
        await forwarder.drain()

        self.assertEqual(session.open_gaps(), [])
        stored = await self.store.list_gaps("u1")
        self.assertEqual([gap.is_open for gap in stored], [False])

    async def test_drain_flushes_parked_deliveries(self):
        self.store.down = True
        await self.forwarder.forward("u1", _gap())
        await self.forwarder.forward("u1", _gap("recursion base case"))
        self.assertEqual(self.forwarder.pending_count, 2)
        self.store.down = False

        await self.forwarder.drain()

        self.assertEqual(self.forwarder.pending_count, 0)
        self.assertEqual(len(await self.store.list_gaps("u1")), 2)


if __name__ == "__main__":
    unittest.main()
