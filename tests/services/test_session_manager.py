"""
Unit tests for `learnflow/services/session_manager.py` – session ownership and lifecycle.

The Session Store is the in-memory implementation (or `FailingSessionStore` for the store
outage cases). The work passed to `SessionManager.run` is a small coroutine that records how
many runs overlap, which is how per-session serialization is observed.
"""

import asyncio
import datetime
import unittest

from fakes import FailingSessionStore, make_config
from learnflow.core.exceptions import InvalidQuery, SessionEnded, SessionStoreUnavailable
from learnflow.provider_api.mock_client import InMemorySessionStore
from learnflow.services.session_manager import SessionManager
from learnflow.shared.models import Interaction, Mode, Session, utc_now


class OverlapProbe:
    """Work factory that sleeps and tracks the highest number of overlapping runs."""

    def __init__(self, delay=0.05):
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def __call__(self, session):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            session.query_count += 1
            return session.id
        finally:
            self.active -= 1


class TestSessionCreation(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = InMemorySessionStore()
        self.manager = SessionManager(self.store, config=make_config())

    async def test_first_contact_creates_and_persists_session(self):
        session = await self.manager.get_or_create("s1", "u1")

        self.assertIs(session.mode, Mode.CONCEPT)
        self.assertIsNotNone(await self.store.get("s1"))
        self.assertIs(await self.manager.get_or_create("s1", "u1"), session)
        self.assertEqual(self.manager.active_count, 1)

    async def test_session_of_another_learner_is_rejected(self):
        await self.manager.get_or_create("s1", "u1")
        with self.assertRaises(InvalidQuery):
            await self.manager.get_or_create("s1", "intruder")

    async def test_store_outage_at_creation_is_fatal(self):
        manager = SessionManager(FailingSessionStore(fail_put=True), config=make_config())
        with self.assertRaises(SessionStoreUnavailable):
            await manager.get_or_create("s1", "u1")
        self.assertEqual(manager.active_count, 0)

    async def test_get_loads_a_stored_session(self):
        await self.store.put(Session(id="s9", user_id="u9", mode=Mode.EXAM), ttl_s=60)

        session = await self.manager.get("s9")

        self.assertIs(session.mode, Mode.EXAM)
        self.assertIs(await self.manager.get("s9"), session)

    async def test_get_with_store_outage_returns_none(self):
        manager = SessionManager(FailingSessionStore(fail_get=True), config=make_config())
        self.assertIsNone(await manager.get("s1"))

    async def test_persist_is_best_effort(self):
        store = FailingSessionStore()
        manager = SessionManager(store, config=make_config())
        session = await manager.get_or_create("s1", "u1")
        store.fail_put = True

        self.assertFalse(await manager.persist(session))


class TestSessionRuns(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = InMemorySessionStore()
        self.manager = SessionManager(self.store, config=make_config())

    async def test_runs_on_one_session_never_overlap(self):
        probe = OverlapProbe()
        await asyncio.gather(*(self.manager.run("s1", "u1", probe) for _ in range(3)))

        self.assertEqual(probe.max_active, 1)
        session = await self.manager.get("s1")
        self.assertEqual(session.query_count, 3)

    async def test_runs_on_different_sessions_overlap(self):
        probe = OverlapProbe()
        await asyncio.gather(self.manager.run("s1", "u1", probe), self.manager.run("s2", "u2", probe))
        self.assertEqual(probe.max_active, 2)

    async def test_run_persists_the_session_afterwards(self):
        await self.manager.run("s1", "u1", OverlapProbe(delay=0))
        stored = await self.store.get("s1")
        self.assertEqual(stored.query_count, 1)

    async def test_end_session_cancels_running_and_queued_work(self):
        slow = OverlapProbe(delay=5)
        running = asyncio.create_task(self.manager.run("s1", "u1", slow))
        await asyncio.sleep(0.05)
        queued = asyncio.create_task(self.manager.run("s1", "u1", slow))
        await asyncio.sleep(0.05)
        self.assertTrue(self.manager.is_busy("s1"))

        summary = await self.manager.end_session("s1")

        with self.assertRaises(SessionEnded):
            await running
        with self.assertRaises(SessionEnded):
            await queued
        self.assertEqual(summary.query_count, 0)
        self.assertEqual(slow.max_active, 1)


class TestSessionTeardown(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.store = InMemorySessionStore()
        self.manager = SessionManager(self.store, config=make_config())

    async def test_end_session_keeps_only_aggregates(self):
        session = await self.manager.get_or_create("s1", "u1")
        session.context_window.append(Interaction.summary("earlier talk"))
        session.query_count = 4

        summary = await self.manager.end_session("s1", reason="ended")

        self.assertEqual(summary.query_count, 4)
        self.assertEqual(summary.reason, "ended")
        self.assertEqual(session.context_window, [])
        self.assertEqual(session.gap_ledger, {})
        self.assertIsNone(await self.store.get("s1"))
        self.assertIsNone(await self.manager.get("s1"))
        self.assertIs(self.manager.summary("s1"), summary)
        self.assertEqual(summary.to_dict()["queryCount"], 4)

    async def test_end_unknown_session_returns_none(self):
        self.assertIsNone(await self.manager.end_session("nope"))

    async def test_only_the_newest_summaries_are_kept(self):
        manager = SessionManager(self.store, config=make_config(sessions={"max_summaries": 2}))
        for session_id in ("s1", "s2", "s3"):
            await manager.get_or_create(session_id, "u1")
            await manager.end_session(session_id)

        self.assertIsNone(manager.summary("s1"))
        self.assertEqual([manager.summary(sid).session_id for sid in ("s2", "s3")], ["s2", "s3"])

    async def test_store_delete_failure_does_not_block_teardown(self):
        manager = SessionManager(FailingSessionStore(fail_delete=True), config=make_config())
        await manager.get_or_create("s1", "u1")

        summary = await manager.end_session("s1")

        self.assertIsNotNone(summary)
        self.assertEqual(manager.active_count, 0)

    async def test_expire_idle_ends_only_idle_sessions(self):
        idle = await self.manager.get_or_create("idle", "u1")
        await self.manager.get_or_create("fresh", "u2")
        idle.last_activity_at = utc_now() - datetime.timedelta(hours=2)

        summaries = await self.manager.expire_idle()

        self.assertEqual([s.session_id for s in summaries], ["idle"])
        self.assertEqual(summaries[0].reason, "idle_timeout")
        self.assertIsNotNone(await self.manager.get("fresh"))

    async def test_expire_idle_skips_busy_sessions(self):
        session = await self.manager.get_or_create("s1", "u1")
        running = asyncio.create_task(self.manager.run("s1", "u1", OverlapProbe(delay=0.2)))
        await asyncio.sleep(0.05)
        session.last_activity_at = utc_now() - datetime.timedelta(hours=2)

        self.assertEqual(await self.manager.expire_idle(), [])
        await running


if __name__ == "__main__":
    unittest.main()
