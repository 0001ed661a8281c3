"""
services/session_manager.py

Session ownership, serialization and lifecycle.

The session manager is the only owner of live `Session` aggregates. It provides:
- `get_or_create`: first contact creates the session and persists it to the Session Store
  (the store being down at this moment is the one fatal condition)
- `run`: executes work for a session under that session's lock, so queries on one
  session are strictly sequential while different sessions run in parallel
- `end_session` / `expire_idle`: cancel in-flight work, clear sensitive fields, keep an
  aggregate summary, and delete the stored copy

All other Session Store traffic is best-effort: a failed write is logged and counted,
and the in-memory session keeps serving the learner.
"""

import asyncio
import datetime
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.core.exceptions import InvalidQuery, SessionEnded, SessionStoreUnavailable
from learnflow.monitoring.metrics import ERROR_COUNT
from learnflow.provider_api.base import SessionStore
from learnflow.shared.models import Mode, Session, SessionSummary, utc_now

logger = get_logger(__name__)

T = TypeVar("T")


class SessionManager:
    """
    Owns live sessions, their locks and their in-flight work.

    Args:
        store (SessionStore): Durable session persistence.
        config (dict, optional): Configuration; reads the `sessions` and `modes` sections.
    """

    def __init__(self, store: SessionStore, config: Optional[Dict[str, Any]] = None):
        self.config = config or CONFIG
        sessions_config = self.config.get("sessions", {})
        self.store = store
        self.ttl_s = int(sessions_config.get("ttl_s", 3600))
        self.idle_timeout_s = int(sessions_config.get("idle_timeout_s", 1800))
        self.max_summaries = int(sessions_config.get("max_summaries", 1000))
        self.default_mode = Mode(self.config["modes"].get("default", "concept"))
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Dict[str, Set[asyncio.Task]] = {}
        self._ended_tasks: Set[asyncio.Task] = set()
        # Summaries of ended sessions, oldest evicted first past `sessions.max_summaries`
        self._summaries: "OrderedDict[str, SessionSummary]" = OrderedDict()
        self._create_lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def is_busy(self, session_id: str) -> bool:
        return bool(self._in_flight.get(session_id))

    async def get(self, session_id: str) -> Optional[Session]:
        """Return the live session, loading it from the store if needed. Store failures give None."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        try:
            stored = await self.store.get(session_id)
        except Exception as e:
            self._store_failure("get", session_id, e)
            return None
        if stored is not None:
            self._sessions.setdefault(session_id, stored)
            return self._sessions[session_id]
        return None

    async def get_or_create(self, session_id: str, user_id: str) -> Session:
        """
        Return the session, creating and persisting it on first contact.

        Raises:
            InvalidQuery: If the session belongs to another learner.
            SessionStoreUnavailable: If a new session cannot be persisted.
        """
        session = self._sessions.get(session_id)
        if session is None:
            async with self._create_lock:
                session = await self.get(session_id)
                if session is None:
                    session = Session(id=session_id, user_id=user_id, mode=self.default_mode)
                    try:
                        await self.store.put(session, self.ttl_s)
                    except Exception as e:
                        ERROR_COUNT.labels(type='store', location='session_create').inc()
                        logger.error(
                            "[SessionManager] Session Store unavailable at session creation: %s", e,
                            extra={'session_id': session_id, 'user_id': user_id},
                        )
                        raise SessionStoreUnavailable("Session could not be created") from e
                    self._sessions[session_id] = session
                    logger.info("[SessionManager] Created session", extra={'session_id': session_id, 'user_id': user_id})
        if session.user_id != user_id:
            raise InvalidQuery("Session belongs to a different learner")
        return session

    async def persist(self, session: Session) -> bool:
        """Best-effort write of the session snapshot. Returns False on failure."""
        try:
            await self.store.put(session, self.ttl_s)
            return True
        except Exception as e:
            self._store_failure("put", session.id, e)
            return False

    def _store_failure(self, operation: str, session_id: str, error: Exception) -> None:
        ERROR_COUNT.labels(type='store', location=f'session_{operation}').inc()
        logger.warning(
            "[SessionManager] Session Store %s failed, continuing from memory: %s", operation, error,
            extra={'session_id': session_id},
        )

    async def run(self, session_id: str, user_id: str, work: Callable[[Session], Awaitable[T]]) -> T:
        """
        Run `work(session)` exclusively for this session.

        The work runs as its own task so that `end_session` can cancel it. The session is
        touched and persisted afterwards unless it was ended meanwhile.

        Raises:
            SessionEnded: If the session was ended before or while the work ran.
            SessionStoreUnavailable: If the session had to be created and could not be persisted.
        """
        session = await self.get_or_create(session_id, user_id)
        async with self.lock_for(session_id):
            if self._sessions.get(session_id) is not session:
                raise SessionEnded("Session ended before the request was processed")

            task = asyncio.create_task(work(session))
            in_flight = self._in_flight.setdefault(session_id, set())
            in_flight.add(task)
            try:
                return await task
            except asyncio.CancelledError:
                if task in self._ended_tasks:
                    raise SessionEnded("Session ended while the request was in flight") from None
                raise
            finally:
                in_flight.discard(task)
                self._ended_tasks.discard(task)
                if self._sessions.get(session_id) is session:
                    session.touch()
                    await self.persist(session)

    async def end_session(self, session_id: str, reason: str = "ended") -> Optional[SessionSummary]:
        """
        Tear a session down: cancel in-flight work, keep aggregate metrics, clear the rest.

        Returns:
            Optional[SessionSummary]: The summary, or None if the session never existed.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            session = await self.get(session_id)
            self._sessions.pop(session_id, None)
            if session is None:
                return self._summaries.get(session_id)

        tasks = self._in_flight.pop(session_id, set())
        for task in tasks:
            self._ended_tasks.add(task)
            task.cancel()
        if tasks:
            await asyncio.wait(tasks, timeout=5)

        summary = SessionSummary(
            session_id=session.id,
            user_id=session.user_id,
            mode=session.mode,
            query_count=session.query_count,
            gap_count=len(session.gap_ledger),
            created_at=session.created_at,
            ended_at=utc_now(),
            reason=reason,
        )
        session.context_window.clear()
        session.gap_ledger.clear()
        self._remember_summary(summary)
        self._locks.pop(session_id, None)

        try:
            await self.store.delete(session_id)
        except Exception as e:
            self._store_failure("delete", session_id, e)

        logger.info(
            "[SessionManager] Session ended (%s): %d queries, %d gaps, %d cancelled",
            reason, summary.query_count, summary.gap_count, len(tasks), extra={'session_id': session_id},
        )
        return summary

    async def expire_idle(self, now: Optional[datetime.datetime] = None) -> List[SessionSummary]:
        """End sessions idle for longer than `sessions.idle_timeout_s`. Busy sessions are skipped."""
        now = now or utc_now()
        cutoff = now - datetime.timedelta(seconds=self.idle_timeout_s)
        idle = [
            session_id for session_id, session in self._sessions.items()
            if session.last_activity_at < cutoff and not self.is_busy(session_id)
        ]
        summaries = []
        for session_id in idle:
            summary = await self.end_session(session_id, reason="idle_timeout")
            if summary is not None:
                summaries.append(summary)
        if summaries:
            logger.info("[SessionManager] Expired %d idle session(s)", len(summaries))
        return summaries

    def summary(self, session_id: str) -> Optional[SessionSummary]:
        return self._summaries.get(session_id)

    def _remember_summary(self, summary: SessionSummary) -> None:
        self._summaries.pop(summary.session_id, None)
        self._summaries[summary.session_id] = summary
        while len(self._summaries) > self.max_summaries:
            self._summaries.popitem(last=False)
