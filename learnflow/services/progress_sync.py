"""
Progress Store forwarding.

Finalized gaps are forwarded to the Progress Store without making the learner wait: each
delivery runs as its own background task. A failed delivery is logged and parked in a
pending queue that the scheduler retries on an interval, up to `progress.max_attempts`
attempts per delivery.

Only the newest state of a gap matters to the store. Deliveries are keyed by user and gap
key alone, so a newer write of either kind (a gap update or a resolution) replaces a parked
older one, and a failed write that has since been superseded is never parked again.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

from learnflow.config import CONFIG
from learnflow.config.logging_config import get_logger
from learnflow.monitoring.metrics import PROGRESS_DELIVERIES
from learnflow.provider_api.base import ProgressStore
from learnflow.shared.models import ConceptualGap, GapKey

logger = get_logger(__name__)

APPEND = "append"
RESOLVE = "resolve"


@dataclass
class PendingDelivery:
    """A Progress Store write that has not succeeded yet."""
    kind: str
    user_id: str
    gap: ConceptualGap
    sequence: int = 0
    attempts: int = 0

    @property
    def key(self) -> GapKey:
        return self.gap.key

    @property
    def slot(self) -> Tuple[str, GapKey]:
        return self.user_id, self.gap.key


class ProgressForwarder:
    """
    Fire-and-forget delivery of gap updates to the Progress Store, with retries.

    Args:
        store (ProgressStore): Destination store.
        config (dict, optional): Configuration; reads the `progress` section.
    """

    def __init__(self, store: ProgressStore, config: Optional[Dict[str, Any]] = None):
        progress_config = (config or CONFIG).get("progress", {})
        self.store = store
        self.max_attempts = int(progress_config.get("max_attempts", 5))
        self.delivery_timeout_s = float(progress_config.get("delivery_timeout_s", 5.0))
        self._pending: "OrderedDict[Tuple[str, GapKey], PendingDelivery]" = OrderedDict()
        # Sequence number of the newest write scheduled per gap
        self._latest: Dict[Tuple[str, GapKey], int] = {}
        self._sequence = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def forward(self, user_id: str, gap: ConceptualGap) -> asyncio.Task:
        """Schedule delivery of the latest state of `gap`. Returns immediately."""
        return self._schedule(PendingDelivery(kind=APPEND, user_id=user_id, gap=gap))

    def forward_resolution(self, user_id: str, gap: ConceptualGap) -> asyncio.Task:
        """
        Schedule delivery of a resolved gap. Returns immediately.

        The resolved state is written with `append_gap` before `mark_resolved` is called, so a
        store that never received the open gap (its delivery was still parked) ends up with
        the resolved one rather than nothing.
        """
        return self._schedule(PendingDelivery(kind=RESOLVE, user_id=user_id, gap=gap))

    def _schedule(self, delivery: PendingDelivery) -> asyncio.Task:
        self._sequence += 1
        delivery.sequence = self._sequence
        self._latest[delivery.slot] = delivery.sequence
        self._pending.pop(delivery.slot, None)
        task = asyncio.create_task(self._deliver(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _is_current(self, delivery: PendingDelivery) -> bool:
        return self._latest.get(delivery.slot) == delivery.sequence

    def _settle(self, delivery: PendingDelivery) -> None:
        if self._is_current(delivery):
            del self._latest[delivery.slot]

    async def _deliver(self, delivery: PendingDelivery) -> bool:
        delivery.attempts += 1
        try:
            await asyncio.wait_for(self._send(delivery), timeout=self.delivery_timeout_s)
        except asyncio.CancelledError:
            self._park(delivery)
            raise
        except Exception as e:
            if not self._is_current(delivery):
                PROGRESS_DELIVERIES.labels(outcome='superseded').inc()
                logger.info(
                    "[ProgressForwarder] %s for %s failed but a newer write replaced it: %s",
                    delivery.kind, delivery.key, e, extra={'user_id': delivery.user_id},
                )
                return False
            if delivery.attempts >= self.max_attempts:
                self._settle(delivery)
                PROGRESS_DELIVERIES.labels(outcome='dropped').inc()
                logger.error(
                    "[ProgressForwarder] Dropping %s for %s after %d attempts: %s",
                    delivery.kind, delivery.key, delivery.attempts, e,
                    extra={'user_id': delivery.user_id},
                )
                return False
            self._park(delivery)
            PROGRESS_DELIVERIES.labels(outcome='retry_scheduled').inc()
            logger.warning(
                "[ProgressForwarder] %s for %s failed (attempt %d/%d), will retry: %s",
                delivery.kind, delivery.key, delivery.attempts, self.max_attempts, e,
                extra={'user_id': delivery.user_id},
            )
            return False

        self._settle(delivery)
        PROGRESS_DELIVERIES.labels(outcome='delivered').inc()
        logger.debug("[ProgressForwarder] Delivered %s for %s", delivery.kind, delivery.key)
        return True

    async def _send(self, delivery: PendingDelivery) -> None:
        await self.store.append_gap(delivery.user_id, delivery.gap)
        if delivery.kind == RESOLVE:
            await self.store.mark_resolved(delivery.user_id, delivery.key)

    def _park(self, delivery: PendingDelivery) -> None:
        # Only the newest write for a gap is worth retrying
        if self._is_current(delivery):
            self._pending[delivery.slot] = delivery

    async def retry_pending(self) -> int:
        """
        Retry every parked delivery once.

        Returns:
            int: Number of deliveries that succeeded on this pass.
        """
        if not self._pending:
            return 0
        batch = list(self._pending.values())
        self._pending.clear()
        delivered = 0
        for delivery in batch:
            if not self._is_current(delivery):
                continue
            if await self._deliver(delivery):
                delivered += 1
        logger.info(
            "[ProgressForwarder] Retry pass delivered %d/%d, %d still pending",
            delivered, len(batch), len(self._pending),
        )
        return delivered

    async def drain(self) -> None:
        """Wait for in-flight deliveries, then make one last retry pass. Used at shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.retry_pending()
