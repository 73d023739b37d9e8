"""Background near-turn promotion and arrival expiry.

All decisions come from persisted timestamps compared to the injected clock,
so a restarted process picks up exactly where the previous one stopped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from .activity import QUEUE_EXPIRED, QUEUE_NEAR_TURN, ActivityLog
from .models import EntryStatus
from .store import QueueStore

logger = logging.getLogger(__name__)

NEAR_TURN_WINDOW = 5
ARRIVAL_GRACE = timedelta(minutes=45)
SWEEP_INTERVAL_SECONDS = 30.0


@dataclass
class SweepReport:
    promoted: list[int] = field(default_factory=list)
    expired: list[int] = field(default_factory=list)
    failed_venues: list[str] = field(default_factory=list)


class QueueSweeper:
    def __init__(
        self,
        store: QueueStore,
        activity: ActivityLog,
        *,
        interval: float = SWEEP_INTERVAL_SECONDS,
        window: int = NEAR_TURN_WINDOW,
        grace: timedelta = ARRIVAL_GRACE,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.activity = activity
        self.interval = interval
        self.window = window
        self.grace = grace
        self.clock = clock or store.clock

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # -------------------- one pass --------------------

    def tick(self) -> SweepReport:
        now = self.clock()
        report = SweepReport()

        try:
            venues = self.store.venues_with_waiting()
        except Exception:
            logger.exception("Could not list venues with waiting entries")
            venues = []

        for venue_id in venues:
            try:
                report.promoted.extend(self._promote_venue(venue_id, now))
            except Exception:
                logger.exception("Near-turn sweep failed for venue %s", venue_id)
                report.failed_venues.append(venue_id)

        try:
            report.expired.extend(self._expire_due(now))
        except Exception:
            logger.exception("Expiry sweep failed")

        if report.promoted or report.expired:
            logger.info(
                "Sweep: %d promoted, %d expired", len(report.promoted), len(report.expired)
            )
        return report

    def _promote_venue(self, venue_id: str, now: datetime) -> list[int]:
        promoted = []
        for entry in self.store.list_waiting(venue_id)[: self.window]:
            if entry.near_turn_at is not None:
                continue
            if self.store.promote_near_turn(entry, now, self.grace):
                self.activity.record_entry(
                    QUEUE_NEAR_TURN,
                    entry,
                    at=now,
                    arrival_deadline=(now + self.grace).isoformat(),
                )
                promoted.append(entry.id)
        return promoted

    def _expire_due(self, now: datetime) -> list[int]:
        expired = []
        for entry in self.store.due_for_expiry(now):
            try:
                result = self.store.transition(entry.id, EntryStatus.EXPIRED)
            except Exception:
                logger.exception("Could not expire entry %s", entry.id)
                continue
            # lost a race with serve/cancel, nothing to record
            if not result.changed:
                continue
            self.activity.record_entry(QUEUE_EXPIRED, result.entry, at=now)
            expired.append(entry.id)
        return expired

    # -------------------- lifecycle --------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="queue-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None

    async def _run(self) -> None:
        logger.info("Queue sweeper started (every %ss)", self.interval)
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started = loop.time()
            # keep the blocking database work off the event loop
            await asyncio.to_thread(self.tick)
            delay = max(self.interval - (loop.time() - started), 0)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue sweeper stopped")
