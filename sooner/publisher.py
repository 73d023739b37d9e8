"""Live queue snapshots for owner dashboards, delivered as server-sent events.

Each frame carries the complete state (queue, capacity, settings); clients
never merge partial updates. Writes that land while a snapshot is being built
only set a flag, so bursts collapse into one extra snapshot that is read
after the last commit.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

from fastapi.responses import StreamingResponse

from .capacity import compute_capacity, estimate_wait_minutes
from .models import QueueEntry, VenueSettings, utcnow
from .store import QueueStore, normalize_venue_id
from .venues import VenueDirectory

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 25.0
WAIT_MINUTES_PER_GROUP = 8
KEEP_ALIVE = ": keep-alive\n\n"


def format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'))}\n\n"


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_entry(entry: QueueEntry, rank: int, estimated_wait: int) -> dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "name": entry.name or "Guest",
        "email": entry.email or "",
        "phone": entry.phone or "",
        "party_size": entry.party_size,
        "position": entry.position,
        "rank": rank,
        "status": entry.status.value,
        "near_turn": entry.near_turn_at is not None,
        "joined_at": _isoformat(entry.joined_at),
        "near_turn_at": _isoformat(entry.near_turn_at),
        "arrival_deadline": _isoformat(entry.arrival_deadline),
        "timer_paused": entry.timer_paused,
        "estimated_wait_minutes": estimated_wait,
    }


def serialize_settings(settings: VenueSettings) -> dict[str, Any]:
    return {
        "walkins_enabled": bool(settings.walkins_enabled),
        "open_status": settings.open_status.value,
        "queue_active": bool(settings.queue_active),
        "updated_at": _isoformat(settings.updated_at),
    }


class SnapshotPublisher:
    def __init__(
        self,
        store: QueueStore,
        venues: VenueDirectory,
        *,
        heartbeat: float = HEARTBEAT_SECONDS,
        wait_minutes_per_group: int = WAIT_MINUTES_PER_GROUP,
    ) -> None:
        self.store = store
        self.venues = venues
        self.heartbeat = heartbeat
        self.wait_minutes_per_group = wait_minutes_per_group

    def build_snapshot(self, venue_id: object) -> dict[str, Any]:
        venue = normalize_venue_id(venue_id)
        entries = self.store.list_waiting(venue)
        capacity = compute_capacity(
            self.venues.get_total_seats(venue), [entry.party_size for entry in entries]
        )
        settings = self.venues.load_settings(venue)
        return {
            "venue_id": venue,
            "generated_at": utcnow().isoformat(),
            "queue": [
                serialize_entry(
                    entry,
                    rank=index + 1,
                    estimated_wait=estimate_wait_minutes(index, self.wait_minutes_per_group),
                )
                for index, entry in enumerate(entries)
            ],
            "capacity": capacity.to_dict(),
            "settings": serialize_settings(settings),
        }

    async def _snapshot_frame(self, venue_id: str) -> Optional[str]:
        try:
            snapshot = await asyncio.to_thread(self.build_snapshot, venue_id)
        except Exception:
            logger.exception("Snapshot for venue %s failed", venue_id)
            return None
        return format_sse("snapshot", snapshot)

    async def stream(self, venue_id: object) -> AsyncIterator[str]:
        """Yield SSE frames until the consumer closes the generator."""
        venue = normalize_venue_id(venue_id)
        loop = asyncio.get_running_loop()
        changed = asyncio.Event()

        def on_change(_venue_id: str) -> None:
            # writers run in worker threads
            loop.call_soon_threadsafe(changed.set)

        subscription = self.store.on_mutation(venue, on_change)
        logger.debug("Dashboard stream opened for venue %s", venue)
        try:
            frame = await self._snapshot_frame(venue)
            stale = frame is None
            yield frame or KEEP_ALIVE

            while True:
                try:
                    await asyncio.wait_for(changed.wait(), timeout=self.heartbeat)
                except asyncio.TimeoutError:
                    if not stale:
                        yield KEEP_ALIVE
                        continue
                changed.clear()
                frame = await self._snapshot_frame(venue)
                stale = frame is None
                yield frame or KEEP_ALIVE
        finally:
            subscription.close()
            logger.debug("Dashboard stream closed for venue %s", venue)


class EventStreamResponse(StreamingResponse):
    """``text/event-stream`` response that closes its frame generator on exit.

    A dropped client stops the response mid-send; closing the generator here
    releases the store subscription right away instead of at garbage
    collection.
    """

    media_type = "text/event-stream"

    def __init__(self, frames: AsyncIterator[str], **kwargs: Any) -> None:
        headers = {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            **kwargs.pop("headers", {}),
        }
        super().__init__(frames, headers=headers, **kwargs)

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            aclose = getattr(self.body_iterator, "aclose", None)
            if aclose is not None:
                await aclose()
