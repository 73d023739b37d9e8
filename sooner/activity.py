"""Append-only activity records for queue events.

Recording is best effort: a failed insert is logged and never reaches the
caller, so queue operations never fail because of the audit trail.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.engine import Engine
from sqlmodel import select

from .database import get_session
from .models import ActivityRecord, QueueEntry, utcnow

logger = logging.getLogger(__name__)

QUEUE_ENTERED = "queue.entered"
QUEUE_NEAR_TURN = "queue.near_turn"
QUEUE_EXPIRED = "queue.expired"
QUEUE_SERVED = "queue.served"
QUEUE_CANCELED = "queue.canceled"


class ActivityLog:
    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self.clock = clock

    def record(
        self,
        type: str,
        *,
        venue_id: str,
        user_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> None:
        try:
            with get_session(self.engine) as session:
                session.add(
                    ActivityRecord(
                        user_id=user_id,
                        venue_id=venue_id,
                        type=type,
                        at=at or self.clock(),
                        meta=meta or {},
                    )
                )
                session.commit()
        except Exception:
            logger.exception("Activity %s for venue %s was not recorded", type, venue_id)

    def record_entry(self, type: str, entry: QueueEntry, *, at: Optional[datetime] = None, **meta: Any) -> None:
        self.record(
            type,
            venue_id=entry.venue_id,
            user_id=entry.user_id,
            meta={"entry_id": entry.id, "position": entry.position, **meta},
            at=at,
        )

    def recent(self, venue_id: str, *, limit: int = 50) -> list[ActivityRecord]:
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(ActivityRecord)
                    .where(ActivityRecord.venue_id == venue_id)
                    .order_by(ActivityRecord.at.desc(), ActivityRecord.id.desc())
                    .limit(limit)
                ).all()
            )

    def served_history(self, user_id: str, *, limit: int = 100) -> list[ActivityRecord]:
        """Visits where the customer was served, newest first."""
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(ActivityRecord)
                    .where(
                        ActivityRecord.user_id == user_id,
                        ActivityRecord.type == QUEUE_SERVED,
                    )
                    .order_by(ActivityRecord.at.desc(), ActivityRecord.id.desc())
                    .limit(limit)
                ).all()
            )
