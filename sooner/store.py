"""Persistent queue entries and the mutation feed dashboards listen to.

Every state change is a single conditional ``UPDATE`` keyed by the entry id
and its expected status, so concurrent writers (owner serve, customer cancel,
sweeper expiry) resolve to whichever commits first. Subscribers registered
with :meth:`QueueStore.on_mutation` are called after each committed write.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .database import get_session
from .errors import AlreadyQueued, InvalidPartySize, InvalidTransition, NotFound
from .models import EntryStatus, QueueEntry, VenueCounter, utcnow

logger = logging.getLogger(__name__)

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")
MAX_VENUE_ID_LENGTH = 64

PARTY_SIZE_MIN = 1
PARTY_SIZE_MAX = 12

# managed by the store itself, never by transition callers
RESERVED_TRANSITION_FIELDS = frozenset({"id", "venue_id", "status", "updated_at", "position", "joined_at"})

Clock = Callable[[], datetime]
MutationCallback = Callable[[str], None]


def normalize_venue_id(value: object) -> str:
    """Canonical venue reference used for every stored and queried row."""
    text = str(value).strip() if value is not None else ""
    if not text or len(text) > MAX_VENUE_ID_LENGTH:
        raise NotFound("Venue not found")
    if OBJECT_ID_PATTERN.match(text):
        return text.lower()
    return text


def _update(model):
    # rows are never loaded into these sessions, so skip ORM state syncing
    return update(model).execution_options(synchronize_session=False)


def clamp_party_size(value: Optional[int], minimum: int = PARTY_SIZE_MIN, maximum: int = PARTY_SIZE_MAX) -> int:
    if value is None:
        return minimum
    return max(minimum, min(maximum, value))


class Subscription:
    def __init__(self, bus: "MutationBus", venue_id: str, callback: MutationCallback) -> None:
        self._bus = bus
        self.venue_id = venue_id
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._bus._remove(self)
            self.closed = True


class MutationBus:
    """In-process observer registry keyed by venue."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, venue_id: str, callback: MutationCallback) -> Subscription:
        subscription = Subscription(self, venue_id, callback)
        with self._lock:
            self._subscribers.setdefault(venue_id, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.venue_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.venue_id, None)

    def subscriber_count(self, venue_id: Optional[str] = None) -> int:
        with self._lock:
            if venue_id is not None:
                return len(self._subscribers.get(venue_id, []))
            return sum(len(subs) for subs in self._subscribers.values())

    def notify(self, venue_id: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(venue_id, []))
        for subscription in subscribers:
            try:
                subscription.callback(venue_id)
            except Exception:
                logger.exception("Mutation subscriber for venue %s failed", venue_id)


@dataclass(frozen=True)
class TransitionResult:
    entry: QueueEntry
    changed: bool


class QueueStore:
    def __init__(
        self,
        engine: Engine,
        *,
        clock: Clock = utcnow,
        bus: Optional[MutationBus] = None,
        min_party_size: int = PARTY_SIZE_MIN,
        max_party_size: int = PARTY_SIZE_MAX,
    ) -> None:
        self.engine = engine
        self.clock = clock
        self.bus = bus or MutationBus()
        self.min_party_size = min_party_size
        self.max_party_size = max_party_size

    # -------------------- writes --------------------

    def append(
        self,
        venue_id: object,
        party_size: int,
        *,
        user_id: Optional[str] = None,
        name: str = "Guest",
        email: str = "",
        phone: str = "",
    ) -> QueueEntry:
        venue = normalize_venue_id(venue_id)
        if (
            not isinstance(party_size, int)
            or isinstance(party_size, bool)
            or not self.min_party_size <= party_size <= self.max_party_size
        ):
            raise InvalidPartySize(
                f"Party size must be between {self.min_party_size} and {self.max_party_size}"
            )

        # a concurrent first join may create the counter row under us; retry once
        for attempt in range(2):
            try:
                with get_session(self.engine) as session:
                    now = self.clock()
                    entry = QueueEntry(
                        venue_id=venue,
                        user_id=user_id,
                        name=(name or "").strip() or "Guest",
                        email=(email or "").strip(),
                        phone=(phone or "").strip(),
                        party_size=party_size,
                        position=self._next_position(session, venue),
                        status=EntryStatus.WAITING,
                        joined_at=now,
                        updated_at=now,
                    )
                    session.add(entry)
                    session.commit()
                    session.refresh(entry)
                break
            except IntegrityError:
                if user_id is not None and self.find_active(user_id) is not None:
                    raise AlreadyQueued("Already in a queue") from None
                if attempt:
                    raise
                logger.debug("Position counter for venue %s created concurrently, retrying", venue)

        logger.info("Entry %s joined venue %s at position %s", entry.id, venue, entry.position)
        self.bus.notify(venue)
        return entry

    def _next_position(self, session: Session, venue_id: str) -> int:
        result = session.exec(
            _update(VenueCounter)
            .where(VenueCounter.venue_id == venue_id)
            .values(value=VenueCounter.value + 1)
        )
        if result.rowcount == 0:
            session.add(VenueCounter(venue_id=venue_id, value=1))
            session.flush()
            return 1
        return session.exec(
            select(VenueCounter.value).where(VenueCounter.venue_id == venue_id)
        ).one()

    def transition(
        self,
        entry_id: int,
        new_status: object,
        *,
        venue_id: Optional[object] = None,
        values: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """Move a waiting entry to ``new_status``.

        Only waiting entries change. A terminal entry asked to become
        terminal again is left alone and reported with ``changed=False``;
        asking a terminal entry to wait again is an ``InvalidTransition``.
        """
        try:
            target = EntryStatus(new_status)
        except ValueError:
            raise InvalidTransition(f"Unknown queue status: {new_status!r}") from None
        reserved = RESERVED_TRANSITION_FIELDS.intersection(values or {})
        if reserved:
            raise InvalidTransition(f"Cannot set {', '.join(sorted(reserved))} through a transition")
        venue = normalize_venue_id(venue_id) if venue_id is not None else None

        with get_session(self.engine) as session:
            statement = _update(QueueEntry).where(
                QueueEntry.id == entry_id,
                QueueEntry.status == EntryStatus.WAITING,
            )
            if venue is not None:
                statement = statement.where(QueueEntry.venue_id == venue)
            result = session.exec(
                statement.values(status=target, updated_at=self.clock(), **(values or {}))
            )
            session.commit()
            entry = session.get(QueueEntry, entry_id)

        if entry is None or (venue is not None and entry.venue_id != venue):
            raise NotFound("Queue entry not found")

        if result.rowcount:
            logger.info("Entry %s of venue %s is now %s", entry.id, entry.venue_id, target.value)
            self.bus.notify(entry.venue_id)
            return TransitionResult(entry=entry, changed=True)

        if target is EntryStatus.WAITING and entry.status.is_terminal:
            raise InvalidTransition(
                f"Entry {entry.id} is {entry.status.value} and cannot wait again"
            )
        logger.debug(
            "Entry %s already %s, ignoring move to %s", entry.id, entry.status.value, target.value
        )
        return TransitionResult(entry=entry, changed=False)

    def promote_near_turn(self, entry: QueueEntry, now: datetime, grace: timedelta) -> bool:
        """Arm the arrival deadline once; already promoted entries are left alone."""
        with get_session(self.engine) as session:
            result = session.exec(
                _update(QueueEntry)
                .where(
                    QueueEntry.id == entry.id,
                    QueueEntry.status == EntryStatus.WAITING,
                    QueueEntry.near_turn_at.is_(None),
                )
                .values(near_turn_at=now, arrival_deadline=now + grace, updated_at=now)
            )
            session.commit()
        if not result.rowcount:
            return False
        self.bus.notify(entry.venue_id)
        return True

    def pause_timer(self, entry_id: int, *, venue_id: Optional[object] = None) -> QueueEntry:
        venue = normalize_venue_id(venue_id) if venue_id is not None else None
        with get_session(self.engine) as session:
            statement = _update(QueueEntry).where(
                QueueEntry.id == entry_id,
                QueueEntry.status == EntryStatus.WAITING,
            )
            if venue is not None:
                statement = statement.where(QueueEntry.venue_id == venue)
            result = session.exec(statement.values(timer_paused=True, updated_at=self.clock()))
            session.commit()
            entry = session.get(QueueEntry, entry_id)

        if entry is None or (venue is not None and entry.venue_id != venue):
            raise NotFound("Queue entry not found")
        if not result.rowcount:
            raise InvalidTransition(f"Entry {entry.id} is {entry.status.value}, nothing to pause")
        self.bus.notify(entry.venue_id)
        return entry

    # -------------------- reads --------------------

    def get(self, entry_id: int, *, venue_id: Optional[object] = None) -> QueueEntry:
        with get_session(self.engine) as session:
            entry = session.get(QueueEntry, entry_id)
        if entry is None or (venue_id is not None and entry.venue_id != normalize_venue_id(venue_id)):
            raise NotFound("Queue entry not found")
        return entry

    def list_waiting(self, venue_id: object) -> list[QueueEntry]:
        venue = normalize_venue_id(venue_id)
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(QueueEntry)
                    .where(QueueEntry.venue_id == venue, QueueEntry.status == EntryStatus.WAITING)
                    .order_by(
                        QueueEntry.position.asc(),
                        QueueEntry.joined_at.asc(),
                        QueueEntry.id.asc(),
                    )
                ).all()
            )

    def find_active(self, user_id: str) -> Optional[QueueEntry]:
        with get_session(self.engine) as session:
            return session.exec(
                select(QueueEntry)
                .where(QueueEntry.user_id == user_id, QueueEntry.status == EntryStatus.WAITING)
                .order_by(QueueEntry.joined_at.asc())
            ).first()

    def live_rank(self, entry: QueueEntry) -> int:
        """1-based place of ``entry`` among the venue's waiting entries."""
        with get_session(self.engine) as session:
            ahead = session.exec(
                select(func.count(QueueEntry.id)).where(
                    QueueEntry.venue_id == entry.venue_id,
                    QueueEntry.status == EntryStatus.WAITING,
                    QueueEntry.position < entry.position,
                )
            ).one()
        return ahead + 1

    def venues_with_waiting(self) -> list[str]:
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(QueueEntry.venue_id)
                    .where(QueueEntry.status == EntryStatus.WAITING)
                    .distinct()
                ).all()
            )

    def due_for_expiry(self, now: datetime) -> list[QueueEntry]:
        with get_session(self.engine) as session:
            return list(
                session.exec(
                    select(QueueEntry)
                    .where(
                        QueueEntry.status == EntryStatus.WAITING,
                        QueueEntry.timer_paused == False,  # noqa: E712
                        QueueEntry.arrival_deadline.is_not(None),
                        QueueEntry.arrival_deadline <= now,
                    )
                    .order_by(QueueEntry.arrival_deadline.asc())
                ).all()
            )

    def on_mutation(self, venue_id: object, callback: MutationCallback) -> Subscription:
        return self.bus.subscribe(normalize_venue_id(venue_id), callback)
