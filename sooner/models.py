from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, Index, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    # naive UTC: SQLite drops tzinfo, so every stored timestamp is naive
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntryStatus(str, Enum):
    WAITING = "waiting"
    SERVED = "served"
    EXPIRED = "expired"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not EntryStatus.WAITING


class OpenStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Venue(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=64)
    display_name: str = Field(default="Sooner Venue", max_length=255)
    total_seats: int = Field(default=0, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)


class VenueSettings(SQLModel, table=True):
    venue_id: str = Field(primary_key=True, max_length=64)
    walkins_enabled: bool = Field(default=False, nullable=False)
    open_status: OpenStatus = Field(default=OpenStatus.CLOSED, nullable=False)
    queue_active: bool = Field(default=True, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)


class VenueCounter(SQLModel, table=True):
    venue_id: str = Field(primary_key=True, max_length=64)
    value: int = Field(default=0, nullable=False)


class QueueEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    venue_id: str = Field(index=True, max_length=64, nullable=False)
    user_id: Optional[str] = Field(default=None, index=True, max_length=64)
    name: str = Field(default="Guest", max_length=255, nullable=False)
    email: str = Field(default="", max_length=255, nullable=False)
    phone: str = Field(default="", max_length=32, nullable=False)
    party_size: int = Field(nullable=False)
    position: int = Field(nullable=False)
    status: EntryStatus = Field(default=EntryStatus.WAITING, index=True, nullable=False)
    joined_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
    near_turn_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    arrival_deadline: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    timer_paused: bool = Field(default=False, nullable=False)

    __table_args__ = (
        Index("ix_queue_entry_venue_status_position", "venue_id", "status", "position"),
        # one live entry per customer; enum columns store member names
        Index(
            "uq_queue_entry_waiting_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'WAITING'"),
            postgresql_where=text("status = 'WAITING'"),
        ),
    )


class ActivityRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[str] = Field(default=None, index=True, max_length=64)
    venue_id: str = Field(index=True, max_length=64, nullable=False)
    type: str = Field(max_length=64, nullable=False)
    at: datetime = Field(default_factory=utcnow, sa_type=DateTime, nullable=False)
    meta: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
