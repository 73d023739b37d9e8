import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .activity import QUEUE_CANCELED, QUEUE_ENTERED, QUEUE_SERVED, ActivityLog
from .capacity import estimate_wait_minutes
from .config import Settings, get_settings, setup_logging
from .database import create_db_engine, init_db
from .errors import AlreadyQueued, QueueClosed, QueueError
from .models import EntryStatus, OpenStatus, QueueEntry
from .publisher import EventStreamResponse, SnapshotPublisher, serialize_settings
from .store import QueueStore, TransitionResult, clamp_party_size, normalize_venue_id
from .sweeper import QueueSweeper
from .venues import VenueDirectory

logger = logging.getLogger(__name__)


def parse_party_size_value(value: object) -> Optional[int]:
    if value in (None, "", "null"):
        return None
    if isinstance(value, bool):
        return 1
    try:
        return int(value)
    except (TypeError, ValueError):
        # non-numeric input is treated as a single guest
        return 1


class VenueProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    total_seats: Optional[int] = Field(default=None, ge=0)


class VenueRead(BaseModel):
    id: str
    display_name: str
    total_seats: int
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SettingsUpdate(BaseModel):
    walkins_enabled: Optional[bool] = None
    open_status: Optional[OpenStatus] = None
    queue_active: Optional[bool] = None


class JoinRequest(BaseModel):
    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    party_size: Optional[int] = 2

    @field_validator("party_size", mode="before")
    @classmethod
    def parse_party_size(cls, value: object) -> Optional[int]:
        return parse_party_size_value(value)


class WalkinRequest(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    party_size: Optional[int] = 1

    @field_validator("party_size", mode="before")
    @classmethod
    def parse_party_size(cls, value: object) -> Optional[int]:
        return parse_party_size_value(value)


class QueueEntryRead(BaseModel):
    id: int
    venue_id: str
    user_id: Optional[str] = None
    name: str
    email: str
    phone: str
    party_size: int
    position: int
    status: EntryStatus
    joined_at: datetime
    near_turn_at: Optional[datetime] = None
    arrival_deadline: Optional[datetime] = None
    timer_paused: bool

    model_config = ConfigDict(from_attributes=True)


class JoinResponse(BaseModel):
    entry: QueueEntryRead
    rank: int
    estimated_wait_minutes: int


class ActiveEntryResponse(BaseModel):
    entry: QueueEntryRead
    rank: int
    estimated_wait_minutes: int


class TransitionResponse(BaseModel):
    entry: QueueEntryRead
    changed: bool
    detail: str


class HistoryItem(BaseModel):
    venue_id: str
    name: str
    date: datetime


class ActivityRead(BaseModel):
    id: int
    user_id: Optional[str] = None
    venue_id: str
    type: str
    at: datetime
    meta: dict[str, object]

    model_config = ConfigDict(from_attributes=True)


# -------------------- dependencies --------------------


def get_store(request: Request) -> QueueStore:
    return request.app.state.store


def get_venues(request: Request) -> VenueDirectory:
    return request.app.state.venues


def get_activity(request: Request) -> ActivityLog:
    return request.app.state.activity


def get_publisher(request: Request) -> SnapshotPublisher:
    return request.app.state.publisher


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def resolve_venue(venue_id: str) -> str:
    return normalize_venue_id(venue_id)


router = APIRouter(prefix="/api")


@router.get("/health")
def healthcheck(request: Request) -> dict[str, object]:
    sweeper: Optional[QueueSweeper] = getattr(request.app.state, "sweeper", None)
    return {"status": "ok", "sweeper": bool(sweeper and sweeper.running)}


# -------------------- venue profile & settings --------------------


@router.put("/venues/{venue_id}", response_model=VenueRead)
def save_venue(
    payload: VenueProfileUpdate,
    venue_id: str = Depends(resolve_venue),
    venues: VenueDirectory = Depends(get_venues),
) -> VenueRead:
    venue = venues.upsert_venue(
        venue_id, display_name=payload.display_name, total_seats=payload.total_seats
    )
    return VenueRead.model_validate(venue)


@router.get("/venues/{venue_id}/settings")
def read_settings(
    venue_id: str = Depends(resolve_venue),
    venues: VenueDirectory = Depends(get_venues),
) -> dict[str, object]:
    return {"ok": True, "settings": serialize_settings(venues.load_settings(venue_id))}


@router.put("/venues/{venue_id}/settings")
def update_settings(
    payload: SettingsUpdate,
    venue_id: str = Depends(resolve_venue),
    venues: VenueDirectory = Depends(get_venues),
) -> dict[str, object]:
    settings = venues.update_settings(venue_id, **payload.model_dump(exclude_none=True))
    return {"ok": True, "settings": serialize_settings(settings)}


# -------------------- queue --------------------


def _join_response(store: QueueStore, entry: QueueEntry, minutes_per_group: int) -> dict[str, object]:
    rank = store.live_rank(entry)
    return {
        "entry": QueueEntryRead.model_validate(entry),
        "rank": rank,
        "estimated_wait_minutes": estimate_wait_minutes(rank - 1, minutes_per_group),
    }


@router.post(
    "/venues/{venue_id}/queue/join",
    response_model=JoinResponse,
    status_code=status.HTTP_201_CREATED,
)
def join_queue(
    payload: JoinRequest,
    venue_id: str = Depends(resolve_venue),
    store: QueueStore = Depends(get_store),
    venues: VenueDirectory = Depends(get_venues),
    activity: ActivityLog = Depends(get_activity),
    settings: Settings = Depends(get_app_settings),
) -> JoinResponse:
    if not venues.accepts_walkins(venue_id):
        raise QueueClosed("Queue not active")

    user_id = (payload.user_id or "").strip() or None
    if user_id is None and not (payload.name or "").strip():
        raise HTTPException(status_code=400, detail="user_id or name is required")
    if user_id is not None and store.find_active(user_id) is not None:
        raise AlreadyQueued("Already in a queue")

    party_size = clamp_party_size(payload.party_size, store.min_party_size, store.max_party_size)
    entry = store.append(
        venue_id,
        party_size,
        user_id=user_id,
        name=payload.name or "Guest",
        email=payload.email or "",
        phone=payload.phone or "",
    )
    activity.record_entry(QUEUE_ENTERED, entry, party_size=entry.party_size)
    return JoinResponse(**_join_response(store, entry, settings.wait_minutes_per_group))


@router.post(
    "/venues/{venue_id}/queue/walkin",
    response_model=JoinResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_walkin(
    payload: WalkinRequest,
    venue_id: str = Depends(resolve_venue),
    store: QueueStore = Depends(get_store),
    activity: ActivityLog = Depends(get_activity),
    settings: Settings = Depends(get_app_settings),
) -> JoinResponse:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Name is required")

    party_size = clamp_party_size(payload.party_size, store.min_party_size, store.max_party_size)
    entry = store.append(
        venue_id,
        party_size,
        name=name,
        email=payload.email or "",
        phone=payload.phone or "",
    )
    activity.record_entry(QUEUE_ENTERED, entry, party_size=entry.party_size, walkin=True)
    return JoinResponse(**_join_response(store, entry, settings.wait_minutes_per_group))


@router.get("/venues/{venue_id}/queue")
def queue_snapshot(
    venue_id: str = Depends(resolve_venue),
    publisher: SnapshotPublisher = Depends(get_publisher),
) -> dict[str, object]:
    return publisher.build_snapshot(venue_id)


@router.get("/venues/{venue_id}/queue/stream")
async def queue_stream(
    venue_id: str = Depends(resolve_venue),
    publisher: SnapshotPublisher = Depends(get_publisher),
) -> EventStreamResponse:
    return EventStreamResponse(publisher.stream(venue_id))


def _transition_response(result: TransitionResult, done: str) -> TransitionResponse:
    detail = done if result.changed else f"Entry already {result.entry.status.value}"
    return TransitionResponse(
        entry=QueueEntryRead.model_validate(result.entry),
        changed=result.changed,
        detail=detail,
    )


@router.post("/venues/{venue_id}/queue/{entry_id}/serve", response_model=TransitionResponse)
def serve_entry(
    entry_id: int,
    venue_id: str = Depends(resolve_venue),
    store: QueueStore = Depends(get_store),
    activity: ActivityLog = Depends(get_activity),
) -> TransitionResponse:
    result = store.transition(entry_id, EntryStatus.SERVED, venue_id=venue_id)
    if result.changed:
        activity.record_entry(QUEUE_SERVED, result.entry)
    return _transition_response(result, "Entry served")


@router.post("/venues/{venue_id}/queue/{entry_id}/cancel", response_model=TransitionResponse)
def cancel_entry(
    entry_id: int,
    venue_id: str = Depends(resolve_venue),
    store: QueueStore = Depends(get_store),
    activity: ActivityLog = Depends(get_activity),
) -> TransitionResponse:
    result = store.transition(entry_id, EntryStatus.CANCELED, venue_id=venue_id)
    if result.changed:
        activity.record_entry(QUEUE_CANCELED, result.entry)
    return _transition_response(result, "Entry canceled")


@router.post("/venues/{venue_id}/queue/{entry_id}/arrived", response_model=QueueEntryRead)
def mark_arrived(
    entry_id: int,
    venue_id: str = Depends(resolve_venue),
    store: QueueStore = Depends(get_store),
) -> QueueEntryRead:
    entry = store.pause_timer(entry_id, venue_id=venue_id)
    return QueueEntryRead.model_validate(entry)


@router.get("/venues/{venue_id}/activity", response_model=list[ActivityRead])
def venue_activity(
    limit: int = 50,
    venue_id: str = Depends(resolve_venue),
    activity: ActivityLog = Depends(get_activity),
) -> list[ActivityRead]:
    records = activity.recent(venue_id, limit=max(1, min(limit, 200)))
    return [ActivityRead.model_validate(record) for record in records]


@router.get("/customers/{user_id}/queue/active", response_model=Optional[ActiveEntryResponse])
def active_entry(
    user_id: str,
    store: QueueStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Optional[ActiveEntryResponse]:
    entry = store.find_active(user_id)
    if entry is None:
        return None
    return ActiveEntryResponse(**_join_response(store, entry, settings.wait_minutes_per_group))


@router.get("/customers/{user_id}/history", response_model=list[HistoryItem])
def served_history(
    user_id: str,
    limit: int = 100,
    venues: VenueDirectory = Depends(get_venues),
    activity: ActivityLog = Depends(get_activity),
) -> list[HistoryItem]:
    records = activity.served_history(user_id, limit=max(1, min(limit, 500)))
    names: dict[str, str] = {}
    for venue_id in {record.venue_id for record in records}:
        venue = venues.get_venue(venue_id)
        names[venue_id] = venue.display_name if venue is not None else "Venue"
    return [
        HistoryItem(venue_id=record.venue_id, name=names[record.venue_id], date=record.at)
        for record in records
    ]


# -------------------- application --------------------


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        engine = create_db_engine(settings.database_url)
        init_db(engine)

        store = QueueStore(
            engine,
            min_party_size=settings.min_party_size,
            max_party_size=settings.max_party_size,
        )
        venues = VenueDirectory(engine, on_change=store.bus.notify)
        activity = ActivityLog(engine)
        sweeper = QueueSweeper(
            store,
            activity,
            interval=settings.sweep_interval_seconds,
            window=settings.near_turn_window,
            grace=timedelta(minutes=settings.arrival_grace_minutes),
        )

        app.state.settings = settings
        app.state.engine = engine
        app.state.store = store
        app.state.venues = venues
        app.state.activity = activity
        app.state.sweeper = sweeper
        app.state.publisher = SnapshotPublisher(
            store,
            venues,
            heartbeat=settings.heartbeat_seconds,
            wait_minutes_per_group=settings.wait_minutes_per_group,
        )

        if settings.sweeper_enabled:
            sweeper.start()
        logger.info("Queue service started")
        try:
            yield
        finally:
            await sweeper.stop()
            engine.dispose()
            logger.info("Queue service stopped")

    app = FastAPI(
        title="Sooner Queue Service",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.add_exception_handler(QueueError, queue_error_handler)
    app.include_router(router)
    return app


app = create_app()
