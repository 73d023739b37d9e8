import logging
from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from .database import get_session
from .models import OpenStatus, Venue, VenueSettings, utcnow
from .store import normalize_venue_id

logger = logging.getLogger(__name__)


class VenueDirectory:
    """Venue profiles (seat counts) and owner-controlled queue settings."""

    def __init__(self, engine: Engine, *, on_change: Optional[Callable[[str], None]] = None) -> None:
        self.engine = engine
        self.on_change = on_change

    def _changed(self, venue_id: str) -> None:
        if self.on_change is not None:
            self.on_change(venue_id)

    def get_venue(self, venue_id: object) -> Optional[Venue]:
        with get_session(self.engine) as session:
            return session.get(Venue, normalize_venue_id(venue_id))

    def get_total_seats(self, venue_id: object) -> int:
        venue = self.get_venue(venue_id)
        if venue is None:
            return 0
        return max(venue.total_seats or 0, 0)

    def upsert_venue(
        self,
        venue_id: object,
        *,
        display_name: Optional[str] = None,
        total_seats: Optional[int] = None,
    ) -> Venue:
        key = normalize_venue_id(venue_id)
        # a concurrent first save may insert the row under us; retry as an update
        for attempt in range(2):
            try:
                with get_session(self.engine) as session:
                    venue = session.get(Venue, key)
                    if venue is None:
                        venue = Venue(id=key)
                    if display_name is not None and display_name.strip():
                        venue.display_name = display_name.strip()
                    if total_seats is not None:
                        venue.total_seats = max(total_seats, 0)
                    venue.updated_at = utcnow()
                    session.add(venue)
                    session.commit()
                    session.refresh(venue)
                break
            except IntegrityError:
                if attempt:
                    raise
                logger.debug("Venue %s created concurrently, retrying", key)
        logger.info("Venue %s profile saved (%s seats)", key, venue.total_seats)
        self._changed(key)
        return venue

    def load_settings(self, venue_id: object) -> VenueSettings:
        """Return the venue's settings, creating the defaults on first access."""
        key = normalize_venue_id(venue_id)
        with get_session(self.engine) as session:
            settings = session.get(VenueSettings, key)
            if settings is not None:
                return settings
            try:
                settings = VenueSettings(venue_id=key)
                session.add(settings)
                session.commit()
                session.refresh(settings)
            except IntegrityError:
                # another request created the defaults first
                session.rollback()
                settings = session.get(VenueSettings, key)
                if settings is None:
                    raise
        return settings

    def update_settings(
        self,
        venue_id: object,
        *,
        walkins_enabled: Optional[bool] = None,
        open_status: Optional[OpenStatus] = None,
        queue_active: Optional[bool] = None,
    ) -> VenueSettings:
        key = normalize_venue_id(venue_id)
        current = self.load_settings(key)
        changes = {
            field: value
            for field, value in (
                ("walkins_enabled", walkins_enabled),
                ("open_status", open_status),
                ("queue_active", queue_active),
            )
            if value is not None
        }
        if not changes:
            return current

        with get_session(self.engine) as session:
            settings = session.get(VenueSettings, key)
            for field, value in changes.items():
                setattr(settings, field, value)
            settings.updated_at = utcnow()
            session.add(settings)
            session.commit()
            session.refresh(settings)
        logger.info("Venue %s settings updated: %s", key, sorted(changes))
        self._changed(key)
        return settings

    def accepts_walkins(self, venue_id: object) -> bool:
        settings = self.load_settings(venue_id)
        return (
            settings.walkins_enabled
            and settings.open_status == OpenStatus.OPEN
            and settings.queue_active
        )
