"""
Zone Membership Tracker.

Per (user, zone) state machine: outside -> inside on enter(), inside ->
outside on exit(). The partial unique index on open memberships keeps at
most one open row per pair even when two location updates race.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .alerts import ProximityAlertDispatcher, get_dispatcher
from .config import settings
from .errors import NotFound
from .spatial_store import SpatialStore
from .zones import check_location, get_zone, max_zone_radius, zone_to_schema
from ..models.orm import HotspotZoneORM, UserLastKnownLocationORM, ZoneMembershipORM, utcnow
from ..models.schemas import Location, LocationUpdateResult

logger = logging.getLogger(__name__)


class ApproachCooldown:
    """Remembers when each (user, zone) pair last got an approaching alert."""

    def __init__(self, minutes: Optional[int] = None):
        self.window = timedelta(minutes=settings.APPROACH_ALERT_COOLDOWN_MINUTES if minutes is None else minutes)
        self._last_sent: Dict[Tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def allow(self, user_id: str, zone_id: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        key = (user_id, zone_id)
        with self._lock:
            last = self._last_sent.get(key)
            if last is not None and now - last < self.window:
                return False
            self._last_sent[key] = now
            # keep the map from growing without bound
            if len(self._last_sent) > 10000:
                cutoff = now - self.window
                self._last_sent = {k: v for k, v in self._last_sent.items() if v >= cutoff}
            return True


approach_cooldown = ApproachCooldown()


class ZoneMembershipTracker:
    def __init__(self, db: Session, dispatcher: Optional[ProximityAlertDispatcher] = None,
                 cooldown: Optional[ApproachCooldown] = None):
        self.db = db
        self._dispatcher = dispatcher
        self.cooldown = cooldown or approach_cooldown

    @property
    def dispatcher(self) -> ProximityAlertDispatcher:
        return self._dispatcher or get_dispatcher()

    def _open_membership(self, user_id: str, zone_id: str, for_update: bool = False) -> Optional[ZoneMembershipORM]:
        query = self.db.query(ZoneMembershipORM).filter(
            ZoneMembershipORM.user_id == user_id,
            ZoneMembershipORM.zone_id == zone_id,
            ZoneMembershipORM.exited_at.is_(None),
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def enter(self, user_id: str, zone_id: str) -> ZoneMembershipORM:
        """Open a membership and alert once; an already open membership is returned as is."""
        zone = get_zone(self.db, zone_id)

        existing = self._open_membership(user_id, zone_id)
        if existing is not None:
            return existing

        membership = ZoneMembershipORM(
            user_id=user_id,
            zone_id=zone_id,
            entered_at=utcnow(),
            notification_sent=False,
        )
        try:
            self.db.add(membership)
            self.db.commit()
        except IntegrityError:
            # a concurrent update opened the row first
            self.db.rollback()
            return self._open_membership(user_id, zone_id)

        logger.info("User %s entered zone %s", user_id, zone_id)
        self.dispatcher.zone_event(user_id, zone, "entered")
        membership.notification_sent = True
        self.db.commit()
        self.db.refresh(membership)
        return membership

    def exit(self, user_id: str, zone_id: str) -> ZoneMembershipORM:
        """Close the open membership. Raises NotFound when the user is not inside."""
        membership = self._open_membership(user_id, zone_id, for_update=True)
        if membership is None:
            self.db.rollback()
            raise NotFound(f"User {user_id} is not inside zone {zone_id}")

        membership.exited_at = utcnow()
        self.db.commit()
        self.db.refresh(membership)
        logger.info("User %s exited zone %s", user_id, zone_id)

        zone = self.db.query(HotspotZoneORM).filter(HotspotZoneORM.id == zone_id).first()
        if zone is not None:
            self.dispatcher.zone_event(user_id, zone, "exited")
        return membership

    def approaching(self, location: Location, is_premium: bool) -> List[HotspotZoneORM]:
        """Active zones the user is close to but not inside. Premium only."""
        if not is_premium:
            return []

        buffer = settings.APPROACH_BUFFER_METERS
        candidates = SpatialStore(self.db).query_zones_within_radius(
            location, max_zone_radius(self.db) + buffer,
        )
        return [
            zone for zone, distance in candidates
            if zone.radius_meters < distance <= zone.radius_meters + buffer
        ]

    def current_zones(self, user_id: str) -> List[HotspotZoneORM]:
        return (
            self.db.query(HotspotZoneORM)
            .join(ZoneMembershipORM, ZoneMembershipORM.zone_id == HotspotZoneORM.id)
            .filter(ZoneMembershipORM.user_id == user_id, ZoneMembershipORM.exited_at.is_(None))
            .all()
        )

    def history(self, user_id: str, limit: int = 50) -> List[ZoneMembershipORM]:
        """Most recent memberships first, open and closed."""
        return (
            self.db.query(ZoneMembershipORM)
            .filter(ZoneMembershipORM.user_id == user_id)
            .order_by(ZoneMembershipORM.entered_at.desc())
            .limit(limit)
            .all()
        )

    def record_location(self, user_id: str, location: Location) -> None:
        last = (
            self.db.query(UserLastKnownLocationORM)
            .filter(UserLastKnownLocationORM.user_id == user_id)
            .first()
        )
        if last is None:
            self.db.add(UserLastKnownLocationORM(user_id=user_id, lat=location.lat, lon=location.lon))
        else:
            last.lat = location.lat
            last.lon = location.lon
            last.updated_at = utcnow()
        try:
            self.db.commit()
        except IntegrityError:
            # first update for this user raced another one; the other row wins
            self.db.rollback()

    def handle_location_update(self, user_id: str, lat: float, lon: float,
                               is_premium: bool = False) -> LocationUpdateResult:
        """Drive enter/exit/approaching from one location report."""
        location = Location(lat=lat, lon=lon)
        self.record_location(user_id, location)

        zones_here = check_location(self.db, location)
        here_ids = {z.id for z in zones_here}
        current = self.current_zones(user_id)
        current_ids = {z.id for z in current}

        result = LocationUpdateResult()

        for zone in zones_here:
            if zone.id not in current_ids:
                self.enter(user_id, zone.id)
                result.entered.append(zone_to_schema(zone))

        for zone in current:
            if zone.id not in here_ids:
                try:
                    self.exit(user_id, zone.id)
                except NotFound:
                    # closed by a concurrent update
                    continue
                result.exited.append(zone_to_schema(zone))

        for zone in self.approaching(location, is_premium):
            if zone.id in current_ids:
                continue
            result.approaching.append(zone_to_schema(zone))
            if self.cooldown.allow(user_id, zone.id):
                self.dispatcher.zone_event(user_id, zone, "approaching")

        return result
