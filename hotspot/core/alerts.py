"""
Proximity Alert Dispatcher.

Fans out push notifications for new incidents and zone transitions. All
delivery work runs on the FanoutPool so the triggering write (report, vote,
enter, exit) returns without waiting on the push gateway.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from .analysis import bounding_box, haversine_meters
from .broadcast import Broadcaster, get_broadcaster
from .config import settings
from .notifications import FanoutPool, PushGateway, PushMessage, get_push_gateway
from ..db import SessionLocal
from ..models.orm import (
    DeviceTokenORM, HotspotZoneORM, IncidentORM, UserAlertProfileORM,
    UserLastKnownLocationORM, utcnow,
)
from ..models.schemas import Location

logger = logging.getLogger(__name__)

ZONE_ALERT_TITLE = "Hotspot Zone Alert"


def effective_alert_radius(profile: Optional[UserAlertProfileORM]) -> int:
    """A user's alert radius, capped by their plan."""
    if profile is None:
        return settings.DEFAULT_ALERT_RADIUS_METERS
    radius = profile.alert_radius_meters or settings.DEFAULT_ALERT_RADIUS_METERS
    if profile.is_premium:
        return min(radius, settings.PREMIUM_MAX_ALERT_RADIUS_METERS)
    return min(radius, settings.FREE_MAX_ALERT_RADIUS_METERS)


def wants_incident_type(config: Optional[Dict[str, Any]], incident_type: str) -> bool:
    if not config:
        return True
    enabled_types = config.get("enabled_types", {})
    if not isinstance(enabled_types, dict):
        return True
    return bool(enabled_types.get(incident_type, True))


def zone_alerts_enabled(config: Optional[Dict[str, Any]]) -> bool:
    if not config:
        return True
    return bool(config.get("hotspot_zone_alerts", True))


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{int(round(meters))} m away"
    return f"{meters / 1000:.1f} km away"


def format_time_ago(when: datetime, now: Optional[datetime] = None) -> str:
    diff = int(((now or utcnow()) - when).total_seconds())
    if diff < 60:
        return "just now"
    if diff < 3600:
        return f"{diff // 60} minutes ago"
    if diff < 86400:
        return f"{diff // 3600} hours ago"
    return f"{diff // 86400} days ago"


def zone_message(zone: HotspotZoneORM, action: str) -> str:
    if action == "entered":
        return (f"Entering {zone.risk_level.upper()} RISK zone - {zone.incident_count} "
                f"{zone.zone_type} reported in this area in the past 7 days. Stay alert.")
    if action == "exited":
        return "You have left the hotspot zone. Stay safe."
    return (f"Approaching {zone.risk_level.upper()} RISK zone ahead - "
            f"{zone.incident_count} {zone.zone_type} reported")


def zone_payload(zone: HotspotZoneORM, action: Optional[str] = None) -> Dict[str, Any]:
    payload = {
        "zone_id": zone.id,
        "zone_type": zone.zone_type,
        "risk_level": zone.risk_level,
        "incident_count": zone.incident_count,
        "center": {"latitude": zone.center_lat, "longitude": zone.center_lon},
        "radius_meters": zone.radius_meters,
        "is_active": zone.is_active,
    }
    if action:
        payload["action"] = action
        payload["message"] = zone_message(zone, action)
    return payload


def incident_payload(incident: IncidentORM) -> Dict[str, Any]:
    return {
        "id": incident.id,
        "type": incident.type,
        "latitude": incident.lat,
        "longitude": incident.lon,
        "description": incident.description,
        "verification_count": incident.verification_count,
        "is_verified": incident.is_verified,
        "created_at": incident.created_at.isoformat(),
    }


class ProximityAlertDispatcher:
    def __init__(self, gateway: Optional[PushGateway] = None, pool: Optional[FanoutPool] = None,
                 broadcaster: Optional[Broadcaster] = None, session_factory=SessionLocal):
        if pool is None:
            pool = FanoutPool(gateway or get_push_gateway())
        self.pool = pool
        self.broadcaster = broadcaster or get_broadcaster()
        self.session_factory = session_factory

    @property
    def stats(self):
        return self.pool.stats

    # === NEW INCIDENTS ===

    def incident_created(self, incident: IncidentORM) -> None:
        """Publish the incident to the live feed and queue the nearby-user fan-out."""
        self.broadcaster.publish("incidents", "incident:new", incident_payload(incident))
        self.pool.submit(self.notify_new_incident, incident.id)

    def find_recipients(self, db: Session, incident: IncidentORM) -> List[Tuple[str, float]]:
        """(user_id, distance) for users whose alert radius covers the incident."""
        point = Location(lat=incident.lat, lon=incident.lon)
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, settings.PREMIUM_MAX_ALERT_RADIUS_METERS)

        rows = (
            db.query(UserLastKnownLocationORM, UserAlertProfileORM)
            .outerjoin(UserAlertProfileORM, UserAlertProfileORM.user_id == UserLastKnownLocationORM.user_id)
            .filter(
                UserLastKnownLocationORM.lat >= min_lat, UserLastKnownLocationORM.lat <= max_lat,
                UserLastKnownLocationORM.lon >= min_lon, UserLastKnownLocationORM.lon <= max_lon,
                UserLastKnownLocationORM.user_id != incident.reporter_id,
            )
            .all()
        )

        recipients = []
        for location, profile in rows:
            distance = float(haversine_meters(location.lat, location.lon, incident.lat, incident.lon))
            if distance > effective_alert_radius(profile):
                continue
            config = profile.notification_config if profile else None
            if not wants_incident_type(config, incident.type):
                continue
            recipients.append((location.user_id, distance))
        return recipients

    def notify_new_incident(self, incident_id: str) -> int:
        """Queue one push per distinct device token of every eligible recipient."""
        db = self.session_factory()
        try:
            incident = db.query(IncidentORM).filter(IncidentORM.id == incident_id).first()
            if incident is None:
                logger.info("Incident %s gone before fan-out", incident_id)
                return 0

            recipients = self.find_recipients(db, incident)
            if not recipients:
                return 0

            distances = dict(recipients)
            tokens = (
                db.query(DeviceTokenORM)
                .filter(DeviceTokenORM.user_id.in_(list(distances)))
                .order_by(DeviceTokenORM.created_at)
                .all()
            )

            title = f"{incident.type.capitalize()} Alert"
            seen = set()
            queued = 0
            for device in tokens:
                if device.token in seen:
                    continue
                seen.add(device.token)
                distance = format_distance(distances[device.user_id])
                self.pool.push(PushMessage(
                    token=device.token,
                    platform=device.platform,
                    title=title,
                    body=f"A {incident.type} was reported {distance}. Stay alert and be cautious.",
                    data={
                        "incident_id": incident.id,
                        "incident_type": incident.type,
                        "distance": distance,
                        "time": format_time_ago(incident.created_at),
                        "latitude": str(incident.lat),
                        "longitude": str(incident.lon),
                    },
                ))
                queued += 1

            logger.info("Incident %s: %d recipient(s), %d push(es) queued",
                        incident.id, len(recipients), queued)
            return queued
        finally:
            db.close()

    # === ZONE TRANSITIONS ===

    def zone_event(self, user_id: str, zone: HotspotZoneORM, action: str) -> None:
        """Publish a zone transition to the user's channel and queue the push."""
        payload = zone_payload(zone, action)
        self.broadcaster.publish(f"geofence:user:{user_id}", f"zone:{action}", payload)

        data = {"type": "hotspot_zone", "zone_id": zone.id, "action": action}
        if action != "exited":
            data.update({"zone_type": zone.zone_type, "risk_level": zone.risk_level})
        self.pool.submit(self.send_to_user, user_id, ZONE_ALERT_TITLE, payload["message"], data)

    def send_to_user(self, user_id: str, title: str, body: str, data: Dict[str, Any]) -> int:
        """Queue one push per device of a user whose zone alerts are enabled."""
        db = self.session_factory()
        try:
            profile = db.query(UserAlertProfileORM).filter(UserAlertProfileORM.user_id == user_id).first()
            if not zone_alerts_enabled(profile.notification_config if profile else None):
                return 0

            tokens = db.query(DeviceTokenORM).filter(DeviceTokenORM.user_id == user_id).all()
            seen = set()
            for device in tokens:
                if device.token in seen:
                    continue
                seen.add(device.token)
                self.pool.push(PushMessage(device.token, device.platform, title, body, data))
            return len(seen)
        finally:
            db.close()

    # === ZONE LIFECYCLE ===

    def zone_created(self, payload: Dict[str, Any]) -> None:
        self.broadcaster.publish("geofence:zones", "zone:created", payload)

    def zone_dissolved(self, payload: Dict[str, Any]) -> None:
        self.broadcaster.publish("geofence:zones", "zone:dissolved", payload)


_dispatcher: Optional[ProximityAlertDispatcher] = None


def get_dispatcher() -> ProximityAlertDispatcher:
    """Get or create the process-wide dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = ProximityAlertDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: Optional[ProximityAlertDispatcher]) -> None:
    global _dispatcher
    _dispatcher = dispatcher
