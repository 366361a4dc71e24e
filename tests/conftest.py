import os
import tempfile
from datetime import timedelta

_tmpdir = tempfile.mkdtemp(prefix="hotspot-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["PUSH_PROVIDER"] = "logging"
os.environ["CLUSTERING_LOCK_BACKEND"] = "local"
os.environ["BROADCAST_BACKEND"] = "memory"

import pytest

from hotspot.core.alerts import ProximityAlertDispatcher, set_dispatcher
from hotspot.core.broadcast import InMemoryBroadcaster, set_broadcaster
from hotspot.core.errors import PushGatewayError
from hotspot.core.membership import approach_cooldown
from hotspot.core.notifications import FanoutPool, PushGateway
from hotspot.db import Base, SessionLocal, engine
from hotspot.models.orm import (
    DeviceTokenORM, HotspotZoneORM, IncidentORM, UserAlertProfileORM,
    UserLastKnownLocationORM, utcnow,
)


class RecordingGateway(PushGateway):
    """Collects every send; tokens listed in `failing` raise PushGatewayError."""

    name = "recording"

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    def send(self, token, platform, title, body, data, timeout=None):
        if token in self.failing:
            raise PushGatewayError("device unregistered", token=token)
        self.sent.append({"token": token, "platform": platform, "title": title, "body": body, "data": data})


@pytest.fixture(autouse=True)
def _fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    approach_cooldown._last_sent.clear()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def events():
    return []


@pytest.fixture(autouse=True)
def dispatcher(gateway, events):
    broadcaster = InMemoryBroadcaster()
    for topic in ("incidents", "geofence:zones"):
        broadcaster.subscribe(topic, lambda t, e, p: events.append((t, e, p)))
    pool = FanoutPool(gateway, max_workers=4, timeout=1.0)
    set_broadcaster(broadcaster)
    d = ProximityAlertDispatcher(pool=pool, broadcaster=broadcaster)
    set_dispatcher(d)
    yield d
    pool.wait_idle()
    pool.shutdown()
    set_dispatcher(None)
    set_broadcaster(None)


@pytest.fixture
def make_incident(db):
    def _make(type="hijacking", lat=-26.2041, lon=28.0473, hours_ago=0, reporter_id="reporter",
              expires_in_hours=None, verification_count=0):
        created_at = utcnow() - timedelta(hours=hours_ago)
        expires_at = created_at + timedelta(hours=48) if expires_in_hours is None \
            else utcnow() + timedelta(hours=expires_in_hours)
        incident = IncidentORM(
            type=type, lat=lat, lon=lon, reporter_id=reporter_id,
            verification_count=verification_count, is_verified=False,
            created_at=created_at, expires_at=expires_at,
        )
        db.add(incident)
        db.commit()
        db.refresh(incident)
        return incident
    return _make


@pytest.fixture
def make_zone(db):
    def _make(zone_type="hijacking", lat=-26.2041, lon=28.0473, radius_meters=1000,
              incident_count=5, risk_level="low", is_active=True):
        zone = HotspotZoneORM(
            zone_type=zone_type, center_lat=lat, center_lon=lon, radius_meters=radius_meters,
            incident_count=incident_count, risk_level=risk_level, is_active=is_active,
            last_incident_at=utcnow(),
        )
        db.add(zone)
        db.commit()
        db.refresh(zone)
        return zone
    return _make


@pytest.fixture
def make_user(db):
    def _make(user_id, lat=None, lon=None, tokens=(), alert_radius_meters=None,
              notification_config=None, is_premium=False, platform="android"):
        if lat is not None:
            db.add(UserLastKnownLocationORM(user_id=user_id, lat=lat, lon=lon))
        if alert_radius_meters is not None or notification_config is not None or is_premium:
            db.add(UserAlertProfileORM(
                user_id=user_id,
                alert_radius_meters=alert_radius_meters or 2000,
                notification_config=notification_config,
                is_premium=is_premium,
            ))
        for token in tokens:
            db.add(DeviceTokenORM(user_id=user_id, token=token, platform=platform))
        db.commit()
    return _make
