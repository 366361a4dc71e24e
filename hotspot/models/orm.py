from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Boolean, JSON,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.types import TypeDecorator
from ..db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class IncidentORM(Base):
    __tablename__ = 'incidents'

    id = Column(String(64), primary_key=True, index=True, default=_new_id)
    type = Column(String(32), nullable=False, index=True)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    reporter_id = Column(String(64), nullable=False, index=True)
    verification_count = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow, index=True)
    expires_at = Column(UTCDateTime, nullable=False, index=True)
    # client-supplied key so a retried report is stored once
    idempotency_key = Column(String(128), nullable=True)

    __table_args__ = (
        Index('ix_incidents_lat_lon', 'lat', 'lon'),
        UniqueConstraint('reporter_id', 'idempotency_key', name='uq_reporter_idempotency_key'),
    )


class VerificationORM(Base):
    __tablename__ = 'incident_verifications'

    id = Column(String(64), primary_key=True, default=_new_id)
    incident_id = Column(String(64), ForeignKey('incidents.id', ondelete='CASCADE'), nullable=False, index=True)
    voter_id = Column(String(64), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('incident_id', 'voter_id', name='uq_incident_voter'),
    )


class HotspotZoneORM(Base):
    __tablename__ = 'hotspot_zones'

    id = Column(String(64), primary_key=True, index=True, default=_new_id)
    zone_type = Column(String(32), nullable=False, index=True)
    center_lat = Column(Float, nullable=False)
    center_lon = Column(Float, nullable=False)
    radius_meters = Column(Integer, nullable=False, default=1000)
    incident_count = Column(Integer, nullable=False, default=0)
    risk_level = Column(String(16), nullable=False, default='low')
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_incident_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class ZoneMembershipORM(Base):
    __tablename__ = 'zone_memberships'

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    zone_id = Column(String(64), ForeignKey('hotspot_zones.id'), nullable=False, index=True)
    entered_at = Column(UTCDateTime, nullable=False, default=utcnow)
    exited_at = Column(UTCDateTime, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)

    # at most one open membership per (user, zone)
    __table_args__ = (
        Index(
            'uq_open_zone_membership', 'user_id', 'zone_id',
            unique=True,
            sqlite_where=exited_at.is_(None),
            postgresql_where=exited_at.is_(None),
        ),
    )


class UserAlertProfileORM(Base):
    __tablename__ = 'user_alert_profiles'

    user_id = Column(String(64), primary_key=True)
    alert_radius_meters = Column(Integer, nullable=False, default=2000)
    notification_config = Column(JSON, nullable=True)
    is_premium = Column(Boolean, nullable=False, default=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class DeviceTokenORM(Base):
    __tablename__ = 'device_tokens'

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    token = Column(String(512), nullable=False)
    platform = Column(String(16), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'token', name='uq_user_token'),
    )


class UserLastKnownLocationORM(Base):
    __tablename__ = 'user_last_known_locations'

    user_id = Column(String(64), primary_key=True)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_last_location_lat_lon', 'lat', 'lon'),
    )
