"""SQLAlchemy-backed spatial store.

Radius queries prefilter on a lat/lon bounding box in SQL and then keep the
rows whose haversine distance is within the radius.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import numpy as np
from sqlalchemy.orm import Session

from .analysis import Cluster, bounding_box, calculate_hotspots, haversine_meters
from ..models.orm import HotspotZoneORM, IncidentORM, utcnow
from ..models.schemas import Location


class SpatialStore:
    def __init__(self, db: Session):
        self.db = db

    def insert(self, incident: IncidentORM) -> IncidentORM:
        self.db.add(incident)
        self.db.flush()
        return incident

    def query_within_radius(
        self,
        point: Location,
        radius_meters: float,
        incident_type: Optional[str] = None,
        created_after: Optional[datetime] = None,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Tuple[IncidentORM, float]]:
        """Incidents within `radius_meters` of `point`, nearest first, with distances."""
        now = now or utcnow()
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_meters)

        query = self.db.query(IncidentORM).filter(
            IncidentORM.lat >= min_lat, IncidentORM.lat <= max_lat,
            IncidentORM.lon >= min_lon, IncidentORM.lon <= max_lon,
        )
        if incident_type:
            query = query.filter(IncidentORM.type == incident_type)
        if created_after is not None:
            query = query.filter(IncidentORM.created_at >= created_after)
        if not include_expired:
            query = query.filter(IncidentORM.expires_at > now)

        return _within(query.all(), point, radius_meters, lambda r: (r.lat, r.lon))

    def recent_incidents(self, window_days: int, now: Optional[datetime] = None,
                         incident_type: Optional[str] = None) -> List[IncidentORM]:
        """Non-expired incidents created within the trailing window."""
        now = now or utcnow()
        query = self.db.query(IncidentORM).filter(
            IncidentORM.created_at >= now - timedelta(days=window_days),
            IncidentORM.expires_at > now,
        )
        if incident_type:
            query = query.filter(IncidentORM.type == incident_type)
        return query.all()

    def cluster(
        self,
        incident_type: Optional[str],
        window_days: int,
        eps_meters: float,
        min_points: int,
        now: Optional[datetime] = None,
    ) -> List[Cluster]:
        """Density clusters of recent incidents; all types when `incident_type` is None."""
        incidents = self.recent_incidents(window_days, now=now, incident_type=incident_type)
        return calculate_hotspots(incidents, eps_meters, min_points)

    def query_zones_within_radius(
        self,
        point: Location,
        radius_meters: float,
        zone_type: Optional[str] = None,
        active_only: bool = True,
        for_update: bool = False,
    ) -> List[Tuple[HotspotZoneORM, float]]:
        """Zones whose center lies within `radius_meters` of `point`, nearest first."""
        min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_meters)

        query = self.db.query(HotspotZoneORM).filter(
            HotspotZoneORM.center_lat >= min_lat, HotspotZoneORM.center_lat <= max_lat,
            HotspotZoneORM.center_lon >= min_lon, HotspotZoneORM.center_lon <= max_lon,
        )
        if zone_type:
            query = query.filter(HotspotZoneORM.zone_type == zone_type)
        if active_only:
            query = query.filter(HotspotZoneORM.is_active.is_(True))
        if for_update:
            query = query.with_for_update()

        return _within(query.all(), point, radius_meters, lambda z: (z.center_lat, z.center_lon))

    def zones_containing(self, point: Location, max_radius_meters: float) -> List[Tuple[HotspotZoneORM, float]]:
        """Active zones whose own radius covers `point`."""
        return [
            (zone, distance)
            for zone, distance in self.query_zones_within_radius(point, max_radius_meters)
            if distance <= zone.radius_meters
        ]


def _within(rows, point: Location, radius_meters: float, coords_of) -> List[Tuple[object, float]]:
    if not rows:
        return []
    coords = np.array([coords_of(r) for r in rows], dtype=float)
    distances = haversine_meters(point.lat, point.lon, coords[:, 0], coords[:, 1])
    matches = [(row, float(d)) for row, d in zip(rows, distances) if d <= radius_meters]
    return sorted(matches, key=lambda m: m[1])
