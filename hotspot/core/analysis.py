from typing import Iterable, List, NamedTuple, Optional, Tuple
from datetime import datetime
import numpy as np
import pandas as pd
from sklearn.cluster import DBSCAN

from ..models.schemas import Location, RiskLevel

EARTH_RADIUS_METERS = 6371000.0
METERS_PER_DEGREE = 111000.0


class Cluster(NamedTuple):
    incident_type: str
    center: Location
    count: int
    last_incident_at: Optional[datetime]
    incident_ids: List[str]


def haversine_meters(lat1, lon1, lat2, lon2):
    """Great-circle distance in meters. Accepts scalars or numpy arrays."""
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def calculate_distance(loc1: Location, loc2: Location) -> float:
    """Calculate distance between two locations in meters"""
    return float(haversine_meters(loc1.lat, loc1.lon, loc2.lat, loc2.lon))


def bounding_box(center: Location, radius_meters: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lon, max_lon) of a box enclosing a circle."""
    dlat = radius_meters / METERS_PER_DEGREE
    cos_lat = np.cos(np.radians(center.lat))
    # guard against division by zero near poles
    dlon = radius_meters / (METERS_PER_DEGREE * cos_lat) if abs(cos_lat) > 1e-6 else 180.0
    return (
        center.lat - dlat,
        center.lat + dlat,
        center.lon - dlon,
        center.lon + dlon,
    )


def route_bounding_box(origin: Location, destination: Location,
                       buffer_meters: float) -> Tuple[float, float, float, float]:
    """Box around a segment, buffered by a flat meters-to-degrees conversion."""
    buffer_degrees = buffer_meters / METERS_PER_DEGREE
    return (
        min(origin.lat, destination.lat) - buffer_degrees,
        max(origin.lat, destination.lat) + buffer_degrees,
        min(origin.lon, destination.lon) - buffer_degrees,
        max(origin.lon, destination.lon) + buffer_degrees,
    )


def risk_level_for_count(incident_count: int) -> RiskLevel:
    if incident_count >= 21:
        return RiskLevel.CRITICAL
    if incident_count >= 11:
        return RiskLevel.HIGH
    if incident_count >= 6:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def cluster_points(coords: np.ndarray, eps_meters: float, min_points: int) -> np.ndarray:
    """DBSCAN over (lat, lon) rows using the haversine metric.

    Returns one label per row; -1 marks noise.
    """
    if len(coords) < min_points:
        return np.full(len(coords), -1)

    clustering = DBSCAN(
        eps=eps_meters / EARTH_RADIUS_METERS,
        min_samples=min_points,
        metric='haversine',
        algorithm='ball_tree',
    ).fit(np.radians(coords))
    return clustering.labels_


def calculate_hotspots(incidents: Iterable, eps_meters: float, min_points: int) -> List[Cluster]:
    """Cluster incidents per type and summarise each qualifying cluster.

    `incidents` are objects with id, type, lat, lon and created_at attributes.
    Clusters come back largest first.
    """
    df = pd.DataFrame(
        [
            {
                'id': i.id,
                'type': i.type.value if hasattr(i.type, 'value') else str(i.type),
                'lat': i.lat,
                'lon': i.lon,
                'created_at': i.created_at,
            }
            for i in incidents
        ],
        columns=['id', 'type', 'lat', 'lon', 'created_at'],
    )
    if df.empty:
        return []

    clusters: List[Cluster] = []
    for incident_type, group in df.groupby('type', sort=True):
        labels = cluster_points(group[['lat', 'lon']].to_numpy(dtype=float), eps_meters, min_points)
        group = group.assign(cluster=labels)

        for label, members in group[group['cluster'] != -1].groupby('cluster'):
            # a border point shared by two clusters is kept by only one of them
            if len(members) < min_points:
                continue
            last_seen = members['created_at'].max()
            clusters.append(Cluster(
                incident_type=str(incident_type),
                center=Location(lat=float(members['lat'].mean()), lon=float(members['lon'].mean())),
                count=int(len(members)),
                last_incident_at=last_seen.to_pydatetime() if hasattr(last_seen, 'to_pydatetime') else last_seen,
                incident_ids=list(members['id']),
            ))

    return sorted(clusters, key=lambda c: c.count, reverse=True)

