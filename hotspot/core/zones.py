"""
Spatial Clustering & Zone Lifecycle Manager.

A clustering cycle:
  1. fetch non-expired incidents from the last 7 days
  2. DBSCAN per incident type (eps ~1.1 km, 5 points minimum)
  3. match each cluster to the closest same-type zone within 500 m and update
     it, or create a new zone
  4. dissolve active zones that now hold fewer than 3 matching incidents

The manager holds no state between runs. Cycles are single-flight: a tick
that finds another cycle running is skipped, never queued.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import redis
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .alerts import ProximityAlertDispatcher, get_dispatcher, zone_payload
from .analysis import Cluster, risk_level_for_count
from .config import settings
from .errors import ClusteringCycleSkipped, NotFound, SpatialStoreUnavailable
from .spatial_store import SpatialStore
from ..db import SessionLocal
from ..models.orm import HotspotZoneORM, utcnow
from ..models.schemas import ClusteringStats, HotspotZone, Location

logger = logging.getLogger(__name__)

_cycle_lock = threading.Lock()
CYCLE_LOCK_NAME = "hotspot:clustering-cycle"


@contextmanager
def _redis_cycle_lock():
    """Hold the cross-instance lock, or raise ClusteringCycleSkipped.

    An unreachable Redis skips the tick rather than running unguarded.
    """
    try:
        client = redis.from_url(settings.REDIS_URL)
        lock = client.lock(CYCLE_LOCK_NAME, timeout=settings.CLUSTERING_LOCK_TIMEOUT_SECONDS)
        acquired = lock.acquire(blocking=False)
    except redis.exceptions.RedisError as e:
        logger.error("Clustering lock unavailable: %s", e)
        raise ClusteringCycleSkipped(f"clustering lock unavailable: {e}") from e
    if not acquired:
        raise ClusteringCycleSkipped("another instance is running the clustering cycle")
    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning("Clustering lock expired before the cycle finished")
        except redis.exceptions.RedisError as e:
            logger.warning("Could not release clustering lock, it expires on its own: %s", e)


@contextmanager
def single_flight():
    """Hold the cycle lock for one run, or raise ClusteringCycleSkipped."""
    if not _cycle_lock.acquire(blocking=False):
        raise ClusteringCycleSkipped("previous clustering cycle still running")
    try:
        if settings.CLUSTERING_LOCK_BACKEND == "redis":
            with _redis_cycle_lock():
                yield
        else:
            yield
    finally:
        _cycle_lock.release()


class ZoneLifecycleManager:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 dispatcher: Optional[ProximityAlertDispatcher] = None):
        self.session_factory = session_factory
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> ProximityAlertDispatcher:
        return self._dispatcher or get_dispatcher()

    def run_clustering_cycle(self, now: Optional[datetime] = None) -> ClusteringStats:
        """Run one cycle. Raises ClusteringCycleSkipped or SpatialStoreUnavailable."""
        with single_flight():
            return self._run(now or utcnow())

    def _run(self, now: datetime) -> ClusteringStats:
        db = self.session_factory()
        created_events = []
        dissolved_events = []
        try:
            store = SpatialStore(db)
            clusters = store.cluster(
                None,
                settings.CLUSTER_WINDOW_DAYS,
                settings.CLUSTER_EPS_METERS,
                settings.CLUSTER_MIN_POINTS,
                now=now,
            )
            stats = ClusteringStats(clusters=len(clusters))

            created = []
            claimed = set()
            for cluster in clusters:
                zone = self._match_zone(store, cluster, claimed)
                if zone is None:
                    zone = self._create_zone(db, cluster, now)
                    created.append(zone)
                    stats.created += 1
                else:
                    self._update_zone(zone, cluster, now)
                    stats.updated += 1
                claimed.add(zone.id)

            dissolved = self._dissolve_stale_zones(store, now)
            stats.dissolved = len(dissolved)

            created_events = [zone_payload(z) for z in created]
            dissolved_events = [{"id": z.id, "zone_type": z.zone_type} for z in dissolved]
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Clustering cycle aborted, zone state untouched: %s", e)
            raise SpatialStoreUnavailable(str(e)) from e
        finally:
            db.close()

        for payload in created_events:
            self.dispatcher.zone_created(payload)
        for payload in dissolved_events:
            self.dispatcher.zone_dissolved(payload)

        logger.info("Zone update completed: %s", stats.model_dump())
        return stats

    def _match_zone(self, store: SpatialStore, cluster: Cluster, claimed: set) -> Optional[HotspotZoneORM]:
        """Closest same-type zone within the match distance; active zones win over dormant ones."""
        candidates = store.query_zones_within_radius(
            cluster.center,
            settings.ZONE_MATCH_DISTANCE_METERS,
            zone_type=cluster.incident_type,
            active_only=False,
            for_update=True,
        )
        candidates = [(zone, d) for zone, d in candidates if zone.id not in claimed]
        if not candidates:
            return None
        # sort is stable: within each group candidates stay nearest first
        candidates.sort(key=lambda zd: not zd[0].is_active)
        return candidates[0][0]

    def _create_zone(self, db: Session, cluster: Cluster, now: datetime) -> HotspotZoneORM:
        zone = HotspotZoneORM(
            zone_type=cluster.incident_type,
            center_lat=cluster.center.lat,
            center_lon=cluster.center.lon,
            radius_meters=settings.ZONE_DEFAULT_RADIUS_METERS,
            incident_count=cluster.count,
            risk_level=risk_level_for_count(cluster.count).value,
            is_active=True,
            last_incident_at=cluster.last_incident_at,
            created_at=now,
            updated_at=now,
        )
        db.add(zone)
        db.flush()
        logger.info("Created %s zone %s (%d incidents)", zone.zone_type, zone.id, cluster.count)
        return zone

    def _update_zone(self, zone: HotspotZoneORM, cluster: Cluster, now: datetime) -> None:
        if not zone.is_active:
            logger.info("Reactivating zone %s", zone.id)
        zone.incident_count = cluster.count
        zone.risk_level = risk_level_for_count(cluster.count).value
        zone.last_incident_at = cluster.last_incident_at
        zone.is_active = True
        zone.updated_at = now

    def _dissolve_stale_zones(self, store: SpatialStore, now: datetime) -> List[HotspotZoneORM]:
        """Deactivate active zones with fewer than the threshold of matching incidents."""
        window_start = now - timedelta(days=settings.CLUSTER_WINDOW_DAYS)
        active_zones = (
            store.db.query(HotspotZoneORM)
            .filter(HotspotZoneORM.is_active.is_(True))
            .with_for_update()
            .all()
        )

        dissolved = []
        for zone in active_zones:
            matches = store.query_within_radius(
                Location(lat=zone.center_lat, lon=zone.center_lon),
                zone.radius_meters,
                incident_type=zone.zone_type,
                created_after=window_start,
                now=now,
            )
            if len(matches) < settings.ZONE_DISSOLVE_THRESHOLD:
                zone.is_active = False
                zone.updated_at = now
                dissolved.append(zone)
                logger.info("Dissolved zone %s (%d matching incidents)", zone.id, len(matches))
        return dissolved


def list_active_zones(db: Session) -> List[HotspotZoneORM]:
    return (
        db.query(HotspotZoneORM)
        .filter(HotspotZoneORM.is_active.is_(True))
        .order_by(HotspotZoneORM.incident_count.desc())
        .all()
    )


def get_zone(db: Session, zone_id: str) -> HotspotZoneORM:
    zone = db.query(HotspotZoneORM).filter(HotspotZoneORM.id == zone_id).first()
    if zone is None:
        raise NotFound(f"Zone {zone_id} not found")
    return zone


def max_zone_radius(db: Session) -> float:
    radius = db.query(func.max(HotspotZoneORM.radius_meters)).scalar()
    return float(radius or settings.ZONE_DEFAULT_RADIUS_METERS)


def check_location(db: Session, location: Location) -> List[HotspotZoneORM]:
    """Active zones whose radius contains the location."""
    return [zone for zone, _ in SpatialStore(db).zones_containing(location, max_zone_radius(db))]


def zone_to_schema(zone: HotspotZoneORM) -> HotspotZone:
    return HotspotZone(
        id=zone.id,
        zone_type=zone.zone_type,
        center=Location(lat=zone.center_lat, lon=zone.center_lon),
        radius_meters=zone.radius_meters,
        incident_count=zone.incident_count,
        risk_level=zone.risk_level,
        is_active=zone.is_active,
        last_incident_at=zone.last_incident_at,
        created_at=zone.created_at,
        updated_at=zone.updated_at,
    )
