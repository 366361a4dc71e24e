import pytest
from sqlalchemy.exc import OperationalError

from hotspot.core import zones as zones_module
from hotspot.core.errors import ClusteringCycleSkipped, SpatialStoreUnavailable
from hotspot.core.zones import ZoneLifecycleManager, check_location, list_active_zones
from hotspot.models.orm import HotspotZoneORM, IncidentORM
from hotspot.models.schemas import Location

BASE_LAT, BASE_LON = -26.2041, 28.0473


def seed_cluster(make_incident, count=5, type="hijacking", lat=BASE_LAT, lon=BASE_LON):
    # ~55 m apart, spread over two days
    return [
        make_incident(type=type, lat=lat + i * 0.0005, lon=lon, hours_ago=i * 10)
        for i in range(count)
    ]


def test_five_nearby_incidents_create_a_low_zone(db, make_incident, events):
    seed_cluster(make_incident)

    stats = ZoneLifecycleManager().run_clustering_cycle()

    assert stats.created == 1
    zone = db.query(HotspotZoneORM).one()
    assert zone.zone_type == "hijacking"
    assert zone.risk_level == "low"
    assert zone.radius_meters == 1000
    assert zone.incident_count == 5
    assert zone.is_active is True
    assert ("geofence:zones", "zone:created") in [e[:2] for e in events]


def test_four_incidents_make_no_zone(db, make_incident):
    seed_cluster(make_incident, count=4)

    stats = ZoneLifecycleManager().run_clustering_cycle()

    assert stats.clusters == 0
    assert db.query(HotspotZoneORM).count() == 0


def test_types_cluster_separately(db, make_incident):
    seed_cluster(make_incident, count=3, type="hijacking")
    seed_cluster(make_incident, count=3, type="mugging")

    ZoneLifecycleManager().run_clustering_cycle()

    assert db.query(HotspotZoneORM).count() == 0


def test_zone_dissolves_when_matches_drop(db, make_incident, events):
    incidents = seed_cluster(make_incident)
    manager = ZoneLifecycleManager()
    manager.run_clustering_cycle()

    for incident in incidents[:3]:
        db.delete(incident)
    db.commit()

    stats = manager.run_clustering_cycle()

    assert stats.dissolved == 1
    db.expire_all()
    zone = db.query(HotspotZoneORM).one()
    assert zone.is_active is False
    assert list_active_zones(db) == []
    assert ("geofence:zones", "zone:dissolved") in [e[:2] for e in events]


def test_rerun_updates_existing_zone(db, make_incident):
    seed_cluster(make_incident)
    manager = ZoneLifecycleManager()
    manager.run_clustering_cycle()

    seed_cluster(make_incident, count=2, lat=BASE_LAT + 0.0001)
    stats = manager.run_clustering_cycle()

    assert (stats.created, stats.updated) == (0, 1)
    zone = db.query(HotspotZoneORM).one()
    assert zone.incident_count == 7
    assert zone.risk_level == "medium"


def test_cluster_matches_closest_zone(db, make_incident, make_zone):
    # centroid sits ~110 m north of BASE_LAT
    far = make_zone(lat=BASE_LAT + 0.0046, incident_count=9, risk_level="medium")
    near = make_zone(lat=BASE_LAT + 0.0012, incident_count=1)
    seed_cluster(make_incident)

    stats = ZoneLifecycleManager().run_clustering_cycle()

    assert (stats.created, stats.updated) == (0, 1)
    db.expire_all()
    assert db.get(HotspotZoneORM, near.id).incident_count == 5
    assert db.get(HotspotZoneORM, far.id).incident_count == 9


def test_dormant_zone_is_reactivated(db, make_incident, make_zone):
    dormant = make_zone(is_active=False, incident_count=3)
    seed_cluster(make_incident)

    stats = ZoneLifecycleManager().run_clustering_cycle()

    assert stats.created == 0
    db.expire_all()
    zone = db.get(HotspotZoneORM, dormant.id)
    assert zone.is_active is True
    assert zone.incident_count == 5


def test_expired_incidents_are_not_clustered(db, make_incident):
    for i in range(5):
        make_incident(lat=BASE_LAT + i * 0.0005, expires_in_hours=-1)

    assert ZoneLifecycleManager().run_clustering_cycle().clusters == 0


def test_overlapping_tick_is_skipped(make_incident):
    seed_cluster(make_incident)
    assert zones_module._cycle_lock.acquire(blocking=False)
    try:
        with pytest.raises(ClusteringCycleSkipped):
            ZoneLifecycleManager().run_clustering_cycle()
    finally:
        zones_module._cycle_lock.release()


def test_store_failure_rolls_back_cycle(db, make_incident, monkeypatch):
    seed_cluster(make_incident)

    def broken(self, store, now):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(ZoneLifecycleManager, "_dissolve_stale_zones", broken)

    with pytest.raises(SpatialStoreUnavailable):
        ZoneLifecycleManager().run_clustering_cycle()

    assert db.query(HotspotZoneORM).count() == 0
    assert db.query(IncidentORM).count() == 5
    # the lock was released
    assert zones_module._cycle_lock.acquire(blocking=False)
    zones_module._cycle_lock.release()


def test_check_location(db, make_zone):
    zone = make_zone(radius_meters=1000)
    make_zone(lat=BASE_LAT + 0.1)

    inside = check_location(db, Location(lat=BASE_LAT + 0.005, lon=BASE_LON))
    outside = check_location(db, Location(lat=BASE_LAT + 0.02, lon=BASE_LON))

    assert [z.id for z in inside] == [zone.id]
    assert outside == []
