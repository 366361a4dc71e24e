import threading
from datetime import timedelta

import pytest

from hotspot.core.errors import NotFound
from hotspot.core.membership import ApproachCooldown, ZoneMembershipTracker
from hotspot.db import SessionLocal
from hotspot.models.orm import UserLastKnownLocationORM, ZoneMembershipORM, utcnow
from hotspot.models.schemas import Location

BASE_LAT, BASE_LON = -26.2041, 28.0473
# 0.0117 degrees of latitude is ~1301 m
APPROACH_LAT = BASE_LAT + 0.0117


def test_enter_is_idempotent(db, make_zone, make_user, dispatcher, gateway):
    zone = make_zone()
    make_user("u1", tokens=["tok-1"])
    tracker = ZoneMembershipTracker(db)

    first = tracker.enter("u1", zone.id)
    second = tracker.enter("u1", zone.id)
    dispatcher.pool.wait_idle()

    assert first.id == second.id
    assert first.notification_sent is True
    assert db.query(ZoneMembershipORM).count() == 1
    assert len(gateway.sent) == 1
    assert gateway.sent[0]["title"] == "Hotspot Zone Alert"
    assert gateway.sent[0]["body"].startswith("Entering LOW RISK zone - 5 hijacking")


def test_exit_without_membership(db, make_zone):
    zone = make_zone()
    with pytest.raises(NotFound):
        ZoneMembershipTracker(db).exit("u1", zone.id)


def test_enter_exit_enter_opens_new_membership(db, make_zone):
    zone = make_zone()
    tracker = ZoneMembershipTracker(db)

    first = tracker.enter("u1", zone.id)
    closed = tracker.exit("u1", zone.id)
    again = tracker.enter("u1", zone.id)

    assert closed.exited_at is not None
    assert again.id != first.id
    assert [z.id for z in tracker.current_zones("u1")] == [zone.id]


def test_zone_alerts_toggle_suppresses_push(db, make_zone, make_user, dispatcher, gateway):
    zone = make_zone()
    make_user("u1", tokens=["tok-1"], notification_config={"hotspot_zone_alerts": False})

    membership = ZoneMembershipTracker(db).enter("u1", zone.id)
    dispatcher.pool.wait_idle()

    assert membership.notification_sent is True
    assert gateway.sent == []


def test_premium_user_sees_approaching_zone(db, make_zone):
    zone = make_zone(radius_meters=1000)
    tracker = ZoneMembershipTracker(db)
    point = Location(lat=APPROACH_LAT, lon=BASE_LON)

    assert [z.id for z in tracker.approaching(point, is_premium=True)] == [zone.id]
    assert tracker.approaching(point, is_premium=False) == []


def test_approaching_excludes_inside_and_far(db, make_zone):
    make_zone(radius_meters=1000)
    tracker = ZoneMembershipTracker(db)

    assert tracker.approaching(Location(lat=BASE_LAT + 0.005, lon=BASE_LON), True) == []
    assert tracker.approaching(Location(lat=BASE_LAT + 0.02, lon=BASE_LON), True) == []


def test_location_updates_drive_enter_and_exit(db, make_zone, make_user, dispatcher, gateway):
    zone = make_zone()
    make_user("u1", tokens=["tok-1"])
    tracker = ZoneMembershipTracker(db)

    entered = tracker.handle_location_update("u1", BASE_LAT, BASE_LON)
    assert [z.id for z in entered.entered] == [zone.id]

    still_inside = tracker.handle_location_update("u1", BASE_LAT + 0.001, BASE_LON)
    assert still_inside.entered == [] and still_inside.exited == []

    left = tracker.handle_location_update("u1", BASE_LAT + 0.05, BASE_LON)
    assert [z.id for z in left.exited] == [zone.id]
    dispatcher.pool.wait_idle()

    bodies = [m["body"] for m in gateway.sent]
    assert len(bodies) == 2
    assert "You have left the hotspot zone. Stay safe." in bodies
    last = db.query(UserLastKnownLocationORM).filter_by(user_id="u1").one()
    assert last.lat == pytest.approx(BASE_LAT + 0.05)


def test_approaching_alerts_are_rate_limited(db, make_zone, make_user, dispatcher, gateway):
    zone = make_zone()
    make_user("u1", tokens=["tok-1"], is_premium=True)
    tracker = ZoneMembershipTracker(db)

    first = tracker.handle_location_update("u1", APPROACH_LAT, BASE_LON, is_premium=True)
    second = tracker.handle_location_update("u1", APPROACH_LAT, BASE_LON, is_premium=True)
    dispatcher.pool.wait_idle()

    assert [z.id for z in first.approaching] == [zone.id]
    assert [z.id for z in second.approaching] == [zone.id]
    assert len(gateway.sent) == 1
    assert gateway.sent[0]["data"]["action"] == "approaching"


def test_cooldown_window():
    cooldown = ApproachCooldown(minutes=15)
    now = utcnow()

    assert cooldown.allow("u1", "z1", now)
    assert not cooldown.allow("u1", "z1", now + timedelta(minutes=14))
    assert cooldown.allow("u1", "z2", now)
    assert cooldown.allow("u1", "z1", now + timedelta(minutes=16))


def test_concurrent_enter_opens_one_membership(db, make_zone, make_user, dispatcher, gateway):
    zone = make_zone()
    make_user("u1", tokens=["tok-1"])
    barrier = threading.Barrier(8)
    membership_ids = []
    errors = []

    def enter():
        session = SessionLocal()
        try:
            barrier.wait()
            membership_ids.append(ZoneMembershipTracker(session).enter("u1", zone.id).id)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=enter) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    dispatcher.pool.wait_idle()

    assert errors == []
    open_rows = (
        db.query(ZoneMembershipORM)
        .filter(ZoneMembershipORM.user_id == "u1", ZoneMembershipORM.exited_at.is_(None))
        .all()
    )
    assert len(open_rows) == 1
    assert set(membership_ids) == {open_rows[0].id}
    assert len(gateway.sent) == 1


def test_history_lists_latest_first(db, make_zone):
    zone = make_zone()
    tracker = ZoneMembershipTracker(db)
    first = tracker.enter("u1", zone.id)
    tracker.exit("u1", zone.id)
    second = tracker.enter("u1", zone.id)

    history = tracker.history("u1")

    assert [m.id for m in history] == [second.id, first.id]
    assert history[0].exited_at is None
    assert history[1].exited_at is not None
    assert tracker.history("u1", limit=1)[0].id == second.id
    assert tracker.history("nobody") == []
