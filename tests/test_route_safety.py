import pytest

from hotspot.core.route_safety import RouteSafetyScorer, route_risk_level, safety_score
from hotspot.models.schemas import Location, RouteRiskLevel

ORIGIN = Location(lat=-26.2041, lon=28.0473)
DESTINATION = Location(lat=-26.1541, lon=28.0473)  # ~5.6 km north


def test_hijackings_and_critical_zone_score_moderate(db, make_incident, make_zone):
    for i in range(4):
        make_incident(type="hijacking", lat=ORIGIN.lat + i * 0.001, hours_ago=i)
    make_incident(type="mugging", hours_ago=50, expires_in_hours=10)
    make_zone(risk_level="critical", incident_count=25)
    make_zone(risk_level="high", is_active=False)

    report = RouteSafetyScorer().analyze_route(db, ORIGIN, DESTINATION, 1000)

    assert report.safety_score == 72
    assert report.risk_level == RouteRiskLevel.MODERATE
    assert report.total_incidents == 4
    assert report.incident_counts == {"hijacking": 4, "mugging": 0, "accident": 0}
    assert report.hotspot_zones == {"total": 1, "critical": 1, "high": 0, "medium": 0, "low": 0}
    assert report.recommendations == [
        "1 critical hotspot zone(s) detected on this route",
        "High hijacking activity reported on this route",
    ]

    assert [s.segment_number for s in report.segments] == [1, 2, 3, 4, 5]
    assert report.segments[0].safety_score == 72
    assert report.segments[0].critical_zones == 1
    assert report.segments[-1].safety_score == 100
    assert report.segments[-1].end_location.lat == pytest.approx(DESTINATION.lat)


def test_quiet_route_is_safe(db):
    report = RouteSafetyScorer().analyze_route(db, ORIGIN, DESTINATION)

    assert report.safety_score == 100
    assert report.risk_level == RouteRiskLevel.SAFE
    assert report.recommendations == ["Route appears safe based on recent activity"]


def test_incidents_off_route_are_ignored(db, make_incident):
    # inside the bounding box but more than 1 km from both endpoints
    make_incident(lat=-26.1791)

    report = RouteSafetyScorer().analyze_route(db, ORIGIN, DESTINATION, 1000)

    assert report.total_incidents == 0


def test_alternatives_recommended_for_dangerous_route(db, make_zone):
    for _ in range(3):
        make_zone(risk_level="critical", incident_count=30)

    result = RouteSafetyScorer().suggest_alternatives(db, ORIGIN, DESTINATION, 1000)

    assert result.direct_route.safety_score == 40
    assert result.direct_route.estimated_detour_km == 0.0
    assert {r.route_name for r in result.alternative_routes} == {
        "Northern Route", "Southern Route", "Eastern Route",
    }
    scores = [r.safety_score for r in result.alternative_routes]
    assert scores == sorted(scores, reverse=True)
    assert all(len(r.waypoints) == 3 for r in result.alternative_routes)
    assert result.recommendation == "Consider taking an alternative route for better safety"


def test_direct_route_kept_when_safe(db):
    result = RouteSafetyScorer().suggest_alternatives(db, ORIGIN, DESTINATION)
    assert result.recommendation == "Direct route is the safest option"


def test_score_bands_and_clamp():
    assert route_risk_level(80) == RouteRiskLevel.SAFE
    assert route_risk_level(79) == RouteRiskLevel.MODERATE
    assert route_risk_level(40) == RouteRiskLevel.CAUTION
    assert route_risk_level(39) == RouteRiskLevel.DANGEROUS

    class Zone:
        risk_level = "critical"

    assert safety_score([object()] * 10, [Zone()] * 5) == 0
