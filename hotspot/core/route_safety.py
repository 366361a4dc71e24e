from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .analysis import calculate_distance, route_bounding_box
from .config import settings
from ..models.orm import HotspotZoneORM, IncidentORM, utcnow
from ..models.schemas import (
    IncidentType, Location, RiskLevel, RouteAlternatives, RouteOption, RouteRiskLevel,
    RouteSafetyReport, RouteSegment, ZoneSummary,
)

INCIDENT_PENALTY = 2
ZONE_PENALTIES = {
    RiskLevel.CRITICAL.value: 20,
    RiskLevel.HIGH.value: 10,
    RiskLevel.MEDIUM.value: 5,
    RiskLevel.LOW.value: 2,
}
DETOUR_FACTOR = 0.1


def safety_score(incidents: Sequence[IncidentORM], zones: Sequence[HotspotZoneORM]) -> int:
    score = 100 - INCIDENT_PENALTY * len(incidents)
    score -= sum(ZONE_PENALTIES.get(zone.risk_level, 0) for zone in zones)
    return max(0, min(100, score))


def route_risk_level(score: int) -> RouteRiskLevel:
    if score >= 80:
        return RouteRiskLevel.SAFE
    if score >= 60:
        return RouteRiskLevel.MODERATE
    if score >= 40:
        return RouteRiskLevel.CAUTION
    return RouteRiskLevel.DANGEROUS


def distance_to_route(point: Location, start: Location, end: Location) -> float:
    """Distance from a point to the nearer endpoint of a leg.

    Points beside the middle of a long leg read as farther than they are.
    """
    return min(calculate_distance(point, start), calculate_distance(point, end))


def _incident_location(incident: IncidentORM) -> Location:
    return Location(lat=incident.lat, lon=incident.lon)


def _zone_location(zone: HotspotZoneORM) -> Location:
    return Location(lat=zone.center_lat, lon=zone.center_lon)


def _near_leg(start: Location, end: Location, incidents, zones, radius_meters: float):
    near_incidents = [
        i for i in incidents
        if distance_to_route(_incident_location(i), start, end) <= radius_meters
    ]
    near_zones = [
        z for z in zones
        if distance_to_route(_zone_location(z), start, end) <= z.radius_meters + radius_meters
    ]
    return near_incidents, near_zones


def _interpolate(origin: Location, destination: Location, fraction: float) -> Location:
    return Location(
        lat=origin.lat + (destination.lat - origin.lat) * fraction,
        lon=origin.lon + (destination.lon - origin.lon) * fraction,
    )


class RouteSafetyScorer:
    """Scores a straight origin-destination path against recent incidents and active zones."""

    def __init__(self, segments: Optional[int] = None, window_hours: Optional[int] = None):
        self.segments = segments or settings.ROUTE_SEGMENTS
        self.window_hours = window_hours or settings.ROUTE_INCIDENT_WINDOW_HOURS

    def _candidates(self, db: Session, origin: Location, destination: Location,
                    radius_meters: float, now: datetime) -> Tuple[List[IncidentORM], List[HotspotZoneORM]]:
        min_lat, max_lat, min_lon, max_lon = route_bounding_box(origin, destination, radius_meters)
        incidents = (
            db.query(IncidentORM)
            .filter(
                IncidentORM.lat >= min_lat, IncidentORM.lat <= max_lat,
                IncidentORM.lon >= min_lon, IncidentORM.lon <= max_lon,
                IncidentORM.created_at > now - timedelta(hours=self.window_hours),
                IncidentORM.expires_at > now,
            )
            .all()
        )
        zones = (
            db.query(HotspotZoneORM)
            .filter(
                HotspotZoneORM.center_lat >= min_lat, HotspotZoneORM.center_lat <= max_lat,
                HotspotZoneORM.center_lon >= min_lon, HotspotZoneORM.center_lon <= max_lon,
                HotspotZoneORM.is_active.is_(True),
            )
            .all()
        )
        return _near_leg(origin, destination, incidents, zones, radius_meters)

    def analyze_route(self, db: Session, origin: Location, destination: Location,
                      radius_meters: Optional[float] = None, now: Optional[datetime] = None) -> RouteSafetyReport:
        radius_meters = radius_meters or settings.ROUTE_DEFAULT_RADIUS_METERS
        incidents, zones = self._candidates(db, origin, destination, radius_meters, now or utcnow())

        score = safety_score(incidents, zones)
        by_type = Counter(i.type for i in incidents)
        by_level = Counter(z.risk_level for z in zones)

        return RouteSafetyReport(
            safety_score=score,
            risk_level=route_risk_level(score),
            total_incidents=len(incidents),
            incident_counts={t.value: by_type.get(t.value, 0) for t in IncidentType},
            hotspot_zones={
                "total": len(zones),
                **{level.value: by_level.get(level.value, 0) for level in reversed(list(RiskLevel))},
            },
            zones=[
                ZoneSummary(
                    id=z.id,
                    type=z.zone_type,
                    risk_level=z.risk_level,
                    incident_count=z.incident_count,
                    location=_zone_location(z),
                )
                for z in zones
            ],
            segments=self._segments(origin, destination, incidents, zones, radius_meters),
            recommendations=self._recommendations(score, by_type, by_level),
        )

    def _segments(self, origin, destination, incidents, zones, radius_meters) -> List[RouteSegment]:
        segments = []
        for i in range(self.segments):
            start = _interpolate(origin, destination, i / self.segments)
            end = _interpolate(origin, destination, (i + 1) / self.segments)
            seg_incidents, seg_zones = _near_leg(start, end, incidents, zones, radius_meters)
            score = safety_score(seg_incidents, seg_zones)
            segments.append(RouteSegment(
                segment_number=i + 1,
                start_location=start,
                end_location=end,
                safety_score=score,
                risk_level=route_risk_level(score),
                incident_count=len(seg_incidents),
                hotspot_zones=len(seg_zones),
                critical_zones=sum(1 for z in seg_zones if z.risk_level == RiskLevel.CRITICAL.value),
                high_risk_zones=sum(1 for z in seg_zones if z.risk_level == RiskLevel.HIGH.value),
            ))
        return segments

    def _recommendations(self, score: int, by_type: Counter, by_level: Counter) -> List[str]:
        recommendations = []
        if score < 60:
            recommendations.append("Consider taking an alternative route")
        critical = by_level.get(RiskLevel.CRITICAL.value, 0)
        if critical:
            recommendations.append(f"{critical} critical hotspot zone(s) detected on this route")
        if by_type.get(IncidentType.HIJACKING.value, 0) > 3:
            recommendations.append("High hijacking activity reported on this route")
        if score >= 80:
            recommendations.append("Route appears safe based on recent activity")
        return recommendations or ["No specific safety concerns detected"]

    def suggest_alternatives(self, db: Session, origin: Location, destination: Location,
                             radius_meters: Optional[float] = None, now: Optional[datetime] = None) -> RouteAlternatives:
        """Score the direct path against three detours through offset midpoints."""
        now = now or utcnow()
        direct = self.analyze_route(db, origin, destination, radius_meters, now)

        mid_lat = (origin.lat + destination.lat) / 2
        mid_lon = (origin.lon + destination.lon) / 2
        lat_offset = abs(destination.lat - origin.lat) * DETOUR_FACTOR
        lon_offset = abs(destination.lon - origin.lon) * DETOUR_FACTOR
        waypoints = [
            ("Northern Route", Location(lat=mid_lat + lat_offset, lon=mid_lon)),
            ("Southern Route", Location(lat=mid_lat - lat_offset, lon=mid_lon)),
            ("Eastern Route", Location(lat=mid_lat, lon=mid_lon + lon_offset)),
        ]

        alternatives = []
        for name, waypoint in waypoints:
            leg1 = self.analyze_route(db, origin, waypoint, radius_meters, now)
            leg2 = self.analyze_route(db, waypoint, destination, radius_meters, now)
            alternatives.append(RouteOption(
                route_name=name,
                waypoints=[origin, waypoint, destination],
                safety_score=round((leg1.safety_score + leg2.safety_score) / 2),
                total_incidents=leg1.total_incidents + leg2.total_incidents,
                total_zones=leg1.hotspot_zones["total"] + leg2.hotspot_zones["total"],
                estimated_detour_km=detour_km(origin, destination, waypoint),
            ))
        alternatives.sort(key=lambda r: r.safety_score, reverse=True)

        better = any(r.safety_score > direct.safety_score + 10 for r in alternatives)
        if direct.safety_score < 60 and better:
            recommendation = "Consider taking an alternative route for better safety"
        else:
            recommendation = "Direct route is the safest option"

        return RouteAlternatives(
            direct_route=RouteOption(
                route_name="Direct Route",
                waypoints=[origin, destination],
                safety_score=direct.safety_score,
                total_incidents=direct.total_incidents,
                total_zones=direct.hotspot_zones["total"],
                estimated_detour_km=0.0,
            ),
            alternative_routes=alternatives,
            recommendation=recommendation,
        )


def detour_km(origin: Location, destination: Location, waypoint: Location) -> float:
    direct = calculate_distance(origin, destination)
    via = calculate_distance(origin, waypoint) + calculate_distance(waypoint, destination)
    return round((via - direct) / 1000, 1)


route_scorer = RouteSafetyScorer()
