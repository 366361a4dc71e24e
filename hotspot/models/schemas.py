from typing import List, Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class IncidentType(str, Enum):
    HIJACKING = "hijacking"
    MUGGING = "mugging"
    ACCIDENT = "accident"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RouteRiskLevel(str, Enum):
    SAFE = "safe"
    MODERATE = "moderate"
    CAUTION = "caution"
    DANGEROUS = "dangerous"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class IncidentCreate(BaseModel):
    type: str
    location: Optional[Location] = None
    reporter_id: str
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)


class Incident(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: IncidentType
    location: Location
    description: Optional[str] = None
    reporter_id: str
    verification_count: int = Field(default=0, ge=0)
    is_verified: bool = False
    created_at: datetime
    expires_at: datetime
    idempotency_key: Optional[str] = None
    distance_meters: Optional[float] = None  # set by nearby queries


class VoteRequest(BaseModel):
    voter_id: str


class Verification(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    incident_id: str
    voter_id: str
    created_at: datetime


class VoteResult(BaseModel):
    verification: Verification
    verification_count: int
    is_verified: bool


class HotspotZone(BaseModel):
    id: str
    zone_type: IncidentType
    center: Location
    radius_meters: int
    incident_count: int
    risk_level: RiskLevel
    is_active: bool
    last_incident_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ZoneMembership(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    zone_id: str
    entered_at: datetime
    exited_at: Optional[datetime] = None
    notification_sent: bool = False


class ClusteringStats(BaseModel):
    clusters: int = 0
    created: int = 0
    updated: int = 0
    dissolved: int = 0


class LocationUpdate(BaseModel):
    user_id: str
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    is_premium: bool = False


class LocationUpdateResult(BaseModel):
    entered: List[HotspotZone] = []
    exited: List[HotspotZone] = []
    approaching: List[HotspotZone] = []


class DeviceTokenRegistration(BaseModel):
    user_id: str
    token: str = Field(..., min_length=1)
    platform: Platform


class AlertProfileUpdate(BaseModel):
    user_id: str
    alert_radius_meters: Optional[int] = Field(default=None, gt=0)
    notification_config: Optional[Dict[str, Any]] = None
    is_premium: Optional[bool] = None


class AlertProfile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    alert_radius_meters: int
    notification_config: Optional[Dict[str, Any]] = None
    is_premium: bool = False


class RouteRequest(BaseModel):
    origin: Location
    destination: Location
    radius_meters: int = Field(default=1000, gt=0, le=20000)


class ZoneSummary(BaseModel):
    id: str
    type: IncidentType
    risk_level: RiskLevel
    incident_count: int
    location: Location


class RouteSegment(BaseModel):
    segment_number: int
    start_location: Location
    end_location: Location
    safety_score: int
    risk_level: RouteRiskLevel
    incident_count: int
    hotspot_zones: int
    critical_zones: int
    high_risk_zones: int


class RouteSafetyReport(BaseModel):
    safety_score: int
    risk_level: RouteRiskLevel
    total_incidents: int
    incident_counts: Dict[str, int]
    hotspot_zones: Dict[str, int]
    zones: List[ZoneSummary]
    segments: List[RouteSegment]
    recommendations: List[str]


class RouteOption(BaseModel):
    route_name: str
    waypoints: List[Location]
    safety_score: int
    total_incidents: int
    total_zones: int
    estimated_detour_km: float


class RouteAlternatives(BaseModel):
    direct_route: RouteOption
    alternative_routes: List[RouteOption]
    recommendation: str
