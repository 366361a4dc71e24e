import logging
from typing import List, Optional

from fastapi import FastAPI, Query, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .core.broadcast import get_broadcaster
from .core.config import settings
from .core.errors import (
    ClusteringCycleSkipped, DuplicateVote, NotFound, SelfVote,
    SpatialStoreUnavailable, ValidationError,
)
from .core.incidents import IncidentStore
from .core.logging_config import configure_logging
from .core.membership import ZoneMembershipTracker
from .core.route_safety import route_scorer
from .core.zones import ZoneLifecycleManager, check_location, get_zone, list_active_zones, zone_to_schema
from .models.orm import DeviceTokenORM, IncidentORM, UserAlertProfileORM, utcnow
from .models.schemas import (
    AlertProfile,
    AlertProfileUpdate,
    ClusteringStats,
    DeviceTokenRegistration,
    HotspotZone,
    Incident,
    IncidentCreate,
    IncidentType,
    Location,
    LocationUpdate,
    LocationUpdateResult,
    RouteAlternatives,
    RouteRequest,
    RouteSafetyReport,
    Verification,
    VoteRequest,
    VoteResult,
    ZoneMembership,
)
from .db import SessionLocal, engine, Base

logger = logging.getLogger("hotspot.requests")

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create DB tables on startup (development only)"""
    configure_logging()
    Base.metadata.create_all(bind=engine)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"Incoming request {request.method} {request.url}")
    response = await call_next(request)
    logger.info(f"Completed {request.method} {request.url} -> {response.status_code}")
    return response


# === ERROR MAPPING ===

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(SelfVote)
@app.exception_handler(DuplicateVote)
async def vote_conflict_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def incident_to_schema(r: IncidentORM, distance: Optional[float] = None) -> Incident:
    """Convert an IncidentORM row into the Incident response model."""
    return Incident(
        id=r.id,
        type=r.type,
        location=Location(lat=r.lat, lon=r.lon),
        description=r.description,
        reporter_id=r.reporter_id,
        verification_count=r.verification_count,
        is_verified=r.is_verified,
        created_at=r.created_at,
        expires_at=r.expires_at,
        idempotency_key=r.idempotency_key,
        distance_meters=round(distance, 1) if distance is not None else None,
    )


# === INCIDENT ENDPOINTS ===

@app.post("/api/incidents", response_model=Incident, status_code=201)
def report_incident(payload: IncidentCreate, db: Session = Depends(get_db)):
    """Report a new incident; nearby users are alerted in the background"""
    incident = IncidentStore(db).report(
        payload.type,
        payload.location,
        payload.reporter_id,
        description=payload.description,
        expires_at=payload.expires_at,
        idempotency_key=payload.idempotency_key,
    )
    return incident_to_schema(incident)


@app.get("/api/incidents/nearby", response_model=List[Incident])
def nearby_incidents(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    radius_meters: float = Query(default=settings.NEARBY_DEFAULT_RADIUS_METERS, gt=0, le=50000),
    type: Optional[IncidentType] = None,
    db: Session = Depends(get_db),
):
    """Non-expired incidents around a point, nearest first"""
    rows = IncidentStore(db).list_nearby(
        Location(lat=lat, lon=lon),
        radius_meters,
        incident_type=type.value if type else None,
    )
    return [incident_to_schema(r, distance) for r, distance in rows]


@app.get("/api/incidents/{incident_id}", response_model=Incident)
def get_incident(incident_id: str, db: Session = Depends(get_db)):
    return incident_to_schema(IncidentStore(db).get(incident_id))


@app.post("/api/incidents/{incident_id}/verify", response_model=VoteResult, status_code=201)
def verify_incident(incident_id: str, vote: VoteRequest, db: Session = Depends(get_db)):
    """Record a community verification vote"""
    store = IncidentStore(db)
    verification = store.vote(incident_id, vote.voter_id)
    incident = store.get(incident_id)
    return VoteResult(
        verification=Verification.model_validate(verification),
        verification_count=incident.verification_count,
        is_verified=incident.is_verified,
    )


@app.get("/api/incidents/{incident_id}/verifications", response_model=List[Verification])
def list_verifications(incident_id: str, db: Session = Depends(get_db)):
    return [Verification.model_validate(v) for v in IncidentStore(db).list_verifications(incident_id)]


# === ZONE ENDPOINTS ===

@app.get("/api/zones", response_model=List[HotspotZone])
def get_zones(db: Session = Depends(get_db)):
    """Active hotspot zones, busiest first"""
    return [zone_to_schema(z) for z in list_active_zones(db)]


@app.get("/api/zones/{zone_id}", response_model=HotspotZone)
def get_zone_details(zone_id: str, db: Session = Depends(get_db)):
    return zone_to_schema(get_zone(db, zone_id))


@app.post("/api/zones/recalculate", response_model=ClusteringStats)
def recalculate_zones():
    """Run one clustering cycle now"""
    try:
        return ZoneLifecycleManager().run_clustering_cycle()
    except ClusteringCycleSkipped as e:
        return JSONResponse(status_code=409, content={"detail": str(e)})
    except SpatialStoreUnavailable as e:
        return JSONResponse(status_code=503, content={"detail": str(e)})


# === GEOFENCE ENDPOINTS ===

@app.post("/api/geofence/location", response_model=LocationUpdateResult)
def update_location(update: LocationUpdate, db: Session = Depends(get_db)):
    """Report a user location; fires enter/exit/approaching alerts"""
    return ZoneMembershipTracker(db).handle_location_update(
        update.user_id, update.lat, update.lon, is_premium=update.is_premium,
    )


@app.post("/api/geofence/check-location", response_model=List[HotspotZone])
def check_location_zones(location: Location, db: Session = Depends(get_db)):
    """Zones containing a point, without touching any membership"""
    return [zone_to_schema(z) for z in check_location(db, location)]


@app.get("/api/geofence/approaching", response_model=List[HotspotZone])
def approaching_zones(
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
    is_premium: bool = False,
    db: Session = Depends(get_db),
):
    zones = ZoneMembershipTracker(db).approaching(Location(lat=lat, lon=lon), is_premium)
    return [zone_to_schema(z) for z in zones]


@app.get("/api/geofence/user-zones/{user_id}", response_model=List[HotspotZone])
def user_zones(user_id: str, db: Session = Depends(get_db)):
    return [zone_to_schema(z) for z in ZoneMembershipTracker(db).current_zones(user_id)]


@app.get("/api/geofence/memberships/{user_id}", response_model=List[ZoneMembership])
def membership_history(user_id: str, limit: int = Query(default=50, ge=1, le=500), db: Session = Depends(get_db)):
    """Zone entries and exits for a user, most recent first"""
    return [ZoneMembership.model_validate(m) for m in ZoneMembershipTracker(db).history(user_id, limit)]


# === REALTIME FEED ===

@app.get("/api/events")
def read_events(
    topic: str = Query(..., min_length=1),
    after: str = "0",
    count: int = Query(default=100, ge=1, le=1000),
):
    """Events published on a topic after the given event id, oldest first"""
    try:
        events = get_broadcaster().read(topic, after=after, count=count)
    except redis.exceptions.RedisError as e:
        return JSONResponse(status_code=503, content={"detail": f"event stream unavailable: {e}"})
    return {"topic": topic, "events": events}


# === NOTIFICATION SETTINGS ===

@app.post("/api/notifications/tokens", status_code=201)
def register_device_token(registration: DeviceTokenRegistration, db: Session = Depends(get_db)):
    """Register a push token; re-registering the same token updates its platform"""
    device = (
        db.query(DeviceTokenORM)
        .filter(DeviceTokenORM.user_id == registration.user_id, DeviceTokenORM.token == registration.token)
        .first()
    )
    if device is None:
        device = DeviceTokenORM(
            user_id=registration.user_id,
            token=registration.token,
            platform=registration.platform.value,
        )
        db.add(device)
    else:
        device.platform = registration.platform.value
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    return {"user_id": registration.user_id, "token": registration.token, "platform": registration.platform.value}


@app.put("/api/notifications/profile", response_model=AlertProfile)
def update_alert_profile(update: AlertProfileUpdate, db: Session = Depends(get_db)):
    profile = db.query(UserAlertProfileORM).filter(UserAlertProfileORM.user_id == update.user_id).first()
    if profile is None:
        profile = UserAlertProfileORM(
            user_id=update.user_id,
            alert_radius_meters=settings.DEFAULT_ALERT_RADIUS_METERS,
            is_premium=False,
        )
        db.add(profile)

    if update.is_premium is not None:
        profile.is_premium = update.is_premium
    if update.alert_radius_meters is not None:
        cap = (settings.PREMIUM_MAX_ALERT_RADIUS_METERS if profile.is_premium
               else settings.FREE_MAX_ALERT_RADIUS_METERS)
        if update.alert_radius_meters > cap:
            raise ValidationError(f"alert_radius_meters must be at most {cap}")
        profile.alert_radius_meters = update.alert_radius_meters
    if update.notification_config is not None:
        profile.notification_config = update.notification_config
    profile.updated_at = utcnow()

    db.commit()
    db.refresh(profile)
    return AlertProfile.model_validate(profile)


# === TRAVEL ENDPOINTS ===

@app.post("/api/travel/route-safety", response_model=RouteSafetyReport)
def route_safety(route: RouteRequest, db: Session = Depends(get_db)):
    return route_scorer.analyze_route(db, route.origin, route.destination, route.radius_meters)


@app.post("/api/travel/alternatives", response_model=RouteAlternatives)
def route_alternatives(route: RouteRequest, db: Session = Depends(get_db)):
    return route_scorer.suggest_alternatives(db, route.origin, route.destination, route.radius_meters)


# === HEALTH ===

@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint for monitoring"""
    try:
        db.execute(text("SELECT 1")).first()
        db_ok = True
    except SQLAlchemyError:
        db_ok = False

    return {"status": "ok", "db_ok": db_ok}
