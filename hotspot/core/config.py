from typing import Optional
from pydantic_settings import BaseSettings
import os


class Settings(BaseSettings):
    PROJECT_NAME: str = "Hotspot Zones API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api"

    # Paths
    DATABASE_URL: str = f"sqlite:///{os.path.join(os.getcwd(), 'data', 'hotspot.db')}"

    # CORS settings
    BACKEND_CORS_ORIGINS: list = ["*"]

    LOG_LEVEL: str = "INFO"

    # Incidents
    INCIDENT_TTL_HOURS: int = 48
    INCIDENT_DESCRIPTION_MAX_LENGTH: int = 280
    AUTO_VERIFY_THRESHOLD: int = 3
    AUTO_VERIFY_WINDOW_HOURS: int = 2
    NEARBY_DEFAULT_RADIUS_METERS: int = 5000

    # Clustering / zone lifecycle
    CLUSTER_WINDOW_DAYS: int = 7
    CLUSTER_EPS_METERS: float = 1100.0
    CLUSTER_MIN_POINTS: int = 5
    ZONE_MATCH_DISTANCE_METERS: float = 500.0
    ZONE_DEFAULT_RADIUS_METERS: int = 1000
    ZONE_DISSOLVE_THRESHOLD: int = 3

    # Geofencing
    APPROACH_BUFFER_METERS: float = 500.0
    APPROACH_ALERT_COOLDOWN_MINUTES: int = 15

    # Alert radius (meters)
    DEFAULT_ALERT_RADIUS_METERS: int = 2000
    FREE_MAX_ALERT_RADIUS_METERS: int = 2000
    PREMIUM_MAX_ALERT_RADIUS_METERS: int = 10000

    # Route safety
    ROUTE_DEFAULT_RADIUS_METERS: int = 1000
    ROUTE_INCIDENT_WINDOW_HOURS: int = 48
    ROUTE_SEGMENTS: int = 5

    # Push delivery
    PUSH_PROVIDER: str = "logging"  # "logging" or "fcm"
    FCM_SERVER_KEY: Optional[str] = None
    FCM_SEND_URL: str = "https://fcm.googleapis.com/fcm/send"
    PUSH_TIMEOUT_SECONDS: float = 5.0
    PUSH_MAX_WORKERS: int = 8
    PUSH_MAX_PENDING: int = 1000  # queued jobs beyond this are dropped

    # Realtime feed: "redis" (shared Redis streams) or "memory" (single process)
    BROADCAST_BACKEND: str = "redis"
    BROADCAST_STREAM_MAXLEN: int = 10000

    # Scheduling
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"
    CLUSTERING_INTERVAL_SECONDS: float = 600.0
    EXPIRY_SWEEP_INTERVAL_SECONDS: float = 3600.0

    # Cycle locking: "local" (per process) or "redis" (across instances)
    CLUSTERING_LOCK_BACKEND: str = "local"
    REDIS_URL: str = "redis://localhost:6379/2"
    CLUSTERING_LOCK_TIMEOUT_SECONDS: int = 900

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
