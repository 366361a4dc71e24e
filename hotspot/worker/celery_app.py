"""
Celery worker and beat schedule for the periodic hotspot jobs.

    celery -A hotspot.worker.celery_app worker --beat
"""
from celery import Celery, signals

from ..core.config import settings
from ..core.logging_config import configure_logging

celery_app = Celery(
    "hotspot_worker",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["hotspot.worker.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    # a late tick is dropped, never queued behind a running cycle
    task_acks_late=False,

    beat_schedule={
        "run-clustering-cycle": {
            "task": "hotspot.worker.tasks.run_clustering_cycle",
            "schedule": settings.CLUSTERING_INTERVAL_SECONDS,  # every 10 minutes
            "options": {"expires": settings.CLUSTERING_INTERVAL_SECONDS},
        },
        "sweep-expired-incidents": {
            "task": "hotspot.worker.tasks.sweep_expired_incidents",
            "schedule": settings.EXPIRY_SWEEP_INTERVAL_SECONDS,  # hourly
        },
    },
)


@signals.setup_logging.connect
def setup_logging(**kwargs):
    configure_logging()


if __name__ == "__main__":
    celery_app.start()
