"""
Celery tasks for the scheduled zone and incident maintenance.
"""
import logging
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError

from .celery_app import celery_app
from ..core.errors import ClusteringCycleSkipped, SpatialStoreUnavailable
from ..core.incidents import IncidentStore
from ..core.zones import ZoneLifecycleManager
from ..db import SessionLocal

logger = logging.getLogger(__name__)


def get_db_session():
    """Get database session for tasks"""
    return SessionLocal()


@celery_app.task(name="hotspot.worker.tasks.run_clustering_cycle")
def run_clustering_cycle() -> Dict[str, Any]:
    """Re-derive hotspot zones from the last 7 days of incidents."""
    try:
        stats = ZoneLifecycleManager(session_factory=get_db_session).run_clustering_cycle()
    except ClusteringCycleSkipped as e:
        logger.info(f"Clustering tick skipped: {e}")
        return {"skipped": True}
    except SpatialStoreUnavailable as e:
        logger.error(f"Clustering cycle failed: {e}")
        return {"skipped": False, "error": str(e)}
    return {"skipped": False, **stats.model_dump()}


@celery_app.task(name="hotspot.worker.tasks.sweep_expired_incidents")
def sweep_expired_incidents() -> Dict[str, Any]:
    """Delete expired incidents that never received a vote."""
    db = get_db_session()
    try:
        deleted = IncidentStore(db).sweep_expired()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Expiry sweep failed: {e}")
        return {"deleted": 0, "error": str(e)}
    finally:
        db.close()
    return {"deleted": deleted}
