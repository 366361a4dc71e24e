"""
Incident Store.

Reports, community verification votes and the expiry sweep. Vote counting
is a single-row read-modify-write: the incident row is locked, the counter
is incremented in SQL and the auto-verification rule is applied in the same
transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .alerts import ProximityAlertDispatcher, get_dispatcher
from .config import settings
from .errors import DuplicateVote, NotFound, SelfVote, ValidationError
from .spatial_store import SpatialStore
from ..models.orm import IncidentORM, VerificationORM, utcnow
from ..models.schemas import IncidentType, Location

logger = logging.getLogger(__name__)

VALID_TYPES = {t.value for t in IncidentType}


class IncidentStore:
    def __init__(self, db: Session, dispatcher: Optional[ProximityAlertDispatcher] = None):
        self.db = db
        self.store = SpatialStore(db)
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> ProximityAlertDispatcher:
        return self._dispatcher or get_dispatcher()

    def report(self, type: str, location: Optional[Location], reporter_id: str,
               description: Optional[str] = None, expires_at: Optional[datetime] = None,
               created_at: Optional[datetime] = None,
               idempotency_key: Optional[str] = None) -> IncidentORM:
        """Persist a new incident and hand it to the dispatcher.

        A repeated (reporter_id, idempotency_key) returns the stored incident
        and triggers no second fan-out.
        """
        incident_type = type.value if isinstance(type, IncidentType) else type
        if incident_type not in VALID_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(sorted(VALID_TYPES))}")
        if location is None or location.lat is None or location.lon is None:
            raise ValidationError("location is required")
        if not reporter_id:
            raise ValidationError("reporter_id is required")
        if description and len(description) > settings.INCIDENT_DESCRIPTION_MAX_LENGTH:
            raise ValidationError(
                f"description must be at most {settings.INCIDENT_DESCRIPTION_MAX_LENGTH} characters"
            )

        if idempotency_key:
            existing = self._find_by_idempotency_key(reporter_id, idempotency_key)
            if existing is not None:
                logger.info("Incident %s replayed for key %s", existing.id, idempotency_key)
                return existing

        created_at = created_at or utcnow()
        incident = IncidentORM(
            type=incident_type,
            lat=location.lat,
            lon=location.lon,
            description=description,
            reporter_id=reporter_id,
            verification_count=0,
            is_verified=False,
            created_at=created_at,
            expires_at=expires_at or created_at + timedelta(hours=settings.INCIDENT_TTL_HOURS),
            idempotency_key=idempotency_key or None,
        )
        try:
            self.store.insert(incident)
            self.db.commit()
        except IntegrityError:
            # the same retried report was stored by a concurrent request
            self.db.rollback()
            existing = self._find_by_idempotency_key(reporter_id, idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return existing
        self.db.refresh(incident)
        logger.info("Incident %s reported: %s at (%.5f, %.5f)",
                    incident.id, incident.type, incident.lat, incident.lon)

        self.dispatcher.incident_created(incident)
        return incident

    def _find_by_idempotency_key(self, reporter_id: str, key: str) -> Optional[IncidentORM]:
        return (
            self.db.query(IncidentORM)
            .filter(IncidentORM.reporter_id == reporter_id, IncidentORM.idempotency_key == key)
            .first()
        )

    def get(self, incident_id: str) -> IncidentORM:
        incident = self.db.query(IncidentORM).filter(IncidentORM.id == incident_id).first()
        if incident is None:
            raise NotFound(f"Incident {incident_id} not found")
        return incident

    def vote(self, incident_id: str, voter_id: str) -> VerificationORM:
        """Record one community verification vote."""
        now = utcnow()
        try:
            incident = (
                self.db.query(IncidentORM)
                .filter(IncidentORM.id == incident_id)
                .with_for_update()
                .first()
            )
            if incident is None:
                raise NotFound(f"Incident {incident_id} not found")
            if incident.reporter_id == voter_id:
                raise SelfVote("You cannot verify your own incident")

            verification = VerificationORM(incident_id=incident_id, voter_id=voter_id, created_at=now)
            self.db.add(verification)
            self.db.flush()

            self.db.execute(
                update(IncidentORM)
                .where(IncidentORM.id == incident_id)
                .values(verification_count=IncidentORM.verification_count + 1)
            )
            verify_window_start = now - timedelta(hours=settings.AUTO_VERIFY_WINDOW_HOURS)
            self.db.execute(
                update(IncidentORM)
                .where(
                    IncidentORM.id == incident_id,
                    IncidentORM.verification_count >= settings.AUTO_VERIFY_THRESHOLD,
                    IncidentORM.created_at >= verify_window_start,
                    IncidentORM.is_verified.is_(False),
                )
                .values(is_verified=True)
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise DuplicateVote("You have already verified this incident")
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(incident)
        self.db.refresh(verification)
        logger.info("Incident %s verified by %s (count=%d, verified=%s)",
                    incident_id, voter_id, incident.verification_count, incident.is_verified)
        return verification

    def list_verifications(self, incident_id: str) -> List[VerificationORM]:
        self.get(incident_id)
        return (
            self.db.query(VerificationORM)
            .filter(VerificationORM.incident_id == incident_id)
            .order_by(VerificationORM.created_at)
            .all()
        )

    def list_nearby(self, location: Location, radius_meters: Optional[float] = None,
                    incident_type: Optional[str] = None) -> List[Tuple[IncidentORM, float]]:
        """Non-expired incidents near a point, nearest first."""
        if incident_type and incident_type not in VALID_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(sorted(VALID_TYPES))}")
        return self.store.query_within_radius(
            location,
            radius_meters or settings.NEARBY_DEFAULT_RADIUS_METERS,
            incident_type=incident_type,
        )

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired incidents nobody voted on. Voted-on incidents stay as history."""
        now = now or utcnow()
        deleted = (
            self.db.query(IncidentORM)
            .filter(IncidentORM.expires_at <= now, IncidentORM.verification_count == 0)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        if deleted:
            logger.info("Deleted %d expired incidents", deleted)
        else:
            logger.info("No expired incidents to delete")
        return deleted
