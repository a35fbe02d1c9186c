from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import Session

from plansync.core.database import Base
from plansync.core.timeutil import from_unix, utcnow


class ProcessedStripeEvent(Base):
    """Stripe events whose effect has been committed.

    The unique ``event_id`` is what makes ingestion idempotent: the row is
    inserted in the same transaction as the effect, and a concurrent
    delivery of the same event fails on the constraint.
    """
    __tablename__ = "processed_stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_created_at = Column(DateTime, nullable=True, comment="Stripe's created timestamp (UTC)")
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    @classmethod
    def exists(cls, db: Session, event_id: str) -> bool:
        return db.query(cls.id).filter(cls.event_id == event_id).first() is not None

    @classmethod
    def record(cls, db: Session, event_id: str, event_type: str, created: int) -> "ProcessedStripeEvent":
        """Stage the record and flush, so a duplicate raises IntegrityError here"""
        row = cls(event_id=event_id, event_type=event_type, event_created_at=from_unix(created))
        db.add(row)
        db.flush()
        return row
