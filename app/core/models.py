"""
SQLAlchemy models for the observation store.

One envelope table holds every hazard domain. Columns used by queries
(time, station, coordinates, magnitude) are real columns; the remaining
domain attributes live in a JSON column. Derived classifications are
never persisted.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, Float, Enum,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


class RunStatus(str, enum.Enum):
    """Collection run status - ONLY these values allowed."""
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"  # Some stations served from cache or empty
    FAILED = "failed"


class HazardObservation(Base):
    """
    One stored observation.

    (domain, natural_key) is unique: a row is written once and never updated.
    """
    __tablename__ = "hazard_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    natural_key = Column(String(255), nullable=False)
    domain = Column(String(20), nullable=False)
    provider = Column(String(50), nullable=False)

    # Timestamps (naive UTC)
    observed_at = Column(DateTime, nullable=False)
    collected_at = Column(DateTime, nullable=False)

    # Query columns
    station_id = Column(String(50), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    magnitude = Column(Float, nullable=True)

    attributes = Column(JSON, nullable=False, default=dict)
    raw_payload = Column(Text, nullable=False, default="")

    __table_args__ = (
        UniqueConstraint("domain", "natural_key", name="uq_observation_natural_key"),
        Index("ix_observation_domain_observed", "domain", "observed_at"),
        Index("ix_observation_station_observed", "domain", "station_id", "observed_at"),
        Index("ix_observation_coordinates", "domain", "latitude", "longitude"),
    )

    def __repr__(self) -> str:
        return (
            f"<HazardObservation(id={self.id}, domain={self.domain}, "
            f"natural_key={self.natural_key}, observed_at={self.observed_at})>"
        )


class CollectionRun(Base):
    """
    Tracks every collection run (scheduled or manual).

    Data gaps show up here as runs with fallback/empty stations.
    """
    __tablename__ = "collection_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), nullable=False, unique=True)
    domain = Column(String(20), nullable=False, index=True)
    trigger = Column(String(20), nullable=False)  # 'manual' or 'scheduled'
    params = Column(JSON, nullable=True)
    status = Column(
        Enum(RunStatus, native_enum=False, length=20),
        nullable=False,
        default=RunStatus.RUNNING,
        index=True
    )

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Results
    records_fetched = Column(Integer, nullable=True)
    records_new = Column(Integer, nullable=True)
    records_duplicate = Column(Integer, nullable=True)
    events_published = Column(Integer, nullable=True)
    fallback_scopes = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<CollectionRun(run_id={self.run_id}, domain={self.domain}, "
            f"status={self.status}, started_at={self.started_at})>"
        )
