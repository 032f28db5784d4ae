"""
Database models and session management for the Provider Acceptance Verification API.

Uses SQLAlchemy with SQLite for the standalone service.
Can be configured for PostgreSQL in production, where row locks taken with
``SELECT ... FOR UPDATE`` serialize concurrent writes to the same pair.
"""

import sqlite3
from datetime import datetime, UTC
from typing import Optional, List

from sqlalchemy import (
    Integer, String, Float, Text, DateTime, Boolean, ForeignKey, Index,
    UniqueConstraint, create_engine, event, JSON
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import (
    DeclarativeBase, relationship, sessionmaker, Mapped, mapped_column
)

from acceptance_api.config import get_settings
from acceptance_api.models import AcceptanceStatus, DataSource


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(UTC).replace(tzinfo=None)


# =============================================================================
# Database Setup
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # Vote rows rely on ON DELETE CASCADE when observations expire
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def get_engine(database_url: Optional[str] = None):
    """Create database engine."""
    settings = get_settings()
    url = database_url or settings.database_url
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {},
        echo=settings.debug
    )


engine = get_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


# =============================================================================
# Reference Data (read-only to this service)
# =============================================================================


class Provider(Base):
    """Provider reference row, maintained by the import pipeline."""

    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(10), primary_key=True)
    primary_specialty: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    taxonomy_description: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class InsurancePlan(Base):
    """Insurance plan reference row, maintained by the import pipeline."""

    __tablename__ = "insurance_plans"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    plan_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


# =============================================================================
# Verification Ledger
# =============================================================================


class AcceptanceRecord(Base):
    """
    Aggregated acceptance state for one provider/plan pair.

    Exactly one row per pair. Created lazily on the first observation or
    pre-seeded from authoritative data; rescored by the ledger on every
    submission/vote and by the decay job as time passes.
    """

    __tablename__ = "provider_plan_acceptance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    provider_id: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=AcceptanceStatus.UNKNOWN.value,
        nullable=False
    )
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    data_source: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    last_verified: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    verification_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    observations: Mapped[List["Observation"]] = relationship(
        "Observation", back_populates="acceptance"
    )

    __table_args__ = (
        UniqueConstraint("provider_id", "plan_id", name="uq_acceptance_pair"),
        Index("ix_acceptance_verification_count", "verification_count", "id"),
    )


class Observation(Base):
    """
    One crowd-submitted claim about whether a provider accepts a plan.

    At most one non-expired observation per (provider, plan, fingerprint)
    inside the duplicate window.
    """

    __tablename__ = "observations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    provider_id: Mapped[str] = mapped_column(String(10), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    acceptance_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("provider_plan_acceptance.id", ondelete="SET NULL"), nullable=True
    )

    # The claim
    accepts_insurance: Mapped[bool] = mapped_column(Boolean, nullable=False)
    accepts_new_patients: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    data_source: Mapped[str] = mapped_column(
        String(40), default=DataSource.CROWD_REPORTED.value, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    evidence_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    previous_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Submitter fingerprint (never returned by the API)
    source_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    submitter_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    is_approved: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # Vote counts (denormalized, mutated only by SQL-side arithmetic)
    upvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    downvotes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    acceptance: Mapped[Optional["AcceptanceRecord"]] = relationship(
        "AcceptanceRecord", back_populates="observations"
    )
    votes: Mapped[List["Vote"]] = relationship(
        "Vote", back_populates="observation", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("ix_observations_pair_created", "provider_id", "plan_id", "created_at"),
        Index("ix_observations_pair_ip", "provider_id", "plan_id", "source_ip"),
        Index("ix_observations_pair_email", "provider_id", "plan_id", "submitter_email"),
    )


class Vote(Base):
    """One fingerprint's opinion on one observation."""

    __tablename__ = "votes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    observation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("observations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    source_ip: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(4), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    observation: Mapped["Observation"] = relationship("Observation", back_populates="votes")

    __table_args__ = (
        # Each fingerprint can only hold one vote per observation
        UniqueConstraint("observation_id", "source_ip", name="uq_vote_observation_ip"),
    )


class DecayRun(Base):
    """
    Log of confidence decay recalculation runs.

    Tracks when recalculation was performed and results for monitoring.
    """

    __tablename__ = "decay_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    trigger: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)

    # Results
    processed: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    unchanged: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[int] = mapped_column(Integer, default=0)

    # Performance
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
