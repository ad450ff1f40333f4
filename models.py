"""
SQLAlchemy database models for the Guest Analysis service.
"""

from enum import Enum as PyEnum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, JSON,
    UniqueConstraint, create_engine
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings

# Create base class for models
Base = declarative_base()

# Create engine and session
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {}
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CommunicationSource(str, PyEnum):
    """Upstream system a communication was pulled from."""
    openphone_sms = "openphone_sms"
    openphone_call = "openphone_call"
    hostify_message = "hostify_message"


class CommunicationDirection(str, PyEnum):
    """Direction of a communication - inbound from guest or outbound from a representative."""
    inbound = "inbound"
    outbound = "outbound"


class Sentiment(str, PyEnum):
    """Standardized guest sentiment labels."""
    positive = "Positive"
    neutral = "Neutral"
    negative = "Negative"
    mixed = "Mixed"


class GuestCommunication(Base):
    """
    One inbound or outbound contact event with a guest.
    Created once on first sight of an upstream event and never updated.
    """
    __tablename__ = "guest_communications"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_guest_communication_source_external_id"),
    )

    id = Column(String(36), primary_key=True)
    reservation_id = Column(Integer, index=True, nullable=False)

    source = Column(String(50), nullable=False)
    external_id = Column(String(255), nullable=False)  # ID from source system

    content = Column(Text, nullable=False, default="")  # Message body, call summary, or transcript
    direction = Column(String(20), nullable=False)
    sender_name = Column(String(100), nullable=True)
    sender_phone = Column(String(50), nullable=True)

    communicated_at = Column(DateTime, index=True, nullable=False)  # When it happened, not when stored
    metadata_ = Column("metadata", JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self):
        return f"<GuestCommunication {self.source}:{self.external_id} res={self.reservation_id}>"


class GuestAnalysis(Base):
    """
    AI-generated analysis of all communications for a reservation.
    At most one row per reservation; regenerating overwrites it in place.
    """
    __tablename__ = "guest_analysis"

    id = Column(String(36), primary_key=True)
    reservation_id = Column(Integer, unique=True, index=True, nullable=False)

    summary = Column(Text, nullable=False, default="")
    sentiment = Column(String(20), nullable=False, default=Sentiment.neutral.value)
    sentiment_reason = Column(Text, nullable=False, default="")
    flags = Column(JSON, nullable=False, default=list)  # [{flag, explanation}]

    analyzed_at = Column(DateTime, nullable=False)
    analyzed_by = Column(String(50), nullable=True)  # "manual", "scheduled"
    communication_ids = Column(JSON, nullable=True, default=list)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<GuestAnalysis res={self.reservation_id} sentiment={self.sentiment}>"


class ReservationInfo(Base):
    """
    Reservation record maintained by the reservation system.
    Read-only from the point of view of this service.
    """
    __tablename__ = "reservation_info"

    id = Column(Integer, primary_key=True)
    guest_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    listing_name = Column(String(255), nullable=True)
    arrival_date = Column(Date, nullable=True)
    departure_date = Column(Date, index=True, nullable=True)
    channel_name = Column(String(50), nullable=True)  # Airbnb, VRBO, Direct, etc.
    status = Column(String(30), nullable=True)

    def __repr__(self):
        return f"<ReservationInfo {self.id} - {self.guest_name}>"


class SystemLog(Base):
    """
    System event log for auditing and debugging.
    Tracks upstream API errors and analysis runs.
    """
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=_utcnow, index=True)
    event_type = Column(String(50), index=True)
    reservation_id = Column(Integer, nullable=True)
    payload = Column(Text)  # JSON string

    def __repr__(self):
        return f"<SystemLog {self.id} - {self.event_type}>"


# Event types for SystemLog:
# api_error, analysis_generated, analysis_failed, scheduled_analysis_complete


def init_db():
    """Initialize the database, creating all tables."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """Get a database session. Use as a context manager or dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
