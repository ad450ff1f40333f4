"""
Repositories for guest communications, analyses and reservation lookups.
"""

from datetime import date
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import GuestCommunication, GuestAnalysis, ReservationInfo

# Reservation statuses that count as a real stay
VALID_RESERVATION_STATUSES = ["new", "accepted", "modified", "ownerStay", "moved"]


class GuestCommunicationRepository:
    def __init__(self, db: Session):
        self.db = db

    def exists(self, source: str, external_id: str) -> bool:
        """Check if a communication with this dedup key is already stored."""
        return self.get_by_external_id(source, external_id) is not None

    def get_by_external_id(self, source: str, external_id: str) -> Optional[GuestCommunication]:
        return self.db.query(GuestCommunication).filter(
            GuestCommunication.source == source,
            GuestCommunication.external_id == external_id
        ).first()

    def add(self, communication: GuestCommunication) -> Optional[GuestCommunication]:
        """
        Insert a communication.

        Returns None if another writer stored the same (source, external_id)
        first; the unique constraint is the final arbiter of the dedup key.
        """
        self.db.add(communication)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return None
        self.db.refresh(communication)
        return communication

    def list_for_reservation(self, reservation_id: int) -> List[GuestCommunication]:
        """All communications for a reservation, oldest event first."""
        return self.db.query(GuestCommunication).filter(
            GuestCommunication.reservation_id == reservation_id
        ).order_by(
            GuestCommunication.communicated_at.asc(),
            GuestCommunication.created_at.asc()
        ).all()

    def list_ids_for_reservation(self, reservation_id: int) -> List[str]:
        return [c.id for c in self.list_for_reservation(reservation_id)]


class GuestAnalysisRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_reservation(self, reservation_id: int) -> Optional[GuestAnalysis]:
        return self.db.query(GuestAnalysis).filter(
            GuestAnalysis.reservation_id == reservation_id
        ).first()

    def list_by_reservations(self, reservation_ids: List[int]) -> List[GuestAnalysis]:
        if not reservation_ids:
            return []
        return self.db.query(GuestAnalysis).filter(
            GuestAnalysis.reservation_id.in_(reservation_ids)
        ).all()

    def save(self, analysis: GuestAnalysis) -> GuestAnalysis:
        self.db.add(analysis)
        self.db.commit()
        self.db.refresh(analysis)
        return analysis


class ReservationRepository:
    """Read-only access to reservations owned by the reservation system."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, reservation_id: int) -> Optional[ReservationInfo]:
        return self.db.query(ReservationInfo).filter(
            ReservationInfo.id == reservation_id
        ).first()

    def get_checkout_reservations(self, day: date) -> List[ReservationInfo]:
        """Reservations departing on the given day, earliest id first."""
        return self.db.query(ReservationInfo).filter(
            ReservationInfo.departure_date == day,
            ReservationInfo.status.in_(VALID_RESERVATION_STATUSES)
        ).order_by(ReservationInfo.id.asc()).all()
