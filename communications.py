"""
Guest communication aggregation.

Pulls SMS and calls from OpenPhone and inbox messages from Hostify for a
reservation, stores each upstream event once (keyed by source + external id)
and renders the stored history as a chronological text timeline for the
analysis prompt.

Upstream failures never propagate out of this module: a failed phone number,
call lookup or thread fetch is logged and whatever was collected is returned.
"""

import uuid
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from hostify import HostifyClient
from models import (
    GuestCommunication, ReservationInfo, CommunicationSource, CommunicationDirection
)
from openphone import OpenPhoneClient
from repositories import GuestCommunicationRepository, ReservationRepository
from utils import normalize_phone, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)

NO_COMMUNICATIONS_TEXT = "No communications found for this reservation."
REPRESENTATIVE_NAME = "Representative"
DEFAULT_GUEST_NAME = "Guest"

SOURCE_LABELS = {
    CommunicationSource.openphone_sms.value: "SMS",
    CommunicationSource.openphone_call.value: "CALL",
    CommunicationSource.hostify_message.value: "MSG",
}

# Hostify returns either camelCase or snake_case keys; first match wins
HOSTIFY_MESSAGE_FIELDS = {
    "id": ("id", "message_id"),
    "content": ("message", "text"),
    "created_at": ("createdAt", "created_at", "timestamp"),
    "sender_type": ("senderType", "sender_type"),
    "sender": ("sender", "sender_name"),
    "channel": ("channel", "provider"),
}
HOSTIFY_THREAD_FIELDS = {
    "guest_name": ("guestName", "guest_name"),
    "guest_phone": ("guestPhone", "guest_phone"),
}


def first_present(payload: Dict[str, Any], keys: Sequence[str]) -> Any:
    """Return the value of the first key that is present and not None/empty."""
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def normalize_fields(payload: Dict[str, Any], fields: Dict[str, Sequence[str]]) -> Dict[str, Any]:
    return {name: first_present(payload, keys) for name, keys in fields.items()}


def normalize_hostify_message(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw Hostify inbox message onto a single set of field names."""
    message = normalize_fields(raw, HOSTIFY_MESSAGE_FIELDS)
    if message["content"] is None:
        message["content"] = ""
    return message


def direction_from_openphone(tag: Optional[str]) -> str:
    if tag == "incoming":
        return CommunicationDirection.inbound.value
    return CommunicationDirection.outbound.value


def format_source(source: str) -> str:
    return SOURCE_LABELS.get(source, (source or "").upper())


def summary_text(summary: Dict[str, Any]) -> str:
    """OpenPhone returns call summaries either as a string or as a list of points."""
    value = (summary or {}).get("summary")
    if isinstance(value, list):
        return "\n".join(str(point) for point in value if point)
    return value or ""


class GuestCommunicationService:
    """Aggregates and stores communication data from OpenPhone and Hostify."""

    def __init__(self, openphone: OpenPhoneClient, hostify: HostifyClient):
        self.openphone = openphone
        self.hostify = hostify

    # ============ OPENPHONE ============

    async def fetch_and_store_from_openphone(
        self,
        db: Session,
        reservation_id: int
    ) -> List[GuestCommunication]:
        """
        Fetch and store SMS and calls from OpenPhone for a reservation.

        The guest is matched by the phone number on the reservation. OpenPhone
        only filters by one of our phone numbers at a time, so every number on
        the account is queried separately.
        """
        reservation = ReservationRepository(db).find_by_id(reservation_id)
        if not reservation or not reservation.phone:
            logger.warning("openphone_skipped_no_phone", reservation_id=reservation_id)
            return []

        if not self.openphone.is_configured():
            logger.warning("openphone_not_configured", reservation_id=reservation_id)
            return []

        guest_phone = normalize_phone(reservation.phone)
        repo = GuestCommunicationRepository(db)
        stored: List[GuestCommunication] = []

        try:
            phone_numbers = await self.openphone.list_phone_numbers()
        except Exception as e:
            logger.error("openphone_phone_numbers_failed", reservation_id=reservation_id, error=str(e))
            return stored

        phone_number_ids = [p.get("id") for p in phone_numbers if p.get("id")]
        if not phone_number_ids:
            logger.warning("openphone_no_phone_numbers", reservation_id=reservation_id)
            return stored

        for pn_id in phone_number_ids:
            try:
                messages = await self.openphone.list_messages(
                    participants=[guest_phone],
                    phone_number_id=pn_id
                )
                for msg in messages:
                    comm = self._store_openphone_message(repo, reservation, msg, pn_id)
                    if comm:
                        stored.append(comm)
            except Exception as e:
                # One phone number failing must not lose the others
                logger.error(
                    "openphone_messages_failed",
                    reservation_id=reservation_id, phone_number_id=pn_id, error=str(e)
                )

        for pn_id in phone_number_ids:
            try:
                calls = await self.openphone.list_calls(
                    participants=[guest_phone],
                    phone_number_id=pn_id
                )
                for call in calls:
                    comm = await self._store_openphone_call(repo, reservation, call, pn_id)
                    if comm:
                        stored.append(comm)
            except Exception as e:
                logger.error(
                    "openphone_calls_failed",
                    reservation_id=reservation_id, phone_number_id=pn_id, error=str(e)
                )

        logger.info("openphone_communications_stored", reservation_id=reservation_id, count=len(stored))
        return stored

    def _store_openphone_message(
        self,
        repo: GuestCommunicationRepository,
        reservation: ReservationInfo,
        msg: Dict[str, Any],
        phone_number_id: str
    ) -> Optional[GuestCommunication]:
        external_id = msg.get("id")
        source = CommunicationSource.openphone_sms.value
        if not external_id or repo.exists(source, external_id):
            return None

        direction = direction_from_openphone(msg.get("direction"))
        return self._store_communication(
            repo,
            reservation_id=reservation.id,
            source=source,
            external_id=external_id,
            content=msg.get("text") or "",
            direction=direction,
            sender_name=self._openphone_sender(direction, reservation),
            sender_phone=msg.get("from"),
            communicated_at=parse_timestamp(msg.get("createdAt")) or utcnow(),
            metadata={
                "conversationId": msg.get("conversationId"),
                "phoneNumberId": phone_number_id
            }
        )

    async def _store_openphone_call(
        self,
        repo: GuestCommunicationRepository,
        reservation: ReservationInfo,
        call: Dict[str, Any],
        phone_number_id: str
    ) -> Optional[GuestCommunication]:
        external_id = call.get("id")
        source = CommunicationSource.openphone_call.value
        if not external_id or repo.exists(source, external_id):
            return None

        direction = direction_from_openphone(call.get("direction"))
        content = await self._call_content(call)

        return self._store_communication(
            repo,
            reservation_id=reservation.id,
            source=source,
            external_id=external_id,
            content=content,
            direction=direction,
            sender_name=self._openphone_sender(direction, reservation),
            sender_phone=call.get("from"),
            communicated_at=parse_timestamp(call.get("createdAt")) or utcnow(),
            metadata={
                "duration": call.get("duration"),
                "status": call.get("status"),
                "hasVoicemail": bool(call.get("voicemail")),
                "phoneNumberId": phone_number_id
            }
        )

    async def _call_content(self, call: Dict[str, Any]) -> str:
        """
        Best available text for a call: summary, else transcript, else a stub.

        The transcript is only tried when the summary lookup fails.
        """
        content = f"Call {call.get('direction')} - Duration: {call.get('duration') or 0}s"
        try:
            summary = summary_text(await self.openphone.get_call_summary(call["id"]))
            if summary:
                content = summary
        except Exception as e:
            logger.info("openphone_call_summary_unavailable", call_id=call.get("id"), error=str(e))
            try:
                transcript = await self.openphone.get_call_transcript(call["id"])
                if transcript and transcript.get("text"):
                    content = transcript["text"]
            except Exception as e:
                logger.info("openphone_call_transcript_unavailable", call_id=call.get("id"), error=str(e))
        return content

    @staticmethod
    def _openphone_sender(direction: str, reservation: ReservationInfo) -> Optional[str]:
        if direction == CommunicationDirection.inbound.value:
            return reservation.guest_name
        return REPRESENTATIVE_NAME

    # ============ HOSTIFY ============

    async def fetch_and_store_from_hostify(
        self,
        db: Session,
        reservation_id: int,
        inbox_id: Optional[str] = None
    ) -> List[GuestCommunication]:
        """
        Fetch and store messages from the Hostify inbox thread of a reservation.

        If inbox_id isn't given it is looked up from the Hostify reservation.
        """
        if not self.hostify.is_configured():
            logger.warning("hostify_not_configured", reservation_id=reservation_id)
            return []

        if not inbox_id:
            inbox_id = await self._resolve_inbox_id(reservation_id)
            if not inbox_id:
                return []

        reservation = ReservationRepository(db).find_by_id(reservation_id)
        repo = GuestCommunicationRepository(db)
        stored: List[GuestCommunication] = []

        try:
            thread = await self.hostify.get_inbox_thread(inbox_id)
            messages = (thread or {}).get("messages") or []
            if not messages:
                logger.warning("hostify_thread_empty", reservation_id=reservation_id, inbox_id=inbox_id)
                return stored

            thread_info = normalize_fields(thread, HOSTIFY_THREAD_FIELDS)

            for raw in messages:
                comm = self._store_hostify_message(repo, reservation_id, reservation, thread_info, raw, inbox_id)
                if comm:
                    stored.append(comm)

        except Exception as e:
            logger.error("hostify_fetch_failed", reservation_id=reservation_id, inbox_id=inbox_id, error=str(e))
            return stored

        logger.info("hostify_communications_stored", reservation_id=reservation_id, count=len(stored))
        return stored

    async def _resolve_inbox_id(self, reservation_id: int) -> Optional[str]:
        try:
            info = await self.hostify.get_reservation_info(reservation_id)
        except Exception as e:
            logger.error("hostify_reservation_info_failed", reservation_id=reservation_id, error=str(e))
            return None

        message_id = ((info or {}).get("reservation") or {}).get("message_id")
        if not message_id:
            logger.warning("hostify_inbox_not_found", reservation_id=reservation_id)
            return None

        logger.info("hostify_inbox_resolved", reservation_id=reservation_id, inbox_id=message_id)
        return str(message_id)

    def _store_hostify_message(
        self,
        repo: GuestCommunicationRepository,
        reservation_id: int,
        reservation: Optional[ReservationInfo],
        thread_info: Dict[str, Any],
        raw: Dict[str, Any],
        inbox_id: str
    ) -> Optional[GuestCommunication]:
        msg = normalize_hostify_message(raw)
        if msg["id"] is None:
            return None

        external_id = f"hostify_{msg['id']}"
        source = CommunicationSource.hostify_message.value
        if repo.exists(source, external_id):
            return None

        if msg["sender_type"] == "guest":
            direction = CommunicationDirection.inbound.value
            sender_name = (
                thread_info["guest_name"]
                or (reservation.guest_name if reservation else None)
                or DEFAULT_GUEST_NAME
            )
        else:
            direction = CommunicationDirection.outbound.value
            sender_name = msg["sender"] or REPRESENTATIVE_NAME

        guest_phone = thread_info["guest_phone"]
        return self._store_communication(
            repo,
            reservation_id=reservation_id,
            source=source,
            external_id=external_id,
            content=str(msg["content"]),
            direction=direction,
            sender_name=sender_name,
            sender_phone=str(guest_phone) if guest_phone else None,
            communicated_at=parse_timestamp(msg["created_at"]) or utcnow(),
            metadata={
                "inboxId": inbox_id,
                "channel": msg["channel"],
                "senderType": msg["sender_type"]
            }
        )

    # ============ STORAGE & TIMELINE ============

    @staticmethod
    def _store_communication(repo: GuestCommunicationRepository, **fields) -> Optional[GuestCommunication]:
        metadata = fields.pop("metadata", None) or {}
        communication = GuestCommunication(id=str(uuid.uuid4()), metadata_=metadata, **fields)
        return repo.add(communication)

    def get_all_communications_for_reservation(self, db: Session, reservation_id: int) -> List[GuestCommunication]:
        """Get all communications for a reservation, ordered by when they happened."""
        return GuestCommunicationRepository(db).list_for_reservation(reservation_id)

    def build_communication_timeline(self, db: Session, reservation_id: int) -> str:
        """Build a formatted communication timeline for AI analysis."""
        return render_timeline(self.get_all_communications_for_reservation(db, reservation_id))


def render_timeline(communications: Sequence[GuestCommunication]) -> str:
    if not communications:
        return NO_COMMUNICATIONS_TEXT

    lines = ["## Communication Timeline", ""]
    for comm in communications:
        timestamp = comm.communicated_at.strftime("%Y-%m-%d %H:%M:%S")
        if comm.direction == CommunicationDirection.inbound.value:
            direction_label = "GUEST"
            sender = comm.sender_name or DEFAULT_GUEST_NAME
        else:
            direction_label = "REP"
            sender = comm.sender_name or REPRESENTATIVE_NAME
        lines.append(f"[{timestamp}] [{format_source(comm.source)}] [{direction_label}] {sender}:")
        lines.append(comm.content)
        lines.append("")

    return "\n".join(lines)
