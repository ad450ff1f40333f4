"""
Utility functions for the Guest Analysis service.
"""

import re
import json
from datetime import datetime, date, timezone
from typing import Any, Optional

import pytz
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from models import SessionLocal, SystemLog

logger = structlog.get_logger(__name__)

# Formats Hostify has been seen to use besides ISO-8601
_TIMESTAMP_FORMATS = ["%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d"]


def normalize_phone(phone: str, country_code: Optional[str] = None) -> str:
    """
    Normalize phone number to E.164 format.

    Examples:
        "(555) 123-4567" -> "+15551234567"
        "5551234567" -> "+15551234567"
        "+1-555-123-4567" -> "+15551234567"
    """
    if not phone:
        return ""

    # Remove all non-digit characters
    digits = re.sub(r'\D', '', phone)

    # Add default country code for national numbers
    if len(digits) == 10:
        digits = (country_code or settings.DEFAULT_COUNTRY_CODE) + digits

    return "+" + digits


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream timestamp into a naive UTC datetime.

    Accepts datetimes, epoch seconds/milliseconds and ISO-8601 strings
    (with or without a trailing "Z"). Returns None when the value can't be parsed.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 1e11 else value
        try:
            parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            parsed = None
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text.split(".")[0], fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def business_today() -> date:
    """Today's date in the business timezone."""
    tz = pytz.timezone(settings.TIMEZONE)
    return datetime.now(tz).date()


def log_event(
    event_type: str,
    reservation_id: Optional[int] = None,
    payload: Optional[dict] = None,
    db: Optional[Session] = None
):
    """
    Log an event to the SystemLog table.

    Event types:
        - api_error
        - analysis_generated, analysis_failed
        - scheduled_analysis_complete
    """
    close_db = False
    if db is None:
        db = SessionLocal()
        close_db = True

    try:
        log = SystemLog(
            event_type=event_type,
            reservation_id=reservation_id,
            payload=json.dumps(payload, default=str) if payload else None
        )
        db.add(log)
        db.commit()
    except SQLAlchemyError as e:
        # Audit writes never propagate to the caller
        db.rollback()
        logger.warning("system_log_write_failed", event_type=event_type, error=str(e))
    finally:
        if close_db:
            db.close()
