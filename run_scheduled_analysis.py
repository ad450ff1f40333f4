"""
Run guest analysis from the command line.

Without arguments this runs the daily checkout batch once (for cron or manual runs).
Run with: python3 run_scheduled_analysis.py [--reservation-id 123 [--inbox-id 456]]
"""

import argparse
import asyncio
import json

from logger_config import configure_logger
from main import build_services
from models import init_db, SessionLocal


async def run(reservation_id=None, inbox_id=None) -> dict:
    _, analysis_service = build_services()

    db = SessionLocal()
    try:
        if reservation_id is None:
            return await analysis_service.process_scheduled_analysis(db)

        analysis = await analysis_service.analyze_guest_communication(
            db, reservation_id, inbox_id, analyzed_by="manual"
        )
        return {
            "reservation_id": analysis.reservation_id,
            "sentiment": analysis.sentiment,
            "sentiment_reason": analysis.sentiment_reason,
            "flags": analysis.flags,
            "summary": analysis.summary,
            "communications": len(analysis.communication_ids or [])
        }
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Run guest communication analysis")
    parser.add_argument("--reservation-id", type=int, help="Analyze a single reservation instead of today's checkouts")
    parser.add_argument("--inbox-id", help="Hostify inbox id (looked up from the reservation if omitted)")
    args = parser.parse_args()

    if args.inbox_id and args.reservation_id is None:
        parser.error("--inbox-id requires --reservation-id")

    configure_logger()
    init_db()

    result = asyncio.run(run(args.reservation_id, args.inbox_id))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
