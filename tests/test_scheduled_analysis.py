import json
from datetime import date, timedelta

import pytest

from guest_analysis import is_analysis_fresh
from models import GuestAnalysis, ReservationInfo, SystemLog

CHECKOUT_DAY = date(2024, 6, 1)


def _add_reservation(db, res_id, departure=CHECKOUT_DAY, status="accepted"):
    db.add(ReservationInfo(
        id=res_id,
        guest_name=f"Guest {res_id}",
        phone=None,
        listing_name="Lakeview Cabin",
        departure_date=departure,
        status=status
    ))
    db.commit()


def _add_analysis(db, res_id, analyzed_at):
    db.add(GuestAnalysis(
        id=f"analysis-{res_id}",
        reservation_id=res_id,
        summary="Earlier run",
        sentiment="Neutral",
        sentiment_reason="",
        flags=[],
        analyzed_at=analyzed_at,
        analyzed_by="manual",
        communication_ids=[]
    ))
    db.commit()


@pytest.mark.asyncio
async def test_recently_analyzed_reservation_is_skipped(db, clock, analysis_service):
    for res_id in (1, 2, 3):
        _add_reservation(db, res_id)
    _add_analysis(db, 2, clock.now - timedelta(hours=2))

    result = await analysis_service.process_scheduled_analysis(db, day=CHECKOUT_DAY)

    assert result == {"processed": 2, "failed": 0, "skipped": 1}
    analyses = {a.reservation_id: a for a in db.query(GuestAnalysis).all()}
    assert analyses[1].analyzed_by == "scheduled"
    assert analyses[3].analyzed_by == "scheduled"
    assert analyses[2].summary == "Earlier run"


@pytest.mark.asyncio
async def test_stale_analysis_is_regenerated(db, clock, analysis_service):
    _add_reservation(db, 1)
    _add_analysis(db, 1, clock.now - timedelta(hours=25))

    result = await analysis_service.process_scheduled_analysis(db, day=CHECKOUT_DAY)

    assert result == {"processed": 1, "failed": 0, "skipped": 0}
    assert db.query(GuestAnalysis).one().analyzed_by == "scheduled"


@pytest.mark.asyncio
async def test_only_todays_valid_checkouts_are_processed(db, analysis_service):
    _add_reservation(db, 1)
    _add_reservation(db, 2, departure=CHECKOUT_DAY + timedelta(days=1))
    _add_reservation(db, 3, status="cancelled")

    result = await analysis_service.process_scheduled_analysis(db, day=CHECKOUT_DAY)

    assert result == {"processed": 1, "failed": 0, "skipped": 0}
    assert [a.reservation_id for a in db.query(GuestAnalysis).all()] == [1]


@pytest.mark.asyncio
async def test_failures_are_counted_and_batch_continues(db, openai_client, analysis_service):
    for res_id in (1, 2):
        _add_reservation(db, res_id)
    openai_client.completions.content = "not json"

    result = await analysis_service.process_scheduled_analysis(db, day=CHECKOUT_DAY)

    assert result == {"processed": 0, "failed": 2, "skipped": 0}
    assert len(openai_client.completions.calls) == 2

    summary = db.query(SystemLog).filter_by(event_type="scheduled_analysis_complete").one()
    assert json.loads(summary.payload) == result


@pytest.mark.asyncio
async def test_no_checkouts(db, analysis_service):
    result = await analysis_service.process_scheduled_analysis(db, day=CHECKOUT_DAY)

    assert result == {"processed": 0, "failed": 0, "skipped": 0}


def test_is_analysis_fresh(clock):
    window = timedelta(hours=24)
    recent = GuestAnalysis(analyzed_at=clock.now - timedelta(hours=23, minutes=59))
    stale = GuestAnalysis(analyzed_at=clock.now - timedelta(hours=24))

    assert is_analysis_fresh(recent, clock.now, window) is True
    assert is_analysis_fresh(stale, clock.now, window) is False
    assert is_analysis_fresh(None, clock.now, window) is False


@pytest.mark.asyncio
async def test_scheduled_job_opens_its_own_session(session_factory, analysis_service, monkeypatch):
    import main
    monkeypatch.setattr(main, "SessionLocal", session_factory)

    await main.run_scheduled_guest_analysis(analysis_service)

    db = session_factory()
    try:
        row = db.query(SystemLog).filter_by(event_type="scheduled_analysis_complete").one()
        assert json.loads(row.payload) == {"processed": 0, "failed": 0, "skipped": 0}
    finally:
        db.close()
