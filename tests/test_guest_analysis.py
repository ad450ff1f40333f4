import json
from datetime import timedelta

import pytest

from guest_analysis import (
    FLAG_TYPES, AnalysisGenerationError, build_system_prompt, build_user_prompt,
    parse_analysis_response
)
from models import GuestAnalysis, SystemLog


def _events(db, event_type):
    return db.query(SystemLog).filter_by(event_type=event_type).all()


@pytest.mark.asyncio
async def test_analysis_is_generated_and_stored(db, reservation, openphone, openai_client, clock, analysis_service):
    openphone.messages["PN1"] = [{"id": "m1", "direction": "incoming", "text": "Hi",
                                  "createdAt": "2024-01-01T10:00:00Z"}]

    analysis = await analysis_service.analyze_guest_communication(db, 101)

    assert analysis.reservation_id == 101
    assert analysis.summary == "Guest asked about check-in."
    assert analysis.sentiment == "Positive"
    assert analysis.sentiment_reason == "Friendly exchange."
    assert analysis.flags == []
    assert analysis.analyzed_at == clock.now
    assert analysis.analyzed_by == "manual"
    assert len(analysis.communication_ids) == 1

    request = openai_client.completions.calls[0]
    assert request["model"] == "test-model"
    assert request["temperature"] == 0.3
    assert request["response_format"] == {"type": "json_object"}
    assert "[SMS] [GUEST] Jane Doe:" in request["messages"][1]["content"]

    event = _events(db, "analysis_generated")[0]
    assert event.reservation_id == 101
    assert json.loads(event.payload)["communications"] == 1


@pytest.mark.asyncio
async def test_out_of_contract_values_are_repaired(db, reservation, openai_client, analysis_service):
    openai_client.completions.content = json.dumps({
        "summary": "Guest was upset about noise.",
        "sentiment": "Furious",
        "sentimentReason": "Complaint.",
        "flags": "none"
    })

    analysis = await analysis_service.analyze_guest_communication(db, 101)

    assert analysis.sentiment == "Neutral"
    assert analysis.flags == []


@pytest.mark.asyncio
async def test_regenerate_overwrites_single_row(db, reservation, openai_client, clock, analysis_service):
    first = await analysis_service.analyze_guest_communication(db, 101)

    clock.now = clock.now + timedelta(hours=3)
    openai_client.completions.content = json.dumps({
        "summary": "Guest reported a broken heater.",
        "sentiment": "Negative",
        "sentimentReason": "Unresolved issue.",
        "flags": [{"flag": "Escalation Needed", "explanation": "Heater still broken"}]
    })
    second = await analysis_service.regenerate_analysis(db, 101)

    assert db.query(GuestAnalysis).filter_by(reservation_id=101).count() == 1
    assert second.id == first.id
    assert second.sentiment == "Negative"
    assert second.flags == [{"flag": "Escalation Needed", "explanation": "Heater still broken"}]
    assert second.analyzed_at == clock.now


@pytest.mark.asyncio
async def test_unparseable_response_fails_without_storing(db, reservation, openai_client, analysis_service):
    openai_client.completions.content = "Sorry, I can't help with that."

    with pytest.raises(AnalysisGenerationError):
        await analysis_service.analyze_guest_communication(db, 101)

    assert db.query(GuestAnalysis).count() == 0
    assert len(_events(db, "analysis_failed")) == 1


@pytest.mark.asyncio
async def test_completion_error_propagates(db, reservation, openai_client, analysis_service):
    openai_client.completions.error = RuntimeError("upstream unavailable")

    with pytest.raises(RuntimeError):
        await analysis_service.analyze_guest_communication(db, 101)

    assert db.query(GuestAnalysis).count() == 0


@pytest.mark.asyncio
async def test_missing_reservation_still_analyzed(db, openai_client, analysis_service):
    analysis = await analysis_service.analyze_guest_communication(db, 999)

    assert analysis.reservation_id == 999
    user_prompt = openai_client.completions.calls[0]["messages"][1]["content"]
    assert "### Reservation Context" not in user_prompt
    assert "No communications found for this reservation." in user_prompt


@pytest.mark.asyncio
async def test_inbox_id_is_passed_to_hostify(db, reservation, hostify, analysis_service):
    hostify.threads["321"] = {"messages": [{"id": 9, "message": "Thanks!", "sender_type": "guest"}]}

    analysis = await analysis_service.analyze_guest_communication(db, 101, inbox_id="321")

    assert ("thread", "321") in hostify.requests
    assert len(analysis.communication_ids) == 1


def test_get_analyses_by_reservations_empty(db, analysis_service):
    assert analysis_service.get_analyses_by_reservations(db, []) == []
    assert analysis_service.get_analysis_by_reservation(db, 101) is None


def test_user_prompt_includes_reservation_context(reservation):
    prompt = build_user_prompt("## Communication Timeline\n", reservation)

    assert prompt.startswith("## GUEST COMMUNICATION DATA")
    assert "- Guest Name: Jane Doe" in prompt
    assert "- Listing: Lakeview Cabin" in prompt
    assert "- Check-in: 2024-05-28" in prompt
    assert "- Check-out: 2024-06-01" in prompt
    assert "- Channel: Airbnb" in prompt
    assert prompt.endswith("provide the JSON analysis.")


def test_system_prompt_lists_labels_and_flags():
    prompt = build_system_prompt()

    for label in ("Positive", "Neutral", "Negative", "Mixed"):
        assert f"- {label}:" in prompt
    for flag in FLAG_TYPES:
        assert f"- {flag}:" in prompt
    assert '"sentimentReason"' in prompt


def test_parse_analysis_response_rejects_bad_payloads():
    with pytest.raises(AnalysisGenerationError):
        parse_analysis_response(None)
    with pytest.raises(AnalysisGenerationError):
        parse_analysis_response("{not json")
    with pytest.raises(AnalysisGenerationError):
        parse_analysis_response("[1, 2]")


def test_parse_analysis_response_keeps_valid_values():
    result = parse_analysis_response(json.dumps({
        "summary": "Smooth stay.",
        "sentiment": "Mixed",
        "sentimentReason": "Late reply but happy ending.",
        "flags": [{"flag": "Delayed Response", "explanation": "3 hours to reply"}]
    }))

    assert result.sentiment == "Mixed"
    assert result.sentiment_reason == "Late reply but happy ending."
    assert result.flags[0]["flag"] == "Delayed Response"
