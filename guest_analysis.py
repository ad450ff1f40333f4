"""
Guest Analysis Module.

Turns the communication history of a reservation into a persisted AI
analysis: a neutral summary, one of four sentiment labels and a list of
operational flags.

Data flow:
1. Pull and store new communications from OpenPhone and Hostify
2. Render the stored communications as a chronological timeline
3. Ask the model for a JSON analysis of the timeline (plus reservation context)
4. Repair out-of-contract values and upsert the single GuestAnalysis row

A daily job runs the same analysis for every reservation checking out today,
skipping ones that were analyzed within the freshness window.
"""

import json
import uuid
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from communications import GuestCommunicationService
from config import settings
from models import GuestAnalysis, ReservationInfo, Sentiment
from repositories import GuestAnalysisRepository, GuestCommunicationRepository, ReservationRepository
from utils import business_today, log_event, utcnow

logger = structlog.get_logger(__name__)

SENTIMENTS = [s.value for s in Sentiment]

FLAG_TYPES = {
    "Delayed Response": "Representative took too long to respond",
    "Missed or Incomplete Response": "Guest question/request not addressed",
    "Incorrect or Conflicting Information": "Rep provided wrong or contradictory info",
    "Poor or Unclear Communication Tone": "Rep's tone was unprofessional or confusing",
    "Escalation Needed": "Situation requires management attention",
}


class AnalysisGenerationError(Exception):
    """The model did not return a usable analysis."""


class GuestAnalysisResult(BaseModel):
    """Validated result of the AI analysis."""
    summary: str
    sentiment: str
    sentiment_reason: str
    flags: List[Any]


def build_system_prompt() -> str:
    """System prompt fixing the output contract, labels and tone rules."""
    flag_lines = "\n".join(f"- {flag}: {meaning}" for flag, meaning in FLAG_TYPES.items())
    return f"""You are an expert hospitality communication analyst for a vacation rental management company. Your role is to analyze guest-host communication data and produce structured internal insights.

## YOUR TASK
Analyze the provided guest communication timeline and generate:
1. An interaction summary
2. An overall standardized sentiment
3. Operational flags highlighting issues

## OUTPUT FORMAT
Respond in valid JSON with exactly these fields:
{{
    "summary": "Concise, neutral summary covering guest concerns, rep actions, outcomes, escalations",
    "sentiment": "Positive" | "Neutral" | "Negative" | "Mixed",
    "sentimentReason": "1-2 line explanation of sentiment classification",
    "flags": [
        {{"flag": "Flag Type", "explanation": "Brief explanation"}}
    ]
}}

## SUMMARY RULES
- Be concise and neutral
- Cover: guest concerns, rep actions, outcomes, escalations
- Do NOT add assumptions or invent facts
- Do NOT repeat message content verbatim
- Do NOT include internal system names

## SENTIMENT LABELS (use exactly one)
- Positive: Guest expressed satisfaction, gratitude, or resolved issues happily
- Neutral: Standard transactional communication without strong emotion
- Negative: Guest expressed frustration, complaints, or dissatisfaction
- Mixed: Communication contains both positive and negative elements

## FLAG TYPES (use only these)
{flag_lines}

If no issues found, return empty flags array: []"""


def build_user_prompt(timeline: str, reservation: Optional[ReservationInfo]) -> str:
    """User prompt with optional reservation context followed by the timeline."""
    prompt = "## GUEST COMMUNICATION DATA\n\n"

    if reservation:
        prompt += "### Reservation Context\n"
        prompt += f"- Guest Name: {reservation.guest_name or 'Unknown'}\n"
        prompt += f"- Listing: {reservation.listing_name or 'Unknown'}\n"
        prompt += f"- Check-in: {reservation.arrival_date or 'Unknown'}\n"
        prompt += f"- Check-out: {reservation.departure_date or 'Unknown'}\n"
        prompt += f"- Channel: {reservation.channel_name or 'Unknown'}\n\n"

    prompt += timeline
    prompt += "\n\n## INSTRUCTIONS\nAnalyze the above communication timeline and provide the JSON analysis."
    return prompt


def parse_analysis_response(content: Optional[str]) -> GuestAnalysisResult:
    """
    Parse the model's JSON reply.

    Unparseable output is an AnalysisGenerationError; an unknown sentiment
    becomes Neutral and non-list flags become [].
    """
    if not content:
        raise AnalysisGenerationError("No response from the language model")

    try:
        parsed = json.loads(content)
    except (TypeError, ValueError) as e:
        logger.error("analysis_response_unparseable", error=str(e))
        raise AnalysisGenerationError("Failed to parse AI analysis response") from e

    if not isinstance(parsed, dict):
        raise AnalysisGenerationError("AI analysis response is not a JSON object")

    sentiment = parsed.get("sentiment")
    if sentiment not in SENTIMENTS:
        sentiment = Sentiment.neutral.value

    flags = parsed.get("flags")
    if not isinstance(flags, list):
        flags = []

    return GuestAnalysisResult(
        summary=str(parsed.get("summary") or ""),
        sentiment=sentiment,
        sentiment_reason=str(parsed.get("sentimentReason") or ""),
        flags=flags
    )


def is_analysis_fresh(analysis: Optional[GuestAnalysis], now: datetime, window: timedelta) -> bool:
    """True if the analysis was generated less than `window` before `now`."""
    if analysis is None or analysis.analyzed_at is None:
        return False
    return now - analysis.analyzed_at < window


class GuestAnalysisService:
    """Generates AI-powered analysis of guest-host communications."""

    def __init__(
        self,
        communications: GuestCommunicationService,
        openai_client,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        freshness_window: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.communications = communications
        self.client = openai_client
        self.model = model or settings.GUEST_ANALYSIS_MODEL
        self.temperature = settings.GUEST_ANALYSIS_TEMPERATURE if temperature is None else temperature
        self.freshness_window = freshness_window or timedelta(hours=settings.ANALYSIS_FRESHNESS_HOURS)
        self.clock = clock

    async def analyze_guest_communication(
        self,
        db: Session,
        reservation_id: int,
        inbox_id: Optional[str] = None,
        analyzed_by: str = "manual"
    ) -> GuestAnalysis:
        """
        Analyze guest communications for a reservation.

        Fetches data from all sources, generates the AI analysis and
        creates or overwrites the reservation's GuestAnalysis row.
        """
        logger.info("analysis_started", reservation_id=reservation_id, analyzed_by=analyzed_by)

        await self.communications.fetch_and_store_from_openphone(db, reservation_id)
        await self.communications.fetch_and_store_from_hostify(db, reservation_id, inbox_id)

        timeline = self.communications.build_communication_timeline(db, reservation_id)

        reservation = ReservationRepository(db).find_by_id(reservation_id)
        if reservation is None:
            logger.warning("analysis_without_reservation_context", reservation_id=reservation_id)

        communication_ids = GuestCommunicationRepository(db).list_ids_for_reservation(reservation_id)

        try:
            result = await self.generate_analysis(timeline, reservation)
        except Exception as e:
            log_event("analysis_failed", reservation_id=reservation_id, payload={"error": str(e)}, db=db)
            raise

        analysis = self._upsert(db, reservation_id, result, analyzed_by, communication_ids)

        log_event("analysis_generated", reservation_id=reservation_id, payload={
            "sentiment": analysis.sentiment,
            "flags": len(analysis.flags or []),
            "communications": len(communication_ids),
            "analyzed_by": analyzed_by
        }, db=db)
        logger.info("analysis_saved", reservation_id=reservation_id, sentiment=analysis.sentiment)
        return analysis

    async def regenerate_analysis(
        self,
        db: Session,
        reservation_id: int,
        inbox_id: Optional[str] = None,
        analyzed_by: str = "manual"
    ) -> GuestAnalysis:
        """Regenerate analysis for a reservation (same as a fresh analysis)."""
        return await self.analyze_guest_communication(db, reservation_id, inbox_id, analyzed_by)

    def get_analysis_by_reservation(self, db: Session, reservation_id: int) -> Optional[GuestAnalysis]:
        return GuestAnalysisRepository(db).get_by_reservation(reservation_id)

    def get_analyses_by_reservations(self, db: Session, reservation_ids: List[int]) -> List[GuestAnalysis]:
        return GuestAnalysisRepository(db).list_by_reservations(reservation_ids)

    async def generate_analysis(
        self,
        timeline: str,
        reservation: Optional[ReservationInfo]
    ) -> GuestAnalysisResult:
        """Run the completion and validate its JSON payload."""
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": build_system_prompt()},
                {"role": "user", "content": build_user_prompt(timeline, reservation)}
            ],
            temperature=self.temperature,
            response_format={"type": "json_object"}
        )

        content = response.choices[0].message.content if response.choices else None
        return parse_analysis_response(content)

    def _upsert(
        self,
        db: Session,
        reservation_id: int,
        result: GuestAnalysisResult,
        analyzed_by: str,
        communication_ids: List[str]
    ) -> GuestAnalysis:
        repo = GuestAnalysisRepository(db)
        analysis = repo.get_by_reservation(reservation_id)

        if analysis is None:
            analysis = GuestAnalysis(id=str(uuid.uuid4()), reservation_id=reservation_id)
            self._apply(analysis, result, analyzed_by, communication_ids)
            try:
                return repo.save(analysis)
            except IntegrityError:
                # Another run inserted the row first; overwrite it instead
                db.rollback()
                analysis = repo.get_by_reservation(reservation_id)
                if analysis is None:
                    raise

        self._apply(analysis, result, analyzed_by, communication_ids)
        return repo.save(analysis)

    def _apply(
        self,
        analysis: GuestAnalysis,
        result: GuestAnalysisResult,
        analyzed_by: str,
        communication_ids: List[str]
    ):
        analysis.summary = result.summary
        analysis.sentiment = result.sentiment
        analysis.sentiment_reason = result.sentiment_reason
        analysis.flags = result.flags
        analysis.analyzed_at = self.clock()
        analysis.analyzed_by = analyzed_by
        analysis.communication_ids = list(communication_ids)

    async def process_scheduled_analysis(self, db: Session, day: Optional[date] = None) -> Dict[str, int]:
        """
        Analyze every reservation checking out today.

        Reservations analyzed within the freshness window are skipped. A failing
        reservation is counted and the batch moves on to the next one.
        """
        reservations = ReservationRepository(db).get_checkout_reservations(day or business_today())
        logger.info("scheduled_analysis_started", reservations=len(reservations))

        processed = 0
        failed = 0
        skipped = 0

        for reservation in reservations:
            try:
                existing = self.get_analysis_by_reservation(db, reservation.id)
                if is_analysis_fresh(existing, self.clock(), self.freshness_window):
                    logger.info("scheduled_analysis_skipped_recent", reservation_id=reservation.id)
                    skipped += 1
                    continue

                logger.info("scheduled_analysis_processing",
                            reservation_id=reservation.id, guest_name=reservation.guest_name)
                await self.analyze_guest_communication(db, reservation.id, analyzed_by="scheduled")
                processed += 1
            except Exception as e:
                db.rollback()
                logger.error("scheduled_analysis_failed", reservation_id=reservation.id, error=str(e))
                failed += 1

        totals = {"processed": processed, "failed": failed, "skipped": skipped}
        log_event("scheduled_analysis_complete", payload=totals, db=db)
        logger.info("scheduled_analysis_complete", **totals)
        return totals
