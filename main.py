"""
Guest Analysis Service - Main FastAPI Application

This is the main entry point for the application. It handles:
- Guest analysis API (communications, generate/regenerate, bulk lookups)
- Startup initialization of the database and shared service objects
- The daily scheduled analysis of today's checkouts
"""

from contextlib import asynccontextmanager

import pytz
import structlog
from fastapi import FastAPI
from openai import AsyncOpenAI

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from api import router as guest_analysis_router
from communications import GuestCommunicationService
from config import settings
from guest_analysis import GuestAnalysisService
from hostify import HostifyClient
from logger_config import configure_logger
from models import init_db, SessionLocal
from openphone import OpenPhoneClient

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"


# ============ SERVICES ============

def build_services():
    """Construct the stateless service objects shared by requests and jobs."""
    communication_service = GuestCommunicationService(
        openphone=OpenPhoneClient(),
        hostify=HostifyClient()
    )
    analysis_service = GuestAnalysisService(
        communications=communication_service,
        openai_client=AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
    )
    return communication_service, analysis_service


# ============ SCHEDULER SETUP ============

scheduler = AsyncIOScheduler(timezone=pytz.timezone(settings.TIMEZONE))


async def run_scheduled_guest_analysis(analysis_service: GuestAnalysisService):
    """Daily job: analyze every reservation checking out today."""
    db = SessionLocal()
    try:
        result = await analysis_service.process_scheduled_analysis(db)
        logger.info("scheduled_guest_analysis_finished", **result)
    except Exception as e:
        logger.error("scheduled_guest_analysis_crashed", error=str(e))
    finally:
        db.close()


# ============ APP LIFECYCLE ============

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle manager."""
    configure_logger()
    logger.info("starting_guest_analysis_service", version=VERSION)

    init_db()
    logger.info("database_initialized")

    communication_service, analysis_service = build_services()
    app.state.communication_service = communication_service
    app.state.analysis_service = analysis_service

    if settings.ENABLE_SCHEDULED_ANALYSIS:
        scheduler.add_job(
            run_scheduled_guest_analysis,
            CronTrigger(
                hour=settings.GUEST_ANALYSIS_CRON_HOUR,
                minute=settings.GUEST_ANALYSIS_CRON_MINUTE,
                timezone=pytz.timezone(settings.TIMEZONE)
            ),
            id="scheduled_guest_analysis",
            replace_existing=True,
            kwargs={"analysis_service": analysis_service}
        )
        scheduler.start()
        logger.info(
            "scheduled_guest_analysis_registered",
            hour=settings.GUEST_ANALYSIS_CRON_HOUR,
            minute=settings.GUEST_ANALYSIS_CRON_MINUTE,
            timezone=settings.TIMEZONE
        )

    yield

    logger.info("shutting_down")
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Guest Analysis Service",
    description="Guest communication aggregation and AI analysis for short-term rentals",
    version=VERSION,
    lifespan=lifespan
)

app.include_router(guest_analysis_router)


# ============ HEALTH CHECK ============

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "scheduled_analysis": settings.ENABLE_SCHEDULED_ANALYSIS,
        "openphone_configured": bool(settings.OPENPHONE_API_KEY),
        "hostify_configured": bool(settings.HOSTIFY_API_KEY)
    }


# ============ RUN SERVER ============

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
