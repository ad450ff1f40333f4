"""
Guest analysis API endpoints.
Read stored analyses and communications, and trigger fetches and (re)analysis.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from communications import GuestCommunicationService
from guest_analysis import GuestAnalysisService
from models import get_db

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/guest-analysis", tags=["guest-analysis"])


# ============ REQUEST / RESPONSE MODELS ============

class InboxRequest(BaseModel):
    inboxId: Optional[Union[str, int]] = None  # Hostify inbox ids are numeric


class AnalysisDetail(BaseModel):
    id: str
    reservation_id: int
    summary: str
    sentiment: str
    sentiment_reason: str
    flags: List[Any] = []
    analyzed_at: datetime
    analyzed_by: Optional[str] = None
    communication_ids: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CommunicationDetail(BaseModel):
    id: str
    reservation_id: int
    source: str
    external_id: str
    content: str
    direction: str
    sender_name: Optional[str] = None
    sender_phone: Optional[str] = None
    communicated_at: datetime
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AnalysisResponse(BaseModel):
    success: bool = True
    data: AnalysisDetail


class AnalysisListResponse(BaseModel):
    success: bool = True
    data: List[AnalysisDetail]


class CommunicationListResponse(BaseModel):
    success: bool = True
    data: List[CommunicationDetail]
    count: int


class FetchCounts(BaseModel):
    openphone: int
    hostify: int


class FetchResponse(BaseModel):
    success: bool = True
    message: str = "Communications fetched successfully"
    data: FetchCounts


# ============ DEPENDENCIES ============

def get_analysis_service(request: Request) -> GuestAnalysisService:
    """Service instance built once at startup (see main.lifespan)."""
    return request.app.state.analysis_service


def get_communication_service(request: Request) -> GuestCommunicationService:
    return request.app.state.communication_service


def parse_reservation_id(reservation_id: str) -> int:
    try:
        return int(reservation_id)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid reservation ID")


def _inbox_id(body: Optional[InboxRequest]) -> Optional[str]:
    if not body or body.inboxId is None or body.inboxId == "":
        return None
    return str(body.inboxId)


# ============ ENDPOINTS ============

@router.get("/bulk", response_model=AnalysisListResponse)
async def get_bulk_analyses(
    reservationIds: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    service: GuestAnalysisService = Depends(get_analysis_service)
):
    """Get existing analyses for a comma-separated list of reservations."""
    if not reservationIds:
        raise HTTPException(status_code=400, detail="Missing reservationIds query parameter")

    ids = []
    for part in reservationIds.split(","):
        try:
            ids.append(int(part.strip()))
        except ValueError:
            continue

    if not ids:
        raise HTTPException(status_code=400, detail="Invalid reservation IDs")

    try:
        analyses = service.get_analyses_by_reservations(db, ids)
    except Exception as e:
        logger.error("get_bulk_analyses_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get bulk analyses")

    return {"success": True, "data": analyses}


@router.get("/{reservation_id}", response_model=AnalysisResponse)
async def get_analysis(
    reservation_id: str,
    db: Session = Depends(get_db),
    service: GuestAnalysisService = Depends(get_analysis_service)
):
    """Get the stored analysis for a reservation."""
    res_id = parse_reservation_id(reservation_id)

    try:
        analysis = service.get_analysis_by_reservation(db, res_id)
    except Exception as e:
        logger.error("get_analysis_failed", reservation_id=res_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get analysis")

    if not analysis:
        raise HTTPException(status_code=404, detail="No analysis found for this reservation")

    return {"success": True, "data": analysis}


@router.post("/{reservation_id}/generate", response_model=AnalysisResponse)
async def generate_analysis(
    reservation_id: str,
    body: Optional[InboxRequest] = None,
    db: Session = Depends(get_db),
    service: GuestAnalysisService = Depends(get_analysis_service)
):
    """Fetch communications from all sources and generate a new analysis."""
    res_id = parse_reservation_id(reservation_id)
    logger.info("generate_analysis_requested", reservation_id=res_id)

    try:
        analysis = await service.analyze_guest_communication(db, res_id, _inbox_id(body))
    except Exception as e:
        logger.error("generate_analysis_failed", reservation_id=res_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to generate analysis")

    return {"success": True, "data": analysis}


@router.post("/{reservation_id}/regenerate", response_model=AnalysisResponse)
async def regenerate_analysis(
    reservation_id: str,
    body: Optional[InboxRequest] = None,
    db: Session = Depends(get_db),
    service: GuestAnalysisService = Depends(get_analysis_service)
):
    """Re-fetch communications and overwrite the existing analysis."""
    res_id = parse_reservation_id(reservation_id)
    logger.info("regenerate_analysis_requested", reservation_id=res_id)

    try:
        analysis = await service.regenerate_analysis(db, res_id, _inbox_id(body))
    except Exception as e:
        logger.error("regenerate_analysis_failed", reservation_id=res_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to regenerate analysis")

    return {"success": True, "data": analysis}


@router.get("/{reservation_id}/communications", response_model=CommunicationListResponse)
async def get_communications(
    reservation_id: str,
    db: Session = Depends(get_db),
    communications: GuestCommunicationService = Depends(get_communication_service)
):
    """Get the raw stored communications for a reservation, oldest first."""
    res_id = parse_reservation_id(reservation_id)

    try:
        rows = communications.get_all_communications_for_reservation(db, res_id)
    except Exception as e:
        logger.error("get_communications_failed", reservation_id=res_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get communications")

    return {"success": True, "data": rows, "count": len(rows)}


@router.post("/{reservation_id}/fetch-communications", response_model=FetchResponse)
async def fetch_communications(
    reservation_id: str,
    body: Optional[InboxRequest] = None,
    db: Session = Depends(get_db),
    communications: GuestCommunicationService = Depends(get_communication_service)
):
    """Pull new communications from OpenPhone and Hostify without analyzing them."""
    res_id = parse_reservation_id(reservation_id)

    try:
        openphone = await communications.fetch_and_store_from_openphone(db, res_id)
        hostify = await communications.fetch_and_store_from_hostify(db, res_id, _inbox_id(body))
    except Exception as e:
        logger.error("fetch_communications_failed", reservation_id=res_id, error=str(e))
        raise HTTPException(status_code=500, detail="Failed to fetch communications")

    return {
        "success": True,
        "message": "Communications fetched successfully",
        "data": {"openphone": len(openphone), "hostify": len(hostify)}
    }
