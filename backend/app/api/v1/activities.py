"""
FastAPI routes: activity lifecycle for the mobile client.

Provides endpoints to:
    POST /api/v1/activity                — start monitoring
    GET  /api/v1/activity/current        — current active activity for a phone
    POST /api/v1/activity/{id}/safe      — heartbeat ("I'm safe")
    POST /api/v1/activity/{id}/end       — finish monitoring
    POST /api/v1/test-connection         — client connectivity check

Domain errors (RateLimitError, NotFoundError, InvalidStateError,
StoreUnavailableError) are raised by ActivityService and rendered by the
handlers in core.errors.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from backend.app.activity.state_machine import ActivityService
from backend.app.api.schemas import (
    ActivityResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
    ReportSafeRequest,
    ReportSafeResponse,
    StartActivityRequest,
)

router = APIRouter(prefix="/api/v1", tags=["activity"])


def get_activity_service(request: Request) -> ActivityService:
    return request.app.state.container.activities


@router.post("/activity", response_model=ActivityResponse, status_code=201)
async def start_activity(
    body: StartActivityRequest,
    service: ActivityService = Depends(get_activity_service),
) -> Dict[str, Any]:
    activity = await service.start_activity(
        body.phone_number,
        body.activity_name,
        body.contact_phone,
        body.interval_minutes,
        description=body.description,
        contact_email=body.contact_email,
        secondary_contact_phone=body.secondary_contact_phone,
        secondary_contact_email=body.secondary_contact_email,
        emergency_instructions=body.emergency_instructions,
        tolerance_minutes=body.tolerance_minutes,
        warning_minutes=body.warning_minutes,
        latitude=body.last_latitude,
        longitude=body.last_longitude,
        language=body.language,
        user_name=body.user_name,
    )
    return activity.to_dict()


@router.get("/activity/current", response_model=Optional[ActivityResponse])
async def get_current_activity(
    phone_number: str = Query(..., min_length=1),
    service: ActivityService = Depends(get_activity_service),
) -> Optional[Dict[str, Any]]:
    activity = await service.get_current_activity(phone_number)
    return activity.to_dict() if activity else None


@router.post("/activity/{activity_id}/safe", response_model=ReportSafeResponse)
async def report_safe(
    activity_id: str,
    body: Optional[ReportSafeRequest] = None,
    service: ActivityService = Depends(get_activity_service),
) -> Dict[str, Any]:
    body = body or ReportSafeRequest()
    return await service.report_safe(
        activity_id, body.lat, body.lng, body.battery_level,
    )


@router.post("/activity/{activity_id}/end", response_model=Optional[ActivityResponse])
async def end_activity(
    activity_id: str,
    service: ActivityService = Depends(get_activity_service),
) -> Optional[Dict[str, Any]]:
    activity = await service.end_activity(activity_id)
    return activity.to_dict() if activity else None


@router.post("/test-connection", response_model=ConnectionTestResponse)
async def test_connection(
    body: Optional[ConnectionTestRequest] = None,
    service: ActivityService = Depends(get_activity_service),
) -> Dict[str, str]:
    body = body or ConnectionTestRequest()
    return await service.test_connection(body.email, body.lat, body.lng)
