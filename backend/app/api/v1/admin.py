"""
FastAPI routes: administration of sender accounts and legacy settings.

All routes require HTTP Basic credentials matching ADMIN_USER / ADMIN_PASS.

    GET    /api/v1/admin/settings                  — settings (secrets masked) + senders
    POST   /api/v1/admin/settings                  — update existing keys
    GET    /api/v1/admin/senders                   — list sender accounts
    POST   /api/v1/admin/senders                   — add a sender account
    PATCH  /api/v1/admin/senders/{id}/toggle       — enable / disable
    DELETE /api/v1/admin/senders/{id}              — remove

Passwords are write-only: never returned, and the mask value posted back
by a form is ignored rather than stored.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from backend.app.alerts.credentials import SECRET_SETTING_KEYS
from backend.app.alerts.models import SenderCredential
from backend.app.api.schemas import (
    SenderCreateRequest,
    SenderResponse,
    SenderToggleRequest,
    SettingsResponse,
)
from backend.app.core.config import settings
from backend.app.core.errors import NotFoundError
from backend.app.services import ServiceContainer

logger = logging.getLogger(__name__)

SECRET_MASK = "******"

security = HTTPBasic(realm="Admin Area")


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    user_ok = secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.ADMIN_USER.encode("utf-8"),
    )
    pass_ok = secrets.compare_digest(
        credentials.password.encode("utf-8"), settings.ADMIN_PASS.encode("utf-8"),
    )
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": 'Basic realm="Admin Area"'},
        )
    return credentials.username


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


router = APIRouter(
    prefix="/api/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def _mask(values: Dict[str, str]) -> Dict[str, str]:
    return {
        key: (SECRET_MASK if key in SECRET_SETTING_KEYS and value else value)
        for key, value in values.items()
    }


@router.get("/settings", response_model=SettingsResponse)
async def get_settings(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    values = await container.settings_provider.all_settings()
    senders = await container.sender_repository.list_all()
    return {
        "settings": _mask(values),
        "senders": [s.to_dict() for s in senders],
    }


@router.post("/settings")
async def update_settings(
    values: Dict[str, str],
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, bool]:
    changes = {
        key: value for key, value in values.items()
        if not (key in SECRET_SETTING_KEYS and value == SECRET_MASK)
    }
    await container.settings_provider.update_settings(changes)
    logger.info("Settings updated: %s", sorted(changes))
    return {"success": True}


@router.get("/senders", response_model=List[SenderResponse])
async def list_senders(container: ServiceContainer = Depends(get_container)) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in await container.sender_repository.list_all()]


@router.post("/senders", response_model=SenderResponse, status_code=201)
async def add_sender(
    body: SenderCreateRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    credential = await container.sender_repository.add(SenderCredential(
        host=body.host,
        port=body.port,
        secure=body.secure,
        user=body.user,
        password=body.password,
    ))
    logger.info(
        "Sender added: %s (%s:%d)", credential.user, credential.host, credential.port,
        extra={"credential_id": credential.id},
    )
    return credential.to_dict()


@router.patch("/senders/{sender_id}/toggle")
async def toggle_sender(
    sender_id: int,
    body: SenderToggleRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    if not await container.sender_repository.set_active(sender_id, body.is_active):
        raise NotFoundError("Sender", sender_id=sender_id)
    logger.info(
        "Sender %d %s", sender_id, "enabled" if body.is_active else "disabled",
        extra={"credential_id": sender_id},
    )
    return {"id": sender_id, "is_active": body.is_active}


@router.delete("/senders/{sender_id}")
async def delete_sender(
    sender_id: int,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    if not await container.sender_repository.delete(sender_id):
        raise NotFoundError("Sender", sender_id=sender_id)
    logger.info("Sender %d deleted", sender_id, extra={"credential_id": sender_id})
    return {"id": sender_id, "deleted": True}
