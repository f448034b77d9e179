"""
Pydantic schemas for the check-in API.

Separated from the route handlers so they are reusable across
the codebase (admin routes, tests).

Fields are snake_case; the mobile client's camelCase names
(``phoneNumber``, ``intervalMinutes``, ``batteryLevel`` …) are accepted too.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ClientModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class StartActivityRequest(ClientModel):
    """Begin a monitored activity."""
    phone_number: str = Field(..., min_length=1, max_length=32, examples=["13800000000"])
    activity_name: str = Field(..., min_length=1, max_length=255, examples=["Solo hike"])
    description: Optional[str] = Field(None, examples=["West ridge trail"])
    interval_minutes: Optional[int] = Field(
        None, ge=1, description="Heartbeat cadence; defaults to the user profile",
        examples=[30],
    )
    contact_phone: Optional[str] = Field(None, max_length=32, examples=["13900000000"])
    contact_email: Optional[str] = Field(None, examples=["family@example.com"])
    secondary_contact_phone: Optional[str] = Field(None, max_length=32)
    secondary_contact_email: Optional[str] = None
    emergency_instructions: Optional[str] = None
    tolerance_minutes: Optional[int] = Field(None, ge=0)
    warning_minutes: Optional[int] = Field(None, ge=0)
    last_latitude: Optional[float] = Field(None, ge=-90, le=90)
    last_longitude: Optional[float] = Field(None, ge=-180, le=180)
    language: Optional[Literal["zh", "en"]] = None
    user_name: Optional[str] = Field(None, max_length=128)


class ReportSafeRequest(ClientModel):
    """Heartbeat payload."""
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    battery_level: Optional[int] = Field(None, ge=0, le=100)


class ConnectionTestRequest(ClientModel):
    email: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class SenderCreateRequest(ClientModel):
    user: str = Field(..., min_length=1, examples=["alerts@qq.com"])
    password: str = Field(..., min_length=1, alias="pass")
    host: str = Field("smtp.qq.com", min_length=1)
    port: int = Field(465, ge=1, le=65535)
    secure: bool = True


class SenderToggleRequest(ClientModel):
    is_active: bool


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class ActivityResponse(BaseModel):
    id: str
    phone_number: str
    user_name: Optional[str] = None
    language: str
    activity_name: str
    description: Optional[str] = None
    emergency_instructions: Optional[str] = None
    emergency_contact_phone: str
    emergency_contact_email: Optional[str] = None
    secondary_contact_phone: Optional[str] = None
    secondary_contact_email: Optional[str] = None
    check_in_interval_minutes: int
    tolerance_minutes: int
    warning_minutes: int
    is_warned: bool
    status: str
    next_check_in_deadline: datetime
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    battery_level: Optional[int] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ReportSafeResponse(BaseModel):
    status: str = "ok"
    next_deadline: datetime


class ConnectionTestResponse(BaseModel):
    network: str
    gps: str
    email: str
    timestamp: str


class SenderResponse(BaseModel):
    id: int
    host: str
    port: int
    secure: bool
    user: str
    is_active: bool
    success_count: int
    fail_count: int
    created_at: Optional[str] = None


class SettingsResponse(BaseModel):
    settings: Dict[str, str]
    senders: List[SenderResponse] = Field(default_factory=list)
