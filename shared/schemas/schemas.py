"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the booking API.
Date and time strings are validated by the booking core, which reports
malformed input as a 400 VALIDATION_ERROR.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.models import (
    DayOfWeek,
    OverrideType,
    SessionRequestStatus,
    SessionStatus,
    SessionType,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Availability ──────────────────────────────────────────────

class AvailabilitySettingsResponse(BaseSchema):
    specialist_id: uuid.UUID
    slot_duration_minutes: int
    break_minutes: int
    timezone: str


class AvailabilitySettingsUpdate(BaseSchema):
    slot_duration_minutes: Optional[int] = None
    break_minutes: Optional[int] = None
    timezone: Optional[str] = Field(None, max_length=64)


class AvailabilityRuleCreate(BaseSchema):
    day_of_week: DayOfWeek
    start_time: str = Field(..., description="HH:mm")
    end_time: str = Field(..., description="HH:mm")
    is_active: bool = True


class AvailabilityRuleUpdate(BaseSchema):
    day_of_week: Optional[DayOfWeek] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    is_active: Optional[bool] = None


class AvailabilityRuleResponse(BaseSchema):
    id: uuid.UUID
    specialist_id: uuid.UUID
    day_of_week: DayOfWeek
    start_time: str
    end_time: str
    is_active: bool


class AvailabilityOverrideCreate(BaseSchema):
    date: str = Field(..., description="YYYY-MM-DD")
    type: OverrideType
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=255)


class AvailabilityOverrideUpdate(BaseSchema):
    date: Optional[str] = None
    type: Optional[OverrideType] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=255)


class AvailabilityOverrideResponse(BaseSchema):
    id: uuid.UUID
    specialist_id: uuid.UUID
    date: str
    type: OverrideType
    start_time: Optional[str]
    end_time: Optional[str]
    reason: Optional[str]


# ── Slots ─────────────────────────────────────────────────────

class SlotResponse(BaseSchema):
    start_time: str
    end_time: str
    label: str


class AvailableSlotsResponse(BaseSchema):
    specialist_id: uuid.UUID
    date: str
    slots: List[SlotResponse]


# ── Session Requests ──────────────────────────────────────────

class SessionRequestCreate(BaseSchema):
    specialist_id: uuid.UUID
    date: str = Field(..., description="YYYY-MM-DD")
    start_time: str = Field(..., description="HH:mm")
    end_time: Optional[str] = Field(None, description="HH:mm, must match the slot")
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    session_title: Optional[str] = Field(None, max_length=255)
    session_type: Optional[SessionType] = None


class SubmitPaymentRequest(BaseSchema):
    payment_screenshot_url: str = Field(..., min_length=1, max_length=2048)


class ApproveRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=2000)


class RejectRequest(BaseSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class SessionRequestResponse(BaseSchema):
    id: uuid.UUID
    specialist_id: uuid.UUID
    user_id: uuid.UUID
    date: str
    start_time: str
    end_time: str
    amount: Decimal
    currency: str
    status: SessionRequestStatus
    payment_screenshot_url: Optional[str]
    expires_at: Optional[datetime]
    paid_at: Optional[datetime]
    approved_at: Optional[datetime]
    rejection_reason: Optional[str]
    session_title: Optional[str]
    session_type: Optional[SessionType]
    created_at: datetime


# ── Sessions ──────────────────────────────────────────────────

class SessionResponse(BaseSchema):
    id: uuid.UUID
    specialist_id: uuid.UUID
    user_id: uuid.UUID
    session_request_id: uuid.UUID
    date: str
    start_time: str
    end_time: str
    starts_at: datetime
    amount: Decimal
    currency: str
    status: SessionStatus
    notes: Optional[str]
    cancellation_reason: Optional[str]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    session_file: Optional[str]
    session_title: Optional[str]
    session_type: Optional[SessionType]
    created_at: datetime


class ApproveResponse(BaseSchema):
    request: SessionRequestResponse
    session: SessionResponse


class SessionStatusUpdate(BaseSchema):
    status: SessionStatus
    notes: Optional[str] = Field(None, max_length=2000)
    cancellation_reason: Optional[str] = Field(None, max_length=500)


class SessionFileUpload(BaseSchema):
    session_file: str = Field(..., min_length=1, max_length=2048)


# ── Notifications ─────────────────────────────────────────────

class DeviceTokenRequest(BaseSchema):
    token: str = Field(..., min_length=1, max_length=512)
    platform: Optional[str] = Field(None, pattern="^(android|ios|web)$")


class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    sent_push: bool
    created_at: datetime


class ReminderTriggerResponse(BaseSchema):
    sent_24h: int
    sent_1h: int
    sent_payment: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
