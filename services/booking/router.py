"""
services/booking/router.py
Thin HTTP layer over the booking core: specialist availability, slot
queries and the session request lifecycle.
Business-rule failures propagate as BookingError and are rendered by the
handler registered in main.py.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.availability import AvailabilityModel
from services.booking.requests import SessionRequestStateMachine
from services.booking.slots import SlotGenerator
from shared.middleware.auth import TokenData, get_token_data, require_admin, require_specialist
from shared.models.models import (
    DayOfWeek,
    OverrideType,
    SessionRequest,
    SessionRequestStatus,
    SessionType,
)
from shared.schemas.schemas import (
    ApproveRequest,
    ApproveResponse,
    AvailabilityOverrideCreate,
    AvailabilityOverrideResponse,
    AvailabilityOverrideUpdate,
    AvailabilityRuleCreate,
    AvailabilityRuleResponse,
    AvailabilityRuleUpdate,
    AvailabilitySettingsResponse,
    AvailabilitySettingsUpdate,
    AvailableSlotsResponse,
    MessageResponse,
    PaginatedResponse,
    RejectRequest,
    SessionRequestCreate,
    SessionRequestResponse,
    SessionResponse,
    SlotResponse,
    SubmitPaymentRequest,
)
from shared.utils.clock import Clock, get_clock
from tasks.booking_tasks import send_session_approved, send_session_request_rejected

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Booking"])


# ── Helpers ───────────────────────────────────────────────────

def _dispatch(task, *args) -> None:
    """Queue a notification task. The booking change is already committed."""
    try:
        task.delay(*args)
    except Exception as e:
        logger.warning(f"Could not queue {task.name} for {args}: {e}")


def _ensure_can_view(request: SessionRequest, token: TokenData) -> None:
    if token.is_admin or token.user_id in (request.user_id, request.specialist_id):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session request")


def _optional_enum(enum_cls, value):
    return enum_cls(value) if value is not None else None


# ── Availability (specialist) ─────────────────────────────────

@router.get(
    "/availability/settings",
    response_model=AvailabilitySettingsResponse,
    tags=["Availability"],
)
async def get_availability_settings(
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    row = await AvailabilityModel(db, clock).get_settings(token.user_id)
    return AvailabilitySettingsResponse.model_validate(row)


@router.put(
    "/availability/settings",
    response_model=AvailabilitySettingsResponse,
    tags=["Availability"],
)
async def update_availability_settings(
    payload: AvailabilitySettingsUpdate,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    row = await AvailabilityModel(db, clock).update_settings(
        token.user_id,
        slot_duration_minutes=payload.slot_duration_minutes,
        break_minutes=payload.break_minutes,
        timezone=payload.timezone,
    )
    return AvailabilitySettingsResponse.model_validate(row)


@router.get(
    "/availability/rules",
    response_model=List[AvailabilityRuleResponse],
    tags=["Availability"],
)
async def list_rules(
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rules = await AvailabilityModel(db, clock).get_rules(token.user_id)
    return [AvailabilityRuleResponse.model_validate(r) for r in rules]


@router.post(
    "/availability/rules",
    response_model=AvailabilityRuleResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Availability"],
)
async def create_rule(
    payload: AvailabilityRuleCreate,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rule = await AvailabilityModel(db, clock).create_rule(
        token.user_id,
        DayOfWeek(payload.day_of_week),
        payload.start_time,
        payload.end_time,
        payload.is_active,
    )
    return AvailabilityRuleResponse.model_validate(rule)


@router.get(
    "/availability/rules/{rule_id}",
    response_model=AvailabilityRuleResponse,
    tags=["Availability"],
)
async def get_rule(
    rule_id: UUID,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rule = await AvailabilityModel(db, clock).get_rule(token.user_id, rule_id)
    return AvailabilityRuleResponse.model_validate(rule)


@router.put(
    "/availability/rules/{rule_id}",
    response_model=AvailabilityRuleResponse,
    tags=["Availability"],
)
async def update_rule(
    rule_id: UUID,
    payload: AvailabilityRuleUpdate,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    rule = await AvailabilityModel(db, clock).update_rule(
        token.user_id,
        rule_id,
        day_of_week=_optional_enum(DayOfWeek, payload.day_of_week),
        start_time=payload.start_time,
        end_time=payload.end_time,
        is_active=payload.is_active,
    )
    return AvailabilityRuleResponse.model_validate(rule)


@router.delete(
    "/availability/rules/{rule_id}",
    response_model=MessageResponse,
    tags=["Availability"],
)
async def delete_rule(
    rule_id: UUID,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await AvailabilityModel(db, clock).delete_rule(token.user_id, rule_id)
    return MessageResponse(message="Availability rule deleted")


@router.get(
    "/availability/overrides",
    response_model=List[AvailabilityOverrideResponse],
    tags=["Availability"],
)
async def list_overrides(
    start_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    overrides = await AvailabilityModel(db, clock).list_overrides(
        token.user_id, start_date, end_date
    )
    return [AvailabilityOverrideResponse.model_validate(o) for o in overrides]


@router.post(
    "/availability/overrides",
    response_model=AvailabilityOverrideResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Availability"],
)
async def create_override(
    payload: AvailabilityOverrideCreate,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    override = await AvailabilityModel(db, clock).create_override(
        token.user_id,
        payload.date,
        OverrideType(payload.type),
        start_time=payload.start_time,
        end_time=payload.end_time,
        reason=payload.reason,
    )
    return AvailabilityOverrideResponse.model_validate(override)


@router.put(
    "/availability/overrides/{override_id}",
    response_model=AvailabilityOverrideResponse,
    tags=["Availability"],
)
async def update_override(
    override_id: UUID,
    payload: AvailabilityOverrideUpdate,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    override = await AvailabilityModel(db, clock).update_override(
        token.user_id,
        override_id,
        day=payload.date,
        type_=_optional_enum(OverrideType, payload.type),
        start_time=payload.start_time,
        end_time=payload.end_time,
        reason=payload.reason,
    )
    return AvailabilityOverrideResponse.model_validate(override)


@router.delete(
    "/availability/overrides/{override_id}",
    response_model=MessageResponse,
    tags=["Availability"],
)
async def delete_override(
    override_id: UUID,
    token: TokenData = Depends(require_specialist),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    await AvailabilityModel(db, clock).delete_override(token.user_id, override_id)
    return MessageResponse(message="Availability override deleted")


# ── Slots ─────────────────────────────────────────────────────

@router.get("/slots/available", response_model=AvailableSlotsResponse, tags=["Slots"])
async def available_slots(
    specialist_id: UUID = Query(...),
    date: str = Query(..., description="YYYY-MM-DD"),
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Free slots for a specialist on a date. Read-only."""
    slots = await SlotGenerator(db, clock).available_slots(specialist_id, date)
    return AvailableSlotsResponse(
        specialist_id=specialist_id,
        date=date,
        slots=[
            SlotResponse(start_time=s.start_time, end_time=s.end_time, label=s.label())
            for s in slots
        ],
    )


# ── Session Requests ──────────────────────────────────────────

@router.post(
    "/session-requests",
    response_model=SessionRequestResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Session Requests"],
)
async def create_session_request(
    payload: SessionRequestCreate,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Claim a slot. The request holds the slot for PAYMENT_WINDOW_MINUTES
    while the payment screenshot is uploaded.
    """
    request = await SessionRequestStateMachine(db, clock).create(
        user_id=token.user_id,
        specialist_id=payload.specialist_id,
        day=payload.date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        amount=payload.amount,
        currency=payload.currency,
        session_title=payload.session_title,
        session_type=_optional_enum(SessionType, payload.session_type),
    )
    return SessionRequestResponse.model_validate(request)


@router.get(
    "/session-requests/mine",
    response_model=List[SessionRequestResponse],
    tags=["Session Requests"],
)
async def my_session_requests(
    status_filter: Optional[SessionRequestStatus] = Query(None, alias="status"),
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    requests = await SessionRequestStateMachine(db, clock).list_for_user(
        token.user_id, status_filter
    )
    return [SessionRequestResponse.model_validate(r) for r in requests]


@router.get(
    "/session-requests/pending",
    response_model=PaginatedResponse,
    tags=["Session Requests"],
)
async def pending_session_requests(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: TokenData = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Admin: requests with an uploaded payment, oldest payment first."""
    items, total = await SessionRequestStateMachine(db, clock).list_pending_approval(
        page, page_size
    )
    return PaginatedResponse(
        items=[SessionRequestResponse.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=(total + page_size - 1) // page_size,
    )


@router.get(
    "/session-requests/{request_id}",
    response_model=SessionRequestResponse,
    tags=["Session Requests"],
)
async def get_session_request(
    request_id: UUID,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    request = await SessionRequestStateMachine(db, clock).get(request_id)
    _ensure_can_view(request, token)
    return SessionRequestResponse.model_validate(request)


@router.post(
    "/session-requests/{request_id}/submit-payment",
    response_model=SessionRequestResponse,
    tags=["Session Requests"],
)
async def submit_payment(
    request_id: UUID,
    payload: SubmitPaymentRequest,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    machine = SessionRequestStateMachine(db, clock)
    request = await machine.get(request_id)
    if request.user_id != token.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session request")
    if request.status == SessionRequestStatus.EXPIRED:
        # Keep the lazily applied expiry even though the call fails
        await db.commit()
    request = await machine.submit_payment(request_id, payload.payment_screenshot_url)
    return SessionRequestResponse.model_validate(request)


@router.post(
    "/session-requests/{request_id}/cancel",
    response_model=SessionRequestResponse,
    tags=["Session Requests"],
)
async def cancel_session_request(
    request_id: UUID,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    machine = SessionRequestStateMachine(db, clock)
    request = await machine.get(request_id)
    if not token.is_admin and request.user_id != token.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session request")
    if request.status == SessionRequestStatus.EXPIRED:
        # Keep the lazily applied expiry even though the call fails
        await db.commit()
    request = await machine.cancel(request_id)
    return SessionRequestResponse.model_validate(request)


@router.post(
    "/session-requests/{request_id}/approve",
    response_model=ApproveResponse,
    tags=["Session Requests"],
)
async def approve_session_request(
    request_id: UUID,
    payload: Optional[ApproveRequest] = None,
    _: TokenData = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Admin: verify the payment and confirm the session."""
    request, session = await SessionRequestStateMachine(db, clock).approve(
        request_id, payload.notes if payload else None
    )
    response = ApproveResponse(
        request=SessionRequestResponse.model_validate(request),
        session=SessionResponse.model_validate(session),
    )
    await db.commit()
    _dispatch(send_session_approved, str(request.id), str(session.id))
    return response


@router.post(
    "/session-requests/{request_id}/reject",
    response_model=SessionRequestResponse,
    tags=["Session Requests"],
)
async def reject_session_request(
    request_id: UUID,
    payload: RejectRequest,
    _: TokenData = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    request = await SessionRequestStateMachine(db, clock).reject(request_id, payload.reason)
    response = SessionRequestResponse.model_validate(request)
    await db.commit()
    _dispatch(send_session_request_rejected, str(request.id))
    return response
