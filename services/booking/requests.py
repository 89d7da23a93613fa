"""
services/booking/requests.py
Session request state machine.
States: PENDING_PAYMENT → PENDING_APPROVAL → APPROVED | REJECTED
        PENDING_PAYMENT → EXPIRED (payment deadline passed)
        PENDING_PAYMENT | PENDING_APPROVAL → CANCELLED

Slot ownership is decided by the partial unique index on
(specialist_id, date, start_time) over the two pending statuses; the slot
recheck before insert only narrows the window. Every transition goes
through the version column, so a write based on a stale read fails with
ConcurrentModificationError instead of silently overwriting.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.sessions import SessionLifecycle, flush_versioned
from services.booking.slots import SlotGenerator
from shared.errors import (
    InvalidStateError,
    RequestExpiredError,
    SessionRequestNotFoundError,
    SlotConflictError,
    ValidationError,
)
from shared.models.models import (
    Session,
    SessionRequest,
    SessionRequestStatus,
    SessionType,
)
from shared.utils.clock import Clock, system_clock
from shared.utils.timeslots import (
    local_today,
    parse_date,
    resolve_timezone,
    time_to_minutes,
    validate_time,
)

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (
    SessionRequestStatus.PENDING_PAYMENT,
    SessionRequestStatus.PENDING_APPROVAL,
)


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError("amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("amount must be greater than zero")
    return value.quantize(Decimal("0.01"))


class SessionRequestStateMachine:

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.slots = SlotGenerator(db, clock)
        self.lifecycle = SessionLifecycle(db, clock)

    # ── Helpers ───────────────────────────────────────────────

    async def _load(self, request_id: UUID) -> SessionRequest:
        result = await self.db.execute(
            select(SessionRequest).where(SessionRequest.id == request_id)
        )
        request = result.scalar_one_or_none()
        if not request:
            raise SessionRequestNotFoundError("Session request not found")
        return request

    def _is_overdue(self, request: SessionRequest) -> bool:
        return (
            request.status == SessionRequestStatus.PENDING_PAYMENT
            and request.expires_at is not None
            and self.clock.now() >= request.expires_at
        )

    async def _expire_if_overdue(self, request: SessionRequest) -> bool:
        """Read-path expiry. Returns True when the request was just expired."""
        if not self._is_overdue(request):
            return False
        request.status = SessionRequestStatus.EXPIRED
        await flush_versioned(self.db, "Session request")
        logger.info(f"Session request {request.id} expired (deadline {request.expires_at})")
        return True

    async def _expire_stale_for_slot(self, specialist_id: UUID, day: str, start_time: str) -> None:
        result = await self.db.execute(
            select(SessionRequest).where(
                SessionRequest.specialist_id == specialist_id,
                SessionRequest.date == day,
                SessionRequest.start_time == start_time,
                SessionRequest.status == SessionRequestStatus.PENDING_PAYMENT,
                SessionRequest.expires_at <= self.clock.now(),
            )
        )
        for stale in result.scalars().all():
            await self._expire_if_overdue(stale)

    # ── Queries ───────────────────────────────────────────────

    async def get(self, request_id: UUID) -> SessionRequest:
        request = await self._load(request_id)
        await self._expire_if_overdue(request)
        return request

    async def list_for_user(
        self, user_id: UUID, status: Optional[SessionRequestStatus] = None
    ) -> List[SessionRequest]:
        result = await self.db.execute(
            select(SessionRequest)
            .where(SessionRequest.user_id == user_id)
            .order_by(SessionRequest.created_at.desc())
        )
        requests = list(result.scalars().all())
        for request in requests:
            await self._expire_if_overdue(request)
        if status:
            requests = [r for r in requests if r.status == status]
        return requests

    async def list_pending_approval(
        self, page: int = 1, page_size: int = 20
    ) -> Tuple[List[SessionRequest], int]:
        base = select(SessionRequest).where(
            SessionRequest.status == SessionRequestStatus.PENDING_APPROVAL
        )
        total = await self.db.scalar(select(func.count()).select_from(base.subquery()))
        result = await self.db.execute(
            base.order_by(SessionRequest.paid_at.asc(), SessionRequest.created_at.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), total or 0

    # ── Transitions ───────────────────────────────────────────

    async def create(
        self,
        user_id: UUID,
        specialist_id: UUID,
        day: str,
        start_time: str,
        end_time: Optional[str] = None,
        amount=None,
        currency: Optional[str] = None,
        session_title: Optional[str] = None,
        session_type: Optional[SessionType] = None,
    ) -> SessionRequest:
        target = parse_date(day)
        validate_time(start_time, "start_time")
        if end_time is not None:
            validate_time(end_time, "end_time")
        value = _parse_amount(settings.DEFAULT_SESSION_AMOUNT if amount is None else amount)
        if user_id == specialist_id:
            raise ValidationError("You cannot book a session with yourself")

        _slot, _break, tz_name = await self.slots.slot_config(specialist_id)
        now = self.clock.now()
        today = local_today(now, tz_name)
        if target < today:
            raise ValidationError("Cannot book a session in the past")

        candidates = await self.slots.candidate_slots(specialist_id, day)
        slot = next((c for c in candidates if c.start_time == start_time), None)
        if slot is None:
            raise ValidationError(f"{start_time} is not an available slot start on {day}")
        if end_time is not None and end_time != slot.end_time:
            raise ValidationError(f"Slot starting at {start_time} ends at {slot.end_time}")
        if target == today:
            local_now = now.astimezone(resolve_timezone(tz_name))
            if time_to_minutes(start_time) <= local_now.hour * 60 + local_now.minute:
                raise ValidationError("This slot has already started")

        await self._expire_stale_for_slot(specialist_id, day, start_time)

        if await self.lifecycle.find_holding_session(specialist_id, day, start_time):
            raise SlotConflictError(f"Slot {day} {start_time} is already booked")
        available = await self.slots.available_slots(specialist_id, day, candidates=candidates)
        if slot not in available:
            raise SlotConflictError(f"Slot {day} {start_time} is no longer available")

        request = SessionRequest(
            specialist_id=specialist_id,
            user_id=user_id,
            date=day,
            start_time=slot.start_time,
            end_time=slot.end_time,
            amount=value,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            status=SessionRequestStatus.PENDING_PAYMENT,
            expires_at=now + timedelta(minutes=settings.PAYMENT_WINDOW_MINUTES),
            session_title=session_title,
            session_type=session_type,
        )
        self.db.add(request)
        try:
            await self.db.flush()
        except IntegrityError:
            # A concurrent request claimed the slot between our recheck and insert
            await self.db.rollback()
            raise SlotConflictError(f"Slot {day} {start_time} was just taken")

        logger.info(
            f"Session request {request.id} created for specialist {specialist_id} "
            f"on {day} {start_time}, pay by {request.expires_at.isoformat()}"
        )
        return request

    async def submit_payment(self, request_id: UUID, screenshot_url: str) -> SessionRequest:
        if not screenshot_url or not screenshot_url.strip():
            raise ValidationError("payment screenshot is required")

        request = await self._load(request_id)
        if await self._expire_if_overdue(request):
            # Persist the expiry even though the caller gets an error
            await self.db.commit()
            raise RequestExpiredError("Payment window has closed; the slot was released")
        if request.status == SessionRequestStatus.EXPIRED:
            raise RequestExpiredError("Payment window has closed; the slot was released")
        if request.status != SessionRequestStatus.PENDING_PAYMENT:
            raise InvalidStateError(
                f"Cannot submit payment for a request in status {request.status.value}"
            )

        request.status = SessionRequestStatus.PENDING_APPROVAL
        request.payment_screenshot_url = screenshot_url
        request.paid_at = self.clock.now()
        await flush_versioned(self.db, "Session request")
        logger.info(f"Payment submitted for session request {request.id}")
        return request

    async def approve(
        self, request_id: UUID, notes: Optional[str] = None
    ) -> Tuple[SessionRequest, Session]:
        request = await self._load(request_id)
        if request.status != SessionRequestStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Cannot approve a request in status {request.status.value}"
            )
        if await self.lifecycle.find_holding_session(
            request.specialist_id, request.date, request.start_time
        ):
            raise SlotConflictError(
                f"Slot {request.date} {request.start_time} is already held by a session"
            )

        request.status = SessionRequestStatus.APPROVED
        request.approved_at = self.clock.now()
        await flush_versioned(self.db, "Session request")

        session = await self.lifecycle.materialize(request, notes)
        logger.info(f"Session request {request.id} approved")
        return request, session

    async def reject(self, request_id: UUID, reason: str) -> SessionRequest:
        if not reason or not reason.strip():
            raise ValidationError("rejection reason is required")
        request = await self._load(request_id)
        if request.status != SessionRequestStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Cannot reject a request in status {request.status.value}"
            )
        request.status = SessionRequestStatus.REJECTED
        request.rejection_reason = reason
        await flush_versioned(self.db, "Session request")
        logger.info(f"Session request {request.id} rejected")
        return request

    async def expire(self, request_id: UUID) -> SessionRequest:
        request = await self._load(request_id)
        if request.status != SessionRequestStatus.PENDING_PAYMENT:
            raise InvalidStateError(
                f"Cannot expire a request in status {request.status.value}"
            )
        if not self._is_overdue(request):
            raise InvalidStateError("Payment window is still open")
        await self._expire_if_overdue(request)
        return request

    async def cancel(self, request_id: UUID) -> SessionRequest:
        request = await self._load(request_id)
        if await self._expire_if_overdue(request):
            await self.db.commit()
            raise RequestExpiredError("Payment window has closed; the slot was already released")
        if request.status == SessionRequestStatus.EXPIRED:
            raise RequestExpiredError("Payment window has closed; the slot was already released")
        if request.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot cancel a request in status {request.status.value}"
            )
        request.status = SessionRequestStatus.CANCELLED
        await flush_versioned(self.db, "Session request")
        logger.info(f"Session request {request.id} cancelled")
        return request
