"""
services/booking/sessions.py
Confirmed sessions: materialization from an approved request and the
post-confirmation transitions.
States: CONFIRMED → COMPLETED | CANCELLED | NO_SHOW
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from config.settings import settings
from services.booking.availability import AvailabilityModel
from shared.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    SessionNotFoundError,
    SlotConflictError,
    ValidationError,
)
from shared.models.models import (
    Session,
    SessionRequest,
    SessionStatus,
    SLOT_HOLDING_SESSION_STATUSES,
)
from shared.utils.clock import Clock, system_clock
from shared.utils.timeslots import local_start_utc, parse_date

logger = logging.getLogger(__name__)

# Files can be attached once the session is confirmed, and after it ran
FILE_ATTACHABLE_STATUSES = (SessionStatus.CONFIRMED, SessionStatus.COMPLETED)


async def flush_versioned(db: AsyncSession, entity: str) -> None:
    """Flush pending changes, translating a lost optimistic-lock race."""
    try:
        await db.flush()
    except StaleDataError:
        await db.rollback()
        raise ConcurrentModificationError(
            f"{entity} was modified by another request. Reload and retry."
        )


class SessionLifecycle:

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    # ── Queries ───────────────────────────────────────────────

    async def get(self, session_id: UUID) -> Session:
        result = await self.db.execute(select(Session).where(Session.id == session_id))
        session = result.scalar_one_or_none()
        if not session:
            raise SessionNotFoundError("Session not found")
        return session

    async def find_holding_session(
        self, specialist_id: UUID, day: str, start_time: str
    ) -> Optional[Session]:
        result = await self.db.execute(
            select(Session).where(
                Session.specialist_id == specialist_id,
                Session.date == day,
                Session.start_time == start_time,
                Session.status.in_(SLOT_HOLDING_SESSION_STATUSES),
            )
        )
        return result.scalars().first()

    async def list_for_participant(
        self,
        user_id: UUID,
        day: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> List[Session]:
        """Sessions where the caller is either the client or the specialist."""
        query = select(Session).where(
            or_(Session.user_id == user_id, Session.specialist_id == user_id)
        )
        if day:
            parse_date(day)
            query = query.where(Session.date == day)
        if status:
            query = query.where(Session.status == status)
        result = await self.db.execute(
            query.order_by(Session.date.desc(), Session.start_time.desc())
        )
        return list(result.scalars().all())

    # ── Materialization ───────────────────────────────────────

    async def materialize(self, request: SessionRequest, notes: Optional[str] = None) -> Session:
        """
        Create the CONFIRMED session for an approved request. The unique index
        on session_request_id and the slot index make this happen at most once.
        """
        tz_settings = await AvailabilityModel(self.db, self.clock).find_settings(
            request.specialist_id
        )
        tz_name = tz_settings.timezone if tz_settings else settings.DEFAULT_TIMEZONE

        session = Session(
            specialist_id=request.specialist_id,
            user_id=request.user_id,
            session_request_id=request.id,
            date=request.date,
            start_time=request.start_time,
            end_time=request.end_time,
            starts_at=local_start_utc(request.date, request.start_time, tz_name),
            amount=request.amount,
            currency=request.currency,
            status=SessionStatus.CONFIRMED,
            notes=notes,
            session_title=request.session_title,
            session_type=request.session_type,
        )
        self.db.add(session)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise SlotConflictError(
                f"Slot {request.date} {request.start_time} is already held by a session"
            )

        logger.info(f"Session {session.id} materialized from request {request.id}")
        return session

    # ── Transitions ───────────────────────────────────────────

    async def _load_confirmed(self, session_id: UUID, action: str) -> Session:
        session = await self.get(session_id)
        if session.status != SessionStatus.CONFIRMED:
            raise InvalidStateError(
                f"Cannot {action} a session in status {session.status.value}"
            )
        return session

    async def complete(self, session_id: UUID, notes: Optional[str] = None) -> Session:
        session = await self._load_confirmed(session_id, "complete")
        session.status = SessionStatus.COMPLETED
        session.completed_at = self.clock.now()
        if notes is not None:
            session.notes = notes
        await flush_versioned(self.db, "Session")
        return session

    async def cancel(self, session_id: UUID, reason: Optional[str] = None) -> Session:
        session = await self._load_confirmed(session_id, "cancel")
        session.status = SessionStatus.CANCELLED
        session.cancelled_at = self.clock.now()
        session.cancellation_reason = reason
        await flush_versioned(self.db, "Session")
        logger.info(f"Session {session.id} cancelled")
        return session

    async def mark_no_show(self, session_id: UUID) -> Session:
        session = await self._load_confirmed(session_id, "mark as no-show")
        session.status = SessionStatus.NO_SHOW
        await flush_versioned(self.db, "Session")
        return session

    async def attach_file(self, session_id: UUID, file_ref: str) -> Session:
        if not file_ref or not file_ref.strip():
            raise ValidationError("file reference is required")
        session = await self.get(session_id)
        if session.status not in FILE_ATTACHABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot attach a file to a session in status {session.status.value}"
            )
        session.session_file = file_ref
        await flush_versioned(self.db, "Session")
        return session

    async def update_status(
        self,
        session_id: UUID,
        status: SessionStatus,
        notes: Optional[str] = None,
        cancellation_reason: Optional[str] = None,
    ) -> Session:
        if status == SessionStatus.COMPLETED:
            return await self.complete(session_id, notes)
        if status == SessionStatus.CANCELLED:
            return await self.cancel(session_id, cancellation_reason)
        if status == SessionStatus.NO_SHOW:
            return await self.mark_no_show(session_id)
        raise InvalidStateError(f"Cannot move a session to {SessionStatus(status).value}")
