"""
services/booking/slots.py
Expands weekly availability into bookable slots for one specialist and date.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.availability import AvailabilityModel
from shared.errors import NoAvailabilityError
from shared.models.models import (
    DayOfWeek,
    OverrideType,
    Session,
    SessionRequest,
    SessionRequestStatus,
    SLOT_HOLDING_SESSION_STATUSES,
)
from shared.utils.clock import Clock, system_clock
from shared.utils.timeslots import (
    TimeRange,
    day_of_week,
    local_today,
    parse_date,
    resolve_timezone,
    time_to_minutes,
)

logger = logging.getLogger(__name__)


def expand_window(start: int, end: int, slot_minutes: int, break_minutes: int) -> List[TimeRange]:
    """Walk [start, end) in steps of slot + break, keeping slots that fit entirely."""
    slots = []
    step = slot_minutes + break_minutes
    t = start
    while t + slot_minutes <= end:
        slots.append(TimeRange(t, t + slot_minutes))
        t += step
    return slots


class SlotGenerator:
    """
    Read-only slot computation. Never writes, so it is safe to call
    concurrently and twice in a row yields the same answer.
    """

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.availability = AvailabilityModel(db, clock)

    async def slot_config(self, specialist_id: UUID):
        row = await self.availability.find_settings(specialist_id)
        if row:
            return row.slot_duration_minutes, row.break_minutes, row.timezone
        return (
            settings.DEFAULT_SLOT_DURATION_MINUTES,
            settings.DEFAULT_BREAK_MINUTES,
            settings.DEFAULT_TIMEZONE,
        )

    async def candidate_slots(self, specialist_id: UUID, day: str) -> List[TimeRange]:
        """
        Every slot the specialist's availability yields for the date, before
        subtracting bookings. Raises NoAvailabilityError when no active rule
        covers the weekday and no CUSTOM override replaces it.
        """
        target = parse_date(day)
        slot_minutes, break_minutes, _tz = await self.slot_config(specialist_id)

        override = await self.availability.get_override_for_date(specialist_id, day)
        if override and override.type == OverrideType.OFF:
            return []
        if override and override.type == OverrideType.CUSTOM:
            return expand_window(
                time_to_minutes(override.start_time),
                time_to_minutes(override.end_time),
                slot_minutes,
                break_minutes,
            )

        weekday = DayOfWeek(day_of_week(target))
        rules = await self.availability.get_active_rules_for_day(specialist_id, weekday)
        if not rules:
            raise NoAvailabilityError(f"Specialist has no availability on {weekday.value}")

        # Overlapping rules each produce their own slots; they are not merged
        candidates: List[TimeRange] = []
        for rule in rules:
            candidates.extend(
                expand_window(
                    time_to_minutes(rule.start_time),
                    time_to_minutes(rule.end_time),
                    slot_minutes,
                    break_minutes,
                )
            )
        return sorted(candidates)

    async def _occupied_ranges(self, specialist_id: UUID, day: str) -> List[TimeRange]:
        now = self.clock.now()

        sessions = await self.db.execute(
            select(Session.start_time, Session.end_time).where(
                Session.specialist_id == specialist_id,
                Session.date == day,
                Session.status.in_(SLOT_HOLDING_SESSION_STATUSES),
            )
        )
        requests = await self.db.execute(
            select(SessionRequest.start_time, SessionRequest.end_time).where(
                SessionRequest.specialist_id == specialist_id,
                SessionRequest.date == day,
                or_(
                    SessionRequest.status == SessionRequestStatus.PENDING_APPROVAL,
                    and_(
                        SessionRequest.status == SessionRequestStatus.PENDING_PAYMENT,
                        SessionRequest.expires_at > now,
                    ),
                ),
            )
        )
        return [
            TimeRange.from_strings(start, end)
            for start, end in list(sessions.all()) + list(requests.all())
        ]

    async def available_slots(
        self, specialist_id: UUID, day: str, candidates: Optional[List[TimeRange]] = None
    ) -> List[TimeRange]:
        target = parse_date(day)
        _slot, _break, tz_name = await self.slot_config(specialist_id)

        now = self.clock.now()
        today = local_today(now, tz_name)
        if target < today:
            return []

        if candidates is None:
            candidates = await self.candidate_slots(specialist_id, day)
        if not candidates:
            return []

        occupied = await self._occupied_ranges(specialist_id, day)
        free = [slot for slot in candidates if not any(slot.overlaps(o) for o in occupied)]

        if target == today:
            local_now = now.astimezone(resolve_timezone(tz_name))
            minute_of_day = local_now.hour * 60 + local_now.minute
            free = [slot for slot in free if slot.start > minute_of_day]

        return sorted(free)

