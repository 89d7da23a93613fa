"""
services/booking/availability.py
Specialist availability: weekly rules, slot settings and per-date overrides.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.errors import NotFoundError, ValidationError
from shared.models.models import (
    AvailabilityOverride,
    AvailabilityRule,
    AvailabilitySettings,
    DayOfWeek,
    OverrideType,
    Session,
    SessionStatus,
)
from shared.utils.clock import Clock, system_clock
from shared.utils.timeslots import (
    TimeRange,
    local_start_utc,
    local_today,
    parse_date,
    resolve_timezone,
    validate_time_range,
)

logger = logging.getLogger(__name__)

MIN_SLOT_DURATION_MINUTES = 15


class AvailabilityModel:
    """Reads and validates a specialist's recurring availability."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    # ── Settings ──────────────────────────────────────────────

    async def get_settings(self, specialist_id: UUID) -> AvailabilitySettings:
        """Return the specialist's settings, persisting the defaults on first access."""
        result = await self.db.execute(
            select(AvailabilitySettings).where(AvailabilitySettings.specialist_id == specialist_id)
        )
        row = result.scalar_one_or_none()
        if row:
            return row

        row = AvailabilitySettings(
            specialist_id=specialist_id,
            slot_duration_minutes=settings.DEFAULT_SLOT_DURATION_MINUTES,
            break_minutes=settings.DEFAULT_BREAK_MINUTES,
            timezone=settings.DEFAULT_TIMEZONE,
        )
        self.db.add(row)
        await self.db.flush()
        logger.info(f"Created default availability settings for specialist {specialist_id}")
        return row

    async def find_settings(self, specialist_id: UUID) -> Optional[AvailabilitySettings]:
        """Read-only lookup; callers that must not write fall back to defaults."""
        result = await self.db.execute(
            select(AvailabilitySettings).where(AvailabilitySettings.specialist_id == specialist_id)
        )
        return result.scalar_one_or_none()

    async def update_settings(
        self,
        specialist_id: UUID,
        slot_duration_minutes: Optional[int] = None,
        break_minutes: Optional[int] = None,
        timezone: Optional[str] = None,
    ) -> AvailabilitySettings:
        row = await self.get_settings(specialist_id)

        if slot_duration_minutes is not None:
            if slot_duration_minutes < MIN_SLOT_DURATION_MINUTES:
                raise ValidationError(
                    f"slot_duration_minutes must be at least {MIN_SLOT_DURATION_MINUTES}"
                )
            row.slot_duration_minutes = slot_duration_minutes
        if break_minutes is not None:
            if break_minutes < 0:
                raise ValidationError("break_minutes must not be negative")
            row.break_minutes = break_minutes
        if timezone is not None and timezone != row.timezone:
            resolve_timezone(timezone)
            row.timezone = timezone
            await self._reanchor_confirmed_sessions(specialist_id, timezone)

        await self.db.flush()
        return row

    async def _reanchor_confirmed_sessions(self, specialist_id: UUID, tz_name: str) -> None:
        """Recompute starts_at of upcoming sessions so reminders follow the new timezone."""
        from services.booking.sessions import flush_versioned

        result = await self.db.execute(
            select(Session).where(
                Session.specialist_id == specialist_id,
                Session.status == SessionStatus.CONFIRMED,
            )
        )
        sessions = result.scalars().all()
        for session in sessions:
            session.starts_at = local_start_utc(session.date, session.start_time, tz_name)
        await flush_versioned(self.db, "Session")
        if sessions:
            logger.info(
                f"Re-anchored {len(sessions)} confirmed sessions of specialist "
                f"{specialist_id} to {tz_name}"
            )

    # ── Rules ─────────────────────────────────────────────────

    async def get_rules(self, specialist_id: UUID) -> List[AvailabilityRule]:
        result = await self.db.execute(
            select(AvailabilityRule)
            .where(AvailabilityRule.specialist_id == specialist_id)
            .order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_time)
        )
        return list(result.scalars().all())

    async def get_active_rules_for_day(
        self, specialist_id: UUID, day: DayOfWeek
    ) -> List[AvailabilityRule]:
        result = await self.db.execute(
            select(AvailabilityRule)
            .where(
                AvailabilityRule.specialist_id == specialist_id,
                AvailabilityRule.day_of_week == day,
                AvailabilityRule.is_active == True,  # noqa: E712
            )
            .order_by(AvailabilityRule.start_time)
        )
        return list(result.scalars().all())

    async def get_rule(self, specialist_id: UUID, rule_id: UUID) -> AvailabilityRule:
        result = await self.db.execute(
            select(AvailabilityRule).where(
                AvailabilityRule.id == rule_id,
                AvailabilityRule.specialist_id == specialist_id,
            )
        )
        rule = result.scalar_one_or_none()
        if not rule:
            raise NotFoundError("Availability rule not found")
        return rule

    async def _check_overlapping_rules(
        self,
        specialist_id: UUID,
        day: DayOfWeek,
        start_time: str,
        end_time: str,
        exclude_rule_id: Optional[UUID] = None,
    ) -> None:
        candidate = TimeRange.from_strings(start_time, end_time)
        for rule in await self.get_active_rules_for_day(specialist_id, day):
            if rule.id == exclude_rule_id:
                continue
            if candidate.overlaps(TimeRange.from_strings(rule.start_time, rule.end_time)):
                raise ValidationError(
                    f"Overlapping availability rule exists for {day.value} "
                    f"between {rule.start_time} and {rule.end_time}"
                )

    async def create_rule(
        self,
        specialist_id: UUID,
        day_of_week: DayOfWeek,
        start_time: str,
        end_time: str,
        is_active: bool = True,
    ) -> AvailabilityRule:
        validate_time_range(start_time, end_time)
        if is_active:
            await self._check_overlapping_rules(specialist_id, day_of_week, start_time, end_time)

        # Make sure slot settings exist before the first rule is used
        await self.get_settings(specialist_id)

        rule = AvailabilityRule(
            specialist_id=specialist_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            is_active=is_active,
        )
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def update_rule(
        self,
        specialist_id: UUID,
        rule_id: UUID,
        day_of_week: Optional[DayOfWeek] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> AvailabilityRule:
        rule = await self.get_rule(specialist_id, rule_id)

        new_day = day_of_week or rule.day_of_week
        new_start = start_time or rule.start_time
        new_end = end_time or rule.end_time
        new_active = rule.is_active if is_active is None else is_active

        validate_time_range(new_start, new_end)
        if new_active:
            await self._check_overlapping_rules(
                specialist_id, new_day, new_start, new_end, exclude_rule_id=rule.id
            )

        rule.day_of_week = new_day
        rule.start_time = new_start
        rule.end_time = new_end
        rule.is_active = new_active
        await self.db.flush()
        return rule

    async def delete_rule(self, specialist_id: UUID, rule_id: UUID) -> None:
        rule = await self.get_rule(specialist_id, rule_id)
        await self.db.delete(rule)
        await self.db.flush()

    # ── Overrides ─────────────────────────────────────────────

    async def get_override_for_date(
        self, specialist_id: UUID, day: str
    ) -> Optional[AvailabilityOverride]:
        result = await self.db.execute(
            select(AvailabilityOverride).where(
                AvailabilityOverride.specialist_id == specialist_id,
                AvailabilityOverride.date == day,
            )
        )
        return result.scalar_one_or_none()

    async def list_overrides(
        self,
        specialist_id: UUID,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> List[AvailabilityOverride]:
        query = select(AvailabilityOverride).where(
            AvailabilityOverride.specialist_id == specialist_id
        )
        # ISO dates order lexically
        if start_date:
            parse_date(start_date)
            query = query.where(AvailabilityOverride.date >= start_date)
        if end_date:
            parse_date(end_date)
            query = query.where(AvailabilityOverride.date <= end_date)
        result = await self.db.execute(query.order_by(AvailabilityOverride.date))
        return list(result.scalars().all())

    async def get_override(self, specialist_id: UUID, override_id: UUID) -> AvailabilityOverride:
        result = await self.db.execute(
            select(AvailabilityOverride).where(
                AvailabilityOverride.id == override_id,
                AvailabilityOverride.specialist_id == specialist_id,
            )
        )
        override = result.scalar_one_or_none()
        if not override:
            raise NotFoundError("Availability override not found")
        return override

    async def _validate_override(
        self,
        specialist_id: UUID,
        day: str,
        type_: OverrideType,
        start_time: Optional[str],
        end_time: Optional[str],
    ) -> None:
        tz_settings = await self.get_settings(specialist_id)
        if parse_date(day) < local_today(self.clock.now(), tz_settings.timezone):
            raise ValidationError("Override date must be today or in the future")
        if type_ == OverrideType.CUSTOM:
            if not start_time or not end_time:
                raise ValidationError("start_time and end_time are required for CUSTOM type")
            validate_time_range(start_time, end_time)

    async def create_override(
        self,
        specialist_id: UUID,
        day: str,
        type_: OverrideType,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AvailabilityOverride:
        await self._validate_override(specialist_id, day, type_, start_time, end_time)
        if await self.get_override_for_date(specialist_id, day):
            raise ValidationError(f"Override already exists for date {day}. Use update endpoint.")

        override = AvailabilityOverride(
            specialist_id=specialist_id,
            date=day,
            type=type_,
            start_time=start_time if type_ == OverrideType.CUSTOM else None,
            end_time=end_time if type_ == OverrideType.CUSTOM else None,
            reason=reason,
        )
        self.db.add(override)
        await self.db.flush()
        return override

    async def update_override(
        self,
        specialist_id: UUID,
        override_id: UUID,
        day: Optional[str] = None,
        type_: Optional[OverrideType] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AvailabilityOverride:
        override = await self.get_override(specialist_id, override_id)

        new_day = day or override.date
        new_type = type_ or override.type
        new_start = start_time or override.start_time
        new_end = end_time or override.end_time
        await self._validate_override(specialist_id, new_day, new_type, new_start, new_end)

        if new_day != override.date:
            clash = await self.get_override_for_date(specialist_id, new_day)
            if clash:
                raise ValidationError(f"Override already exists for date {new_day}")

        override.date = new_day
        override.type = new_type
        override.start_time = new_start if new_type == OverrideType.CUSTOM else None
        override.end_time = new_end if new_type == OverrideType.CUSTOM else None
        if reason is not None:
            override.reason = reason
        await self.db.flush()
        return override

    async def delete_override(self, specialist_id: UUID, override_id: UUID) -> None:
        override = await self.get_override(specialist_id, override_id)
        await self.db.delete(override)
        await self.db.flush()
