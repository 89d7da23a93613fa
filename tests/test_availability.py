"""
tests/test_availability.py
Tests for specialist availability: settings, weekly rules and overrides.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.availability import AvailabilityModel
from shared.errors import NotFoundError, ValidationError
from shared.models.models import (
    AvailabilitySettings,
    DayOfWeek,
    OverrideType,
    Session,
    SessionStatus,
    UserRole,
)
from tests.conftest import MONDAY, add_confirmed_session, auth_headers


# ── Settings ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_settings_creates_defaults(db: AsyncSession, clock, specialist_id):
    """First access persists a settings row with the documented defaults."""
    model = AvailabilityModel(db, clock)
    row = await model.get_settings(specialist_id)
    await db.commit()

    assert row.slot_duration_minutes == 60
    assert row.break_minutes == 15
    assert row.timezone == "Asia/Karachi"

    count = await db.scalar(
        select(func.count()).select_from(AvailabilitySettings).where(
            AvailabilitySettings.specialist_id == specialist_id
        )
    )
    assert count == 1

    # Second access returns the same row instead of creating another
    again = await model.get_settings(specialist_id)
    assert again.id == row.id


@pytest.mark.asyncio
async def test_update_settings_validates_bounds(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)

    with pytest.raises(ValidationError):
        await model.update_settings(specialist_id, slot_duration_minutes=10)
    with pytest.raises(ValidationError):
        await model.update_settings(specialist_id, break_minutes=-5)
    with pytest.raises(ValidationError):
        await model.update_settings(specialist_id, timezone="Mars/Olympus_Mons")

    row = await model.update_settings(
        specialist_id, slot_duration_minutes=45, break_minutes=0, timezone="Europe/London"
    )
    assert (row.slot_duration_minutes, row.break_minutes, row.timezone) == (45, 0, "Europe/London")


@pytest.mark.asyncio
async def test_timezone_change_moves_confirmed_sessions(
    db: AsyncSession, session_factory, clock, specialist_id, user_id, other_user_id
):
    model = AvailabilityModel(db, clock)
    await model.get_settings(specialist_id)
    karachi_nine = datetime(2025, 6, 2, 4, 0, tzinfo=timezone.utc)
    confirmed = await add_confirmed_session(db, specialist_id, user_id, karachi_nine)
    cancelled = await add_confirmed_session(
        db, specialist_id, other_user_id, karachi_nine + timedelta(hours=1),
        start_time="10:00", end_time="11:00", status=SessionStatus.CANCELLED,
    )

    await model.update_settings(specialist_id, timezone="Europe/London")
    await db.commit()

    async with session_factory() as other:
        # 09:00 BST
        assert (await other.get(Session, confirmed.id)).starts_at == datetime(
            2025, 6, 2, 8, 0, tzinfo=timezone.utc
        )
        assert (await other.get(Session, cancelled.id)).starts_at == karachi_nine + timedelta(hours=1)


# ── Rules ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_rule_rejects_inverted_window(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    with pytest.raises(ValidationError):
        await model.create_rule(specialist_id, DayOfWeek.MON, "11:00", "09:00")
    with pytest.raises(ValidationError):
        await model.create_rule(specialist_id, DayOfWeek.MON, "09:00", "09:00")


@pytest.mark.asyncio
async def test_create_rule_rejects_malformed_time(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    with pytest.raises(ValidationError):
        await model.create_rule(specialist_id, DayOfWeek.MON, "9:00", "11:00")
    with pytest.raises(ValidationError):
        await model.create_rule(specialist_id, DayOfWeek.MON, "09:00", "24:00")


@pytest.mark.asyncio
async def test_overlapping_active_rule_rejected(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    await model.create_rule(specialist_id, DayOfWeek.MON, "09:00", "12:00")

    with pytest.raises(ValidationError):
        await model.create_rule(specialist_id, DayOfWeek.MON, "11:00", "13:00")

    # Touching windows and other days are fine
    await model.create_rule(specialist_id, DayOfWeek.MON, "12:00", "14:00")
    await model.create_rule(specialist_id, DayOfWeek.TUE, "11:00", "13:00")
    # Inactive rules do not take part in the overlap check
    await model.create_rule(specialist_id, DayOfWeek.MON, "10:00", "11:00", is_active=False)

    rules = await model.get_rules(specialist_id)
    assert len(rules) == 4


@pytest.mark.asyncio
async def test_update_rule_checks_overlap_against_others_only(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    first = await model.create_rule(specialist_id, DayOfWeek.MON, "09:00", "11:00")
    await model.create_rule(specialist_id, DayOfWeek.MON, "13:00", "15:00")

    # Shrinking itself must not clash with its own old window
    updated = await model.update_rule(specialist_id, first.id, end_time="10:00")
    assert updated.end_time == "10:00"

    with pytest.raises(ValidationError):
        await model.update_rule(specialist_id, first.id, end_time="14:00")


@pytest.mark.asyncio
async def test_rule_of_another_specialist_not_found(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    rule = await model.create_rule(specialist_id, DayOfWeek.MON, "09:00", "11:00")

    with pytest.raises(NotFoundError):
        await model.get_rule(uuid.uuid4(), rule.id)
    with pytest.raises(NotFoundError):
        await model.delete_rule(uuid.uuid4(), rule.id)


# ── Overrides ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_override_date_must_not_be_past(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    with pytest.raises(ValidationError):
        await model.create_override(specialist_id, "2025-05-31", OverrideType.OFF)

    # Today in the specialist's zone is allowed
    override = await model.create_override(specialist_id, "2025-06-01", OverrideType.OFF)
    assert override.type == OverrideType.OFF


@pytest.mark.asyncio
async def test_custom_override_requires_window(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    with pytest.raises(ValidationError):
        await model.create_override(specialist_id, MONDAY, OverrideType.CUSTOM, start_time="10:00")
    with pytest.raises(ValidationError):
        await model.create_override(
            specialist_id, MONDAY, OverrideType.CUSTOM, start_time="12:00", end_time="10:00"
        )


@pytest.mark.asyncio
async def test_duplicate_override_rejected(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    await model.create_override(specialist_id, MONDAY, OverrideType.OFF, reason="Holiday")
    with pytest.raises(ValidationError):
        await model.create_override(
            specialist_id, MONDAY, OverrideType.CUSTOM, start_time="10:00", end_time="12:00"
        )


@pytest.mark.asyncio
async def test_off_override_drops_custom_times(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    override = await model.create_override(
        specialist_id, MONDAY, OverrideType.CUSTOM, start_time="10:00", end_time="12:00"
    )
    updated = await model.update_override(specialist_id, override.id, type_=OverrideType.OFF)
    assert updated.start_time is None
    assert updated.end_time is None


@pytest.mark.asyncio
async def test_list_overrides_filters_by_range(db: AsyncSession, clock, specialist_id):
    model = AvailabilityModel(db, clock)
    for day in ("2025-06-02", "2025-06-09", "2025-06-16"):
        await model.create_override(specialist_id, day, OverrideType.OFF)

    overrides = await model.list_overrides(specialist_id, "2025-06-05", "2025-06-30")
    assert [o.date for o in overrides] == ["2025-06-09", "2025-06-16"]


# ── HTTP ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_specialist_manages_rules_over_http(client: AsyncClient, specialist_id):
    headers = auth_headers(specialist_id, UserRole.SPECIALIST)

    response = await client.post(
        "/availability/rules",
        headers=headers,
        json={"day_of_week": "MON", "start_time": "09:00", "end_time": "11:00"},
    )
    assert response.status_code == 201
    rule_id = response.json()["id"]

    response = await client.post(
        "/availability/rules",
        headers=headers,
        json={"day_of_week": "MON", "start_time": "10:00", "end_time": "12:00"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"

    response = await client.get("/availability/rules", headers=headers)
    assert response.status_code == 200
    assert [r["id"] for r in response.json()] == [rule_id]

    response = await client.delete(f"/availability/rules/{rule_id}", headers=headers)
    assert response.status_code == 200

    response = await client.get(f"/availability/rules/{rule_id}", headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_settings_endpoint_returns_defaults(client: AsyncClient, specialist_id):
    response = await client.get(
        "/availability/settings", headers=auth_headers(specialist_id, UserRole.SPECIALIST)
    )
    assert response.status_code == 200
    data = response.json()
    assert data["slot_duration_minutes"] == 60
    assert data["break_minutes"] == 15
    assert data["timezone"] == "Asia/Karachi"


@pytest.mark.asyncio
async def test_plain_user_cannot_manage_availability(client: AsyncClient, user_id):
    response = await client.post(
        "/availability/rules",
        headers=auth_headers(user_id, UserRole.USER),
        json={"day_of_week": "MON", "start_time": "09:00", "end_time": "11:00"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_availability_requires_auth(client: AsyncClient):
    response = await client.get("/availability/rules")
    assert response.status_code == 401
