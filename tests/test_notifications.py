"""
tests/test_notifications.py
Tests for device token registration and the in-app notification inbox.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import DeviceToken, Notification, NotificationType
from tests.conftest import auth_headers


def _notification(user_id, title="Session Reminder", is_read=False) -> Notification:
    return Notification(
        id=uuid.uuid4(),
        user_id=user_id,
        type=NotificationType.BOOKING_REMINDER,
        title=title,
        body="Your session is tomorrow at 09:00.",
        data={"session_id": str(uuid.uuid4())},
        is_read=is_read,
    )


@pytest.mark.asyncio
async def test_register_device_token(client: AsyncClient, db: AsyncSession, user_id):
    response = await client.put(
        "/notifications/device-token",
        headers=auth_headers(user_id),
        json={"token": "fcm-token-1", "platform": "android"},
    )
    assert response.status_code == 200

    rows = (await db.execute(select(DeviceToken))).scalars().all()
    assert [(r.user_id, r.token, r.platform) for r in rows] == [(user_id, "fcm-token-1", "android")]


@pytest.mark.asyncio
async def test_reregistered_token_moves_to_new_user(
    client: AsyncClient, db: AsyncSession, user_id, other_user_id
):
    """A handed-down device notifies whoever registered it last."""
    for owner in (user_id, other_user_id):
        response = await client.put(
            "/notifications/device-token",
            headers=auth_headers(owner),
            json={"token": "shared-device", "platform": "ios"},
        )
        assert response.status_code == 200

    rows = (await db.execute(select(DeviceToken))).scalars().all()
    assert [r.user_id for r in rows] == [other_user_id]


@pytest.mark.asyncio
async def test_device_token_platform_is_validated(client: AsyncClient, user_id):
    response = await client.put(
        "/notifications/device-token",
        headers=auth_headers(user_id),
        json={"token": "fcm-token-1", "platform": "symbian"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_remove_device_token_only_own(
    client: AsyncClient, db: AsyncSession, user_id, other_user_id
):
    db.add(DeviceToken(user_id=user_id, token="mine"))
    await db.commit()

    response = await client.request(
        "DELETE",
        "/notifications/device-token",
        headers=auth_headers(other_user_id),
        json={"token": "mine"},
    )
    assert response.status_code == 200
    assert len((await db.execute(select(DeviceToken))).scalars().all()) == 1

    response = await client.request(
        "DELETE",
        "/notifications/device-token",
        headers=auth_headers(user_id),
        json={"token": "mine"},
    )
    assert response.status_code == 200
    assert (await db.execute(select(DeviceToken))).scalars().all() == []


@pytest.mark.asyncio
async def test_inbox_lists_own_notifications(
    client: AsyncClient, db: AsyncSession, user_id, other_user_id
):
    mine = _notification(user_id)
    db.add(mine)
    db.add(_notification(other_user_id, title="Not yours"))
    await db.commit()

    response = await client.get("/notifications", headers=auth_headers(user_id))
    assert response.status_code == 200
    data = response.json()
    assert [n["id"] for n in data] == [str(mine.id)]
    assert data[0]["type"] == "BOOKING_REMINDER"
    assert "session_id" in data[0]["data"]


@pytest.mark.asyncio
async def test_unread_count_and_read_all(client: AsyncClient, db: AsyncSession, user_id):
    for i in range(3):
        db.add(_notification(user_id, title=f"Reminder {i}"))
    db.add(_notification(user_id, title="Old", is_read=True))
    await db.commit()

    response = await client.get("/notifications/unread-count", headers=auth_headers(user_id))
    assert response.json()["unread_count"] == 3

    response = await client.get(
        "/notifications", headers=auth_headers(user_id), params={"unread_only": True}
    )
    assert len(response.json()) == 3

    response = await client.post("/notifications/read-all", headers=auth_headers(user_id))
    assert response.status_code == 200

    response = await client.get("/notifications/unread-count", headers=auth_headers(user_id))
    assert response.json()["unread_count"] == 0


@pytest.mark.asyncio
async def test_mark_single_notification_read(client: AsyncClient, db: AsyncSession, user_id):
    notification = _notification(user_id)
    db.add(notification)
    await db.commit()

    response = await client.post(
        f"/notifications/{notification.id}/read", headers=auth_headers(user_id)
    )
    assert response.status_code == 200

    response = await client.get("/notifications/unread-count", headers=auth_headers(user_id))
    assert response.json()["unread_count"] == 0


@pytest.mark.asyncio
async def test_cannot_read_other_users_notification(
    client: AsyncClient, db: AsyncSession, user_id, other_user_id
):
    notification = _notification(other_user_id)
    db.add(notification)
    await db.commit()

    response = await client.post(
        f"/notifications/{notification.id}/read", headers=auth_headers(user_id)
    )
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_notifications_requires_auth(client: AsyncClient):
    response = await client.get("/notifications")
    assert response.status_code == 401
