"""
tests/test_tasks.py
Celery tasks run eagerly against a synchronous SQLite session.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from firebase_admin import messaging
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config.database import Base
from shared.models.models import (
    DeviceToken,
    Notification,
    NotificationType,
    Session,
    SessionRequest,
    SessionRequestStatus,
    SessionStatus,
)
from tasks.booking_tasks import (
    expire_overdue_requests,
    expire_stale_session_requests,
    send_session_approved,
    send_session_request_rejected,
)
from tests.conftest import MONDAY, NOW


@pytest.fixture
def sync_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'tasks.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


def _request(specialist_id, user_id, start_time, status, expires_at, **kwargs) -> SessionRequest:
    return SessionRequest(
        specialist_id=specialist_id,
        user_id=user_id,
        date=MONDAY,
        start_time=start_time,
        end_time=f"{int(start_time[:2]) + 1:02d}:00",
        amount=Decimal("1000.00"),
        currency="PKR",
        status=status,
        expires_at=expires_at,
        **kwargs,
    )


def test_sweeper_expires_only_overdue_unpaid_requests(sync_factory):
    specialist_id, user_id = uuid.uuid4(), uuid.uuid4()
    with sync_factory() as db:
        overdue = _request(
            specialist_id, user_id, "09:00",
            SessionRequestStatus.PENDING_PAYMENT, NOW - timedelta(minutes=1),
        )
        still_open = _request(
            specialist_id, user_id, "10:00",
            SessionRequestStatus.PENDING_PAYMENT, NOW + timedelta(minutes=1),
        )
        paid = _request(
            specialist_id, user_id, "11:00",
            SessionRequestStatus.PENDING_APPROVAL, NOW - timedelta(minutes=1),
        )
        db.add_all([overdue, still_open, paid])
        db.commit()
        ids = {"overdue": overdue.id, "still_open": still_open.id, "paid": paid.id}

    with sync_factory() as db:
        assert expire_overdue_requests(db, now=NOW) == 1

    with sync_factory() as db:
        rows = {r.id: r for r in db.execute(select(SessionRequest)).scalars()}
        assert rows[ids["overdue"]].status == SessionRequestStatus.EXPIRED
        assert rows[ids["overdue"]].version == 2
        assert rows[ids["still_open"]].status == SessionRequestStatus.PENDING_PAYMENT
        assert rows[ids["paid"]].status == SessionRequestStatus.PENDING_APPROVAL


def test_sweeper_task_uses_sync_session(sync_factory, monkeypatch):
    with sync_factory() as db:
        db.add(_request(
            uuid.uuid4(), uuid.uuid4(), "09:00",
            SessionRequestStatus.PENDING_PAYMENT, NOW - timedelta(days=1),
        ))
        db.commit()

    monkeypatch.setattr("tasks.booking_tasks.get_sync_session", sync_factory)
    assert expire_stale_session_requests() == 1
    assert expire_stale_session_requests() == 0


def test_send_session_approved_notifies_both_parties(sync_factory, monkeypatch):
    specialist_id, user_id = uuid.uuid4(), uuid.uuid4()
    with sync_factory() as db:
        request = _request(
            specialist_id, user_id, "09:00", SessionRequestStatus.APPROVED, None
        )
        db.add(request)
        db.flush()
        session = Session(
            specialist_id=specialist_id,
            user_id=user_id,
            session_request_id=request.id,
            date=MONDAY,
            start_time="09:00",
            end_time="10:00",
            starts_at=NOW + timedelta(days=1),
            amount=Decimal("1000.00"),
            currency="PKR",
            status=SessionStatus.CONFIRMED,
        )
        db.add(session)
        db.commit()
        request_id, session_id = str(request.id), str(session.id)

    monkeypatch.setattr("tasks.booking_tasks.get_sync_session", sync_factory)
    send_session_approved(request_id, session_id)

    with sync_factory() as db:
        rows = db.execute(select(Notification)).scalars().all()
        by_user = {n.user_id: n for n in rows}
        assert by_user[user_id].type == NotificationType.SESSION_APPROVED
        assert by_user[specialist_id].type == NotificationType.SESSION_BOOKED
        assert all(n.data["session_id"] == session_id for n in rows)
        assert all(n.sent_push is False for n in rows)


def test_send_session_request_rejected_includes_reason(sync_factory, monkeypatch):
    user_id = uuid.uuid4()
    with sync_factory() as db:
        request = _request(
            uuid.uuid4(), user_id, "09:00", SessionRequestStatus.REJECTED, None,
            rejection_reason="Amount does not match",
        )
        db.add(request)
        db.commit()
        request_id = str(request.id)

    monkeypatch.setattr("tasks.booking_tasks.get_sync_session", sync_factory)
    send_session_request_rejected(request_id)

    with sync_factory() as db:
        notification = db.execute(select(Notification)).scalar_one()
        assert notification.user_id == user_id
        assert notification.type == NotificationType.SESSION_REQUEST_REJECTED
        assert "Amount does not match" in notification.body


def test_missing_session_is_logged_not_retried(sync_factory, monkeypatch):
    monkeypatch.setattr("tasks.booking_tasks.get_sync_session", sync_factory)
    assert send_session_approved(str(uuid.uuid4()), str(uuid.uuid4())) is None

    with sync_factory() as db:
        assert db.execute(select(Notification)).scalars().all() == []


def test_in_app_row_is_committed_before_push(sync_factory, monkeypatch):
    user_id = uuid.uuid4()
    with sync_factory() as db:
        request = _request(
            uuid.uuid4(), user_id, "09:00", SessionRequestStatus.REJECTED, None,
            rejection_reason="Screenshot is unreadable",
        )
        db.add(request)
        db.add(DeviceToken(user_id=user_id, token="live-token"))
        db.add(DeviceToken(user_id=user_id, token="dead-token"))
        db.commit()
        request_id = str(request.id)

    rows_seen_by_push = []

    def fake_send_push(token, title, body, data=None):
        with sync_factory() as other:
            rows_seen_by_push.append(len(other.execute(select(Notification)).scalars().all()))
        if token == "dead-token":
            raise messaging.UnregisteredError("Requested entity was not found.")
        return "projects/test/messages/1"

    monkeypatch.setattr("tasks.booking_tasks.get_sync_session", sync_factory)
    monkeypatch.setattr("services.notification.fcm.is_configured", lambda: True)
    monkeypatch.setattr("services.notification.fcm.send_push", fake_send_push)
    send_session_request_rejected(request_id)

    assert rows_seen_by_push == [1, 1]
    with sync_factory() as db:
        assert db.execute(select(Notification)).scalar_one().sent_push is True
        assert db.execute(select(DeviceToken.token)).scalars().all() == ["live-token"]
