"""
tasks/booking_tasks.py
Celery tasks for the session request lifecycle:
- Sweeper that expires requests whose payment window closed
- Push + in-app notifications when a request is approved or rejected

Usage from a route (after the transaction committed):
    from tasks.booking_tasks import send_session_approved
    send_session_approved.delay(str(request.id), str(session.id))
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session as DbSession

from config.database import get_sync_session
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Sweeper ────────────────────────────────────────────────────────────────────

def expire_overdue_requests(db: DbSession, now: Optional[datetime] = None) -> int:
    """
    Move every PENDING_PAYMENT request past its deadline to EXPIRED.
    Bumps the version column so in-flight transitions based on the old row
    fail their optimistic check.
    """
    from shared.models.models import SessionRequest, SessionRequestStatus

    now = now or datetime.now(timezone.utc)
    result = db.execute(
        update(SessionRequest)
        .where(
            SessionRequest.status == SessionRequestStatus.PENDING_PAYMENT,
            SessionRequest.expires_at <= now,
        )
        .values(
            status=SessionRequestStatus.EXPIRED,
            version=SessionRequest.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


@celery_app.task
def expire_stale_session_requests():
    """Beat task: runs every EXPIRY_SWEEP_INTERVAL_SECONDS."""
    db = get_sync_session()
    try:
        expired = expire_overdue_requests(db)
        if expired:
            logger.info(f"Expired {expired} unpaid session requests")
        return expired
    except Exception as e:
        db.rollback()
        logger.exception(f"expire_stale_session_requests failed: {e}")
        raise
    finally:
        db.close()


# ── Delivery ───────────────────────────────────────────────────────────────────

def _store(db: DbSession, user_id, title: str, body: str, type_, data: dict):
    """Queue the in-app notification row; committed by the caller before any push."""
    from shared.models.models import Notification

    notification = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        body=body,
        data={"type": type_.value, **data},
    )
    db.add(notification)
    return notification


def _push_stored(db: DbSession, notifications: list) -> None:
    """
    Push already-committed in-app notifications to their users' devices.
    Runs outside the task's retry path so a retry never re-pushes.
    """
    from services.notification.fcm import is_configured, push_to_tokens
    from shared.models.models import DeviceToken

    if not is_configured():
        return

    for notification in notifications:
        tokens = db.execute(
            select(DeviceToken.token).where(DeviceToken.user_id == notification.user_id)
        ).scalars().all()
        if not tokens:
            continue
        delivered, stale, _ = push_to_tokens(
            list(tokens), notification.title, notification.body, notification.data
        )
        if stale:
            db.execute(delete(DeviceToken).where(DeviceToken.token.in_(stale)))
        notification.sent_push = delivered > 0

    try:
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Push bookkeeping failed: {e}")


# ── Booking Notification Tasks ─────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3)
def send_session_approved(self, request_id: str, session_id: str):
    """Tell the client their session is confirmed and the specialist it is booked."""
    from shared.models.models import NotificationType, Session

    db = get_sync_session()
    try:
        try:
            session = db.execute(
                select(Session).where(Session.id == uuid.UUID(session_id))
            ).scalar_one_or_none()
            if not session:
                logger.error(f"send_session_approved: session {session_id} not found")
                return

            data = {
                "session_id": str(session.id),
                "request_id": request_id,
                "date": session.date,
                "start_time": session.start_time,
            }
            notifications = [
                _store(
                    db,
                    session.user_id,
                    "Session Approved",
                    f"Your session on {session.date} at {session.start_time} is confirmed.",
                    NotificationType.SESSION_APPROVED,
                    data,
                ),
                _store(
                    db,
                    session.specialist_id,
                    "New Session Booked",
                    f"A client booked a session with you on {session.date} at {session.start_time}.",
                    NotificationType.SESSION_BOOKED,
                    data,
                ),
            ]
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"send_session_approved failed: {e}")
            raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

        _push_stored(db, notifications)
    finally:
        db.close()


@celery_app.task(bind=True, max_retries=3)
def send_session_request_rejected(self, request_id: str):
    """Tell the client their payment was not accepted."""
    from shared.models.models import NotificationType, SessionRequest

    db = get_sync_session()
    try:
        try:
            request = db.execute(
                select(SessionRequest).where(SessionRequest.id == uuid.UUID(request_id))
            ).scalar_one_or_none()
            if not request:
                logger.error(f"send_session_request_rejected: request {request_id} not found")
                return

            reason = f" Reason: {request.rejection_reason}" if request.rejection_reason else ""
            notification = _store(
                db,
                request.user_id,
                "Session Request Rejected",
                f"Your session request for {request.date} at {request.start_time} "
                f"was not approved.{reason}",
                NotificationType.SESSION_REQUEST_REJECTED,
                {
                    "request_id": str(request.id),
                    "date": request.date,
                    "start_time": request.start_time,
                },
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.exception(f"send_session_request_rejected failed: {e}")
            raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

        _push_stored(db, [notification])
    finally:
        db.close()
