"""
services/session/router.py
Confirmed sessions: listing, detail, status transitions and file attachment.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.sessions import SessionLifecycle
from shared.middleware.auth import TokenData, get_token_data
from shared.models.models import Session, SessionStatus
from shared.schemas.schemas import SessionFileUpload, SessionResponse, SessionStatusUpdate
from shared.utils.clock import Clock, get_clock

router = APIRouter(prefix="/sessions", tags=["Sessions"])


# ── Helpers ───────────────────────────────────────────────────

def _ensure_participant(session: Session, token: TokenData) -> None:
    if token.is_admin or token.user_id in (session.user_id, session.specialist_id):
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your session")


def _ensure_can_manage(session: Session, token: TokenData, target: SessionStatus) -> None:
    """Clients may only cancel; completion and no-show are the specialist's call."""
    _ensure_participant(session, token)
    if token.is_admin or token.user_id == session.specialist_id:
        return
    if target != SessionStatus.CANCELLED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the specialist can change this session's status",
        )


# ── Routes ────────────────────────────────────────────────────

@router.get("", response_model=List[SessionResponse])
async def list_my_sessions(
    date: Optional[str] = Query(None, description="YYYY-MM-DD"),
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Sessions where the caller is the client or the specialist."""
    sessions = await SessionLifecycle(db, clock).list_for_participant(
        token.user_id, date, status_filter
    )
    return [SessionResponse.model_validate(s) for s in sessions]


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: UUID,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    session = await SessionLifecycle(db, clock).get(session_id)
    _ensure_participant(session, token)
    return SessionResponse.model_validate(session)


@router.put("/{session_id}/status", response_model=SessionResponse)
async def update_session_status(
    session_id: UUID,
    payload: SessionStatusUpdate,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    lifecycle = SessionLifecycle(db, clock)
    target = SessionStatus(payload.status)
    _ensure_can_manage(await lifecycle.get(session_id), token, target)
    session = await lifecycle.update_status(
        session_id,
        target,
        notes=payload.notes,
        cancellation_reason=payload.cancellation_reason,
    )
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/upload-file", response_model=SessionResponse)
async def upload_session_file(
    session_id: UUID,
    payload: SessionFileUpload,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Attach a file reference (notes, prescription, recording link) to the session."""
    lifecycle = SessionLifecycle(db, clock)
    session = await lifecycle.get(session_id)
    _ensure_participant(session, token)
    if not token.is_admin and token.user_id != session.specialist_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the specialist can upload session files",
        )
    session = await lifecycle.attach_file(session_id, payload.session_file)
    return SessionResponse.model_validate(session)
