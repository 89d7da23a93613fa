"""
services/reminder/scheduler.py
Continuously running reminder scans.

Three independent timers look for sessions and requests entering a lead-time
window and send exactly one reminder per window:
    24h  every 30 min   sessions starting in now+24h ± 5 min   user + specialist
    1h   every 15 min   sessions starting in now+1h ± 5 min    user + specialist
    pay  every 2 min    requests expiring in now+5 min ± 2 min requester only

Scans only read Session / SessionRequest rows. A window is claimed in the
ledger before its sends go out, so overlapping scans never notify it twice.
When every send fails the claim is released and the next scan, whose
tolerance still covers the window, tries again.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.database import AsyncSessionLocal
from config.settings import settings
from services.notification.sink import NotificationSink
from services.reminder.ledger import ReminderLedger, WindowKind
from shared.models.models import (
    NotificationType,
    Session,
    SessionRequest,
    SessionRequestStatus,
    SessionStatus,
)
from shared.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

# (recipient, title, body, type, metadata)
Send = Tuple[UUID, str, str, NotificationType, dict]


class ReminderScheduler:

    def __init__(
        self,
        sink: NotificationSink,
        ledger: Optional[ReminderLedger] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        clock: Clock = system_clock,
        batch_size: int = settings.REMINDER_BATCH_SIZE,
        concurrency: int = settings.REMINDER_SEND_CONCURRENCY,
    ):
        self.sink = sink
        self.ledger = ledger if ledger is not None else ReminderLedger()
        self.session_factory = session_factory
        self.clock = clock
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # ── Sending ───────────────────────────────────────────────

    async def _deliver(self, send: Send) -> bool:
        recipient, title, body, type_, metadata = send
        async with self._semaphore:
            try:
                ok = await self.sink.send(recipient, title, body, type_, metadata)
            except Exception as e:
                logger.warning(f"Reminder to {recipient} raised: {e}")
                return False
        if not ok:
            logger.warning(f"Reminder to {recipient} was not delivered ({type_.value})")
        return bool(ok)

    async def _process_batch(self, kind: WindowKind, items: Sequence[Tuple[UUID, List[Send]]]) -> int:
        """
        Claim each window before the fan-out so an overlapping scan skips it,
        then give back the windows where every send failed.
        """
        pending = [(entity_id, sends) for entity_id, sends in items if self.ledger.claim(entity_id, kind)]
        if not pending:
            return 0

        flat = [send for _, sends in pending for send in sends]
        results = await asyncio.gather(*(self._deliver(send) for send in flat))

        delivered = 0
        cursor = 0
        for entity_id, sends in pending:
            outcome = results[cursor:cursor + len(sends)]
            cursor += len(sends)
            if not any(outcome):
                self.ledger.release(entity_id, kind)
            delivered += sum(1 for ok in outcome if ok)
        return delivered

    async def _scan(
        self,
        kind: WindowKind,
        query,
        build: Callable[[object], List[Send]],
    ) -> int:
        delivered = 0
        offset = 0
        async with self.session_factory() as db:
            while True:
                result = await db.execute(query.offset(offset).limit(self.batch_size))
                rows = list(result.scalars().all())
                if not rows:
                    break
                delivered += await self._process_batch(kind, [(row.id, build(row)) for row in rows])
                if len(rows) < self.batch_size:
                    break
                offset += self.batch_size
        return delivered

    # ── Scans ─────────────────────────────────────────────────

    def _window(self, lead: timedelta, tolerance_minutes: int) -> Tuple[datetime, datetime]:
        target = self.clock.now() + lead
        tolerance = timedelta(minutes=tolerance_minutes)
        return target - tolerance, target + tolerance

    @staticmethod
    def _session_sends(session: Session, title: str, when: str, reminder_type: str) -> List[Send]:
        metadata = {
            "session_id": str(session.id),
            "date": session.date,
            "start_time": session.start_time,
            "end_time": session.end_time,
            "reminder_type": reminder_type,
        }
        return [
            (
                session.user_id,
                title,
                f"Your session with your specialist {when} at {session.start_time}.",
                NotificationType.BOOKING_REMINDER,
                {**metadata, "specialist_id": str(session.specialist_id)},
            ),
            (
                session.specialist_id,
                title,
                f"Your session with a client {when} at {session.start_time}.",
                NotificationType.BOOKING_REMINDER,
                {**metadata, "user_id": str(session.user_id)},
            ),
        ]

    async def scan_24h(self) -> int:
        start, end = self._window(timedelta(hours=24), settings.REMINDER_24H_TOLERANCE_MINUTES)
        query = (
            select(Session)
            .where(
                Session.status == SessionStatus.CONFIRMED,
                Session.starts_at >= start,
                Session.starts_at <= end,
            )
            .order_by(Session.starts_at, Session.id)
        )
        delivered = await self._scan(
            WindowKind.H24,
            query,
            lambda s: self._session_sends(s, "Session Reminder - Tomorrow", "is tomorrow", "24h"),
        )
        logger.info(f"24h reminder scan delivered {delivered} notifications")
        return delivered

    async def scan_1h(self) -> int:
        start, end = self._window(timedelta(hours=1), settings.REMINDER_1H_TOLERANCE_MINUTES)
        query = (
            select(Session)
            .where(
                Session.status == SessionStatus.CONFIRMED,
                Session.cancelled_at.is_(None),
                Session.starts_at >= start,
                Session.starts_at <= end,
            )
            .order_by(Session.starts_at, Session.id)
        )
        delivered = await self._scan(
            WindowKind.H1,
            query,
            lambda s: self._session_sends(s, "Session Starting Soon", "starts in 1 hour", "1h"),
        )
        logger.info(f"1h reminder scan delivered {delivered} notifications")
        return delivered

    async def scan_payment(self) -> int:
        start, end = self._window(
            timedelta(minutes=settings.REMINDER_PAYMENT_LEAD_MINUTES),
            settings.REMINDER_PAYMENT_TOLERANCE_MINUTES,
        )
        query = (
            select(SessionRequest)
            .where(
                SessionRequest.status == SessionRequestStatus.PENDING_PAYMENT,
                SessionRequest.expires_at >= start,
                SessionRequest.expires_at <= end,
            )
            .order_by(SessionRequest.expires_at, SessionRequest.id)
        )

        def build(request: SessionRequest) -> List[Send]:
            return [(
                request.user_id,
                "Payment Upload Reminder",
                f"Your payment for the session on {request.date} at {request.start_time} "
                f"expires in {settings.REMINDER_PAYMENT_LEAD_MINUTES} minutes. "
                f"Please upload your payment screenshot now!",
                NotificationType.PAYMENT_REMINDER,
                {
                    "request_id": str(request.id),
                    "specialist_id": str(request.specialist_id),
                    "date": request.date,
                    "start_time": request.start_time,
                    "expires_at": request.expires_at.isoformat(),
                },
            )]

        delivered = await self._scan(WindowKind.PAYMENT_5M, query, build)
        logger.info(f"Payment reminder scan delivered {delivered} notifications")
        return delivered

    async def trigger_all(self) -> Dict[str, int]:
        """Run every scan once, e.g. from the admin trigger endpoint."""
        return {
            "24h": await self.scan_24h(),
            "1h": await self.scan_1h(),
            "payment": await self.scan_payment(),
        }

    def cleanup_ledger(self) -> int:
        dropped = self.ledger.clear(self.clock.now())
        logger.info(f"Reminder ledger cleared ({dropped} entries)")
        return dropped

    # ── Timers ────────────────────────────────────────────────

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _every(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable],
        run_first: bool = True,
    ) -> None:
        if not run_first:
            await self._sleep(interval)
        while not self._stopping.is_set():
            try:
                await job()
            except Exception:
                logger.exception(f"Reminder job '{name}' failed")
            await self._sleep(interval)

    async def _cleanup_job(self) -> None:
        self.cleanup_ledger()

    def start(self) -> None:
        """Start the three scan timers and the ledger cleanup timer."""
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(
                self._every("24h", settings.REMINDER_24H_INTERVAL_SECONDS, self.scan_24h)
            ),
            asyncio.create_task(
                self._every("1h", settings.REMINDER_1H_INTERVAL_SECONDS, self.scan_1h)
            ),
            asyncio.create_task(
                self._every("payment", settings.REMINDER_PAYMENT_INTERVAL_SECONDS, self.scan_payment)
            ),
            asyncio.create_task(
                self._every(
                    "ledger-cleanup",
                    settings.REMINDER_LEDGER_CLEANUP_SECONDS,
                    self._cleanup_job,
                    run_first=False,
                )
            ),
        ]
        logger.info("Reminder scheduler started")

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def stop(self) -> None:
        """Stop the timers. Scans already in flight finish their sends first."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info("Reminder scheduler stopped")
