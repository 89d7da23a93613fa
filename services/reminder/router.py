"""
services/reminder/router.py
Admin trigger for the reminder scans.
"""

from fastapi import APIRouter, Depends, Request

from services.reminder.scheduler import ReminderScheduler
from shared.errors import SchedulerNotRunningError
from shared.middleware.auth import TokenData, require_admin
from shared.schemas.schemas import ReminderTriggerResponse

router = APIRouter(prefix="/reminders", tags=["Reminders"])


def get_reminder_scheduler(request: Request) -> ReminderScheduler:
    """
    The app-wide scheduler, so manual runs share the ledger with the timers.
    Absent when reminders run in tasks.reminder_worker.
    """
    scheduler = getattr(request.app.state, "reminder_scheduler", None)
    if scheduler is None:
        raise SchedulerNotRunningError(
            "Reminder scheduler is not running in this process"
        )
    return scheduler


@router.post("/trigger", response_model=ReminderTriggerResponse)
async def trigger_reminders(
    _: TokenData = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
):
    """Run the 24h, 1h and payment scans once."""
    sent = await scheduler.trigger_all()
    return ReminderTriggerResponse(
        sent_24h=sent["24h"],
        sent_1h=sent["1h"],
        sent_payment=sent["payment"],
    )
