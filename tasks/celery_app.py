"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "wellness_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.booking_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.DEFAULT_TIMEZONE,
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    task_max_retries=3,

    task_annotations={
        "tasks.booking_tasks.send_session_approved": {"rate_limit": "30/s"},
        "tasks.booking_tasks.send_session_request_rejected": {"rate_limit": "30/s"},
    },

    # Routing: notifications never queue behind housekeeping
    task_routes={
        "tasks.booking_tasks.send_*": {"queue": "notifications"},
        "tasks.booking_tasks.expire_stale_session_requests": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Expire PENDING_PAYMENT requests whose payment window closed.
    # Read paths expire lazily as well; this keeps listings tidy.
    "expire-stale-session-requests": {
        "task": "tasks.booking_tasks.expire_stale_session_requests",
        "schedule": settings.EXPIRY_SWEEP_INTERVAL_SECONDS,
    },
}
