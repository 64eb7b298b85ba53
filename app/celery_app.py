"""Celery application instance shared across the backend.

Start a worker and the beat scheduler with:
    celery -A app.celery_app worker -Q reminder,events -l info --concurrency=2
    celery -A app.celery_app beat -l info

Any number of workers may run; claims are exclusive at the database level.
"""

from celery import Celery

from config import settings

BROKER_URL = settings.REDIS_URL

celery_app = Celery("court_reminders", broker=BROKER_URL, backend=BROKER_URL)

# Global task settings
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.task_default_retry_delay = 30  # seconds
celery_app.conf.worker_prefetch_multiplier = 1

celery_app.conf.task_routes = {
    "app.workers.reminder.dispatch_due": {"queue": "reminder"},
    "app.workers.reminder.refresh_sent": {"queue": "reminder"},
    "app.workers.reminder.sweep_stale_claims": {"queue": "reminder"},
    "app.workers.reminder.handle_event_change": {"queue": "events"},
}

celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.reminder.dispatch_due",
        "schedule": settings.DISPATCH_INTERVAL_SECONDS,
    },
    "refresh-sent-reminders": {
        "task": "app.workers.reminder.refresh_sent",
        "schedule": settings.RECONCILE_INTERVAL_SECONDS,
    },
    "sweep-stale-claims": {
        "task": "app.workers.reminder.sweep_stale_claims",
        "schedule": settings.STALE_SWEEP_INTERVAL_SECONDS,
    },
}

# --- Ensure tasks are registered ---
import app.workers.reminder  # noqa: E402,F401
