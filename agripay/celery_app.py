from celery import Celery
from agripay.config import settings


celery_app = Celery(
    "agripay_tasks",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["agripay.tasks.reconcile"],
)

celery_app.conf.update(task_track_started=True)
celery_app.conf.beat_schedule = {
    "sweep-stale-intents": {
        "task": "agripay.tasks.reconcile.sweep_stale_intents",
        "schedule": float(settings.RECONCILE_SWEEP_INTERVAL_SECONDS),
    },
}
