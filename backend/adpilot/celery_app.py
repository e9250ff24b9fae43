from celery import Celery
from celery.schedules import crontab
from adpilot.config import get_settings

settings = get_settings()

celery_app = Celery(
    "adpilot",
    broker=settings.effective_celery_broker_url,
    backend=settings.effective_celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
    task_routes={
        "adpilot.tasks.meta_tasks.*": {"queue": "meta"},
    },
)


def _every(minutes: int) -> crontab:
    if minutes >= 60 and minutes % 60 == 0:
        return crontab(minute=0, hour=f"*/{minutes // 60}")
    return crontab(minute=f"*/{minutes}")


# Celery Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "meta-sync-all-connections": {
        "task": "adpilot.tasks.meta_tasks.sync_all_connections",
        "schedule": _every(settings.meta_sync_interval_minutes),
    },
    "meta-sync-all-performance": {
        "task": "adpilot.tasks.meta_tasks.sync_all_performance",
        "schedule": _every(settings.meta_performance_sync_interval_minutes),
    },
    "meta-run-optimization-cycles": {
        "task": "adpilot.tasks.meta_tasks.run_optimization_cycles",
        "schedule": _every(settings.optimization_interval_minutes),
    },
}

# Auto-discover tasks
celery_app.autodiscover_tasks([
    "adpilot.tasks",
], related_name="meta_tasks")
