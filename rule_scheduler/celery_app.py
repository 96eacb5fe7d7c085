# rule_scheduler/celery_app.py
from celery import Celery
from celery.schedules import crontab

from rule_scheduler.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "rule_scheduler",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["rule_scheduler.tasks"]
)
celery_app.conf.task_routes = {
    "rule_scheduler.tasks.*": {"queue": "scheduler_queue"}
}
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "optimize-schedule": {
        "task": "rule_scheduler.tasks.optimize_schedule",
        "schedule": crontab(minute=0, hour=f"*/{settings.optimization_frequency_hours}"),
    },
    "generate-predictions": {
        "task": "rule_scheduler.tasks.generate_predictions",
        "schedule": crontab(minute=15),
    },
    "expire-predictions": {
        "task": "rule_scheduler.tasks.expire_predictions",
        "schedule": crontab(minute=45, hour="*/6"),
    },
}
