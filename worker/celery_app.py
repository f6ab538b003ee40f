from celery import Celery
from celery.signals import worker_process_init

from delivery_hub.core.config import settings
from delivery_hub.core.telemetry import configure_tracing

celery = Celery(
    "coverage-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.run_delta_check": {"queue": "coverage"},
        "worker.tasks.commit_approved": {"queue": "coverage"},
        "worker.tasks.report_stale_operations": {"queue": "default"},
    },
    beat_schedule={
        "coverage-delta-check": {
            "task": "worker.tasks.run_delta_check",
            "schedule": float(settings.delta_check_interval_seconds),
        },
        "coverage-stale-operations": {
            "task": "worker.tasks.report_stale_operations",
            "schedule": float(settings.stale_check_interval_seconds),
        },
    },
)


@worker_process_init.connect
def _init_tracing(**_kwargs) -> None:
    configure_tracing(role="worker")
