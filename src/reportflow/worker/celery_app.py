from __future__ import annotations

from celery import Celery

from reportflow.core.config import settings


def _always_eager() -> bool:
    if settings.celery_task_always_eager is not None:
        return settings.celery_task_always_eager
    return settings.environment in {"dev", "test"}


def make_celery() -> Celery:
    app = Celery(
        "reportflow",
        broker=settings.redis_url,
        backend=settings.redis_url,
        include=["reportflow.worker.tasks"],
    )
    app.conf.update(
        task_always_eager=_always_eager(),
        task_eager_propagates=True,
        task_track_started=True,
        # Extraction is idempotent per file, so a task lost with its worker is redelivered.
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_routes={"extract_report_file": {"queue": settings.extraction_queue}},
    )
    return app


celery_app = make_celery()
