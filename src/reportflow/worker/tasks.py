from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import reportflow.models  # noqa: F401
# isort: on

import time

from botocore.exceptions import BotoCoreError, ClientError

from reportflow.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from reportflow.core.storage import StorageError
from reportflow.worker.celery_app import celery_app

logger = get_logger(__name__)


# Storage outages are retried; the next run claims the file again from `error`.
RETRYABLE_ERRORS = (StorageError, BotoCoreError, ClientError, OSError)


@celery_app.task(
    name="extract_report_file",
    bind=True,
    autoretry_for=RETRYABLE_ERRORS,
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def extract_report_file_task(self, report_file_id: str) -> None:
    from reportflow.modules.extraction.service import extract_report_file

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="extract_report_file",
        celery_task_id=task_id,
        report_file_id=report_file_id,
        attempt=self.request.retries + 1,
    )
    try:
        extract_report_file(report_file_id=report_file_id)
        log_event(
            logger,
            "celery.task.finish",
            task_name="extract_report_file",
            celery_task_id=task_id,
            report_file_id=report_file_id,
            duration_ms=monotonic_ms(start),
        )
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="extract_report_file",
            celery_task_id=task_id,
            report_file_id=report_file_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)
