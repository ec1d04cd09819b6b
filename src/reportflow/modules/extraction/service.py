from __future__ import annotations

import time
import uuid
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reportflow.core.config import settings
from reportflow.core.db import SessionLocal
from reportflow.core.errors import DomainError, NoAmountColumnFound
from reportflow.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    report_context,
)
from reportflow.core.models import ZERO, utcnow
from reportflow.core.storage import get_storage
from reportflow.modules.extraction.amounts import ExtractionResult, extract
from reportflow.modules.reports.models import ReportFile, ReportFileStatus
from reportflow.modules.reports.service import recompute_report_total

logger = get_logger(__name__)


def extract_report_file(*, report_file_id: str) -> None:
    with SessionLocal() as session:
        report_file = session.scalar(
            select(ReportFile).where(ReportFile.id == uuid.UUID(report_file_id))
        )
        if not report_file:
            log_event(logger, "extraction.skipped", report_file_id=report_file_id, reason="missing")
            return
        with report_context(str(report_file.report_id)):
            _extract_claimed_file(session, report_file=report_file)


def _extract_claimed_file(session: Session, *, report_file: ReportFile) -> None:
    start = time.monotonic()
    # Plain copies: a rollback expires the instance and its row may be gone.
    report_file_id, report_id = report_file.id, report_file.report_id
    filename = report_file.filename
    log_event(
        logger,
        "extraction.start",
        report_file_id=str(report_file.id),
        filename=report_file.filename,
        byte_size=report_file.byte_size,
        sha256=report_file.sha256,
        file_status=report_file.status.value,
    )

    if report_file.status == ReportFileStatus.COMPLETED:
        return

    if not _try_start_file_processing(session=session, report_file=report_file):
        log_event(
            logger,
            "extraction.skipped",
            report_file_id=str(report_file_id),
            reason="claimed_elsewhere",
        )
        return

    try:
        body = get_storage().get(key=report_file.storage_key)
        result = extract(body, report_file.filename)
        if not result.has_amount_column:
            raise NoAmountColumnFound(
                f'No amount column found in "{report_file.filename}". Expected a header '
                'such as "Total amount charged", "Amount" or "Total".',
                file_name=report_file.filename,
            )
    except DomainError as e:
        if not _record_failure(session=session, report_file=report_file, error=e):
            _log_released(report_file_id, start=start)
            return
        log_event(
            logger,
            "extraction.finish",
            report_file_id=str(report_file_id),
            status="error",
            error_code=e.code,
            duration_ms=monotonic_ms(start),
        )
        return
    except Exception:
        session.rollback()
        if not _file_exists(session=session, report_file_id=report_file_id):
            _log_released(report_file_id, start=start)
            return
        log_exception(
            logger,
            "extraction.error",
            report_file_id=str(report_file_id),
            duration_ms=monotonic_ms(start),
        )
        _mark_error(
            session=session,
            report_file_id=report_file_id,
            code="EXTRACTION_ERROR",
            message=f'Unexpected error while reading "{filename}".',
        )
        raise

    if not _record_success(session=session, report_file=report_file, result=result):
        _log_released(report_file_id, start=start)
        return
    recompute_report_total(session, report_id=report_id)
    log_event(
        logger,
        "extraction.finish",
        report_file_id=str(report_file_id),
        status="completed",
        matched_column=result.matched_column,
        amount_count=len(result.amounts),
        total_amount=str(result.total),
        warnings=len(result.warnings),
        duration_ms=monotonic_ms(start),
    )


def _try_start_file_processing(*, session, report_file: ReportFile) -> bool:
    stale_before = utcnow() - timedelta(minutes=settings.extraction_stale_minutes)
    result = session.execute(
        update(ReportFile)
        .where(
            ReportFile.id == report_file.id,
            (
                ReportFile.status.in_((ReportFileStatus.UPLOADING, ReportFileStatus.ERROR))
                | (
                    (ReportFile.status == ReportFileStatus.PROCESSING)
                    & (ReportFile.updated_at < stale_before)
                )
            ),
        )
        .values(status=ReportFileStatus.PROCESSING, error_code=None, error_message=None)
    )
    if not result.rowcount:
        session.rollback()
        return False
    session.commit()
    session.refresh(report_file)
    return True


def _record_success(*, session, report_file: ReportFile, result: ExtractionResult) -> bool:
    return _finish_processing(
        session=session,
        report_file_id=report_file.id,
        kind=result.file_kind,
        status=ReportFileStatus.COMPLETED,
        matched_column=result.matched_column,
        amount_count=len(result.amounts),
        total_amount=result.total,
        warning=" ".join(result.warnings) or None,
        error_code=None,
        error_message=None,
    )


def _record_failure(*, session, report_file: ReportFile, error: DomainError) -> bool:
    return _finish_processing(
        session=session,
        report_file_id=report_file.id,
        status=ReportFileStatus.ERROR,
        matched_column=None,
        amount_count=0,
        total_amount=ZERO,
        warning=None,
        error_code=error.code,
        error_message=error.message,
    )


def _finish_processing(*, session, report_file_id: uuid.UUID, **values) -> bool:
    """Write the outcome only while this run still holds the file; False once it is gone."""
    result = session.execute(
        update(ReportFile)
        .where(ReportFile.id == report_file_id, ReportFile.status == ReportFileStatus.PROCESSING)
        .values(**values)
    )
    if not result.rowcount:
        session.rollback()
        return False
    session.commit()
    return True


def _file_exists(*, session, report_file_id: uuid.UUID) -> bool:
    return session.scalar(select(ReportFile.id).where(ReportFile.id == report_file_id)) is not None


def _log_released(report_file_id: uuid.UUID, *, start: float) -> None:
    log_event(
        logger,
        "extraction.skipped",
        report_file_id=str(report_file_id),
        reason="file_removed",
        duration_ms=monotonic_ms(start),
    )


def _mark_error(*, session, report_file_id: uuid.UUID, code: str, message: str) -> None:
    session.execute(
        update(ReportFile)
        .where(ReportFile.id == report_file_id)
        .values(status=ReportFileStatus.ERROR, error_code=code, error_message=message)
    )
    session.commit()
