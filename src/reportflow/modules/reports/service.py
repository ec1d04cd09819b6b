from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from reportflow.core.config import settings
from reportflow.core.errors import FileTooLarge, InvalidTransition, ValidationFailed
from reportflow.core.logging import get_logger, log_event
from reportflow.core.models import ZERO, utcnow
from reportflow.core.storage import get_storage
from reportflow.modules.extraction.amounts import (
    MAX_AMOUNT,
    FileKind,
    aggregate,
    detect_file_kind,
)
from reportflow.modules.identity.models import User, UserRole
from reportflow.modules.reports.models import (
    EDITABLE_REPORT_STATUSES,
    Report,
    ReportFile,
    ReportFileStatus,
    ReportStatus,
)

logger = get_logger(__name__)


def sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = (name or "").replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def create_report(
    session: Session, *, user: User, report_date: date, title: str | None = None
) -> Report:
    report = Report(
        user_id=user.id,
        filename=sanitize_filename(title or "") or "",
        report_date=report_date,
        total_amount=ZERO,
        status=ReportStatus.PENDING,
    )
    session.add(report)
    session.commit()
    session.refresh(report)
    log_event(logger, "report.created", report_id=str(report.id))
    return report


def get_report(session: Session, *, report_id: uuid.UUID) -> Report:
    report = session.scalar(select(Report).where(Report.id == report_id))
    if not report:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
    return report


def get_report_for_user(session: Session, *, report_id: uuid.UUID, user: User) -> Report:
    report = get_report(session, report_id=report_id)
    if user.is_reviewer or report.user_id == user.id:
        return report
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def list_reports_for_user(
    session: Session, *, user: User, status_filter: ReportStatus | None = None
) -> list[Report]:
    q = select(Report).order_by(Report.created_at.desc())
    if not user.is_reviewer:
        q = q.where(Report.user_id == user.id)
    if status_filter is not None:
        q = q.where(Report.status == status_filter)
    return list(session.scalars(q))


def list_report_files(session: Session, *, report: Report) -> list[ReportFile]:
    return list(
        session.scalars(
            select(ReportFile)
            .where(ReportFile.report_id == report.id)
            .order_by(ReportFile.created_at.asc())
        )
    )


def count_report_files(session: Session, *, report_id: uuid.UUID) -> int:
    count = session.scalar(
        select(func.count()).select_from(ReportFile).where(ReportFile.report_id == report_id)
    )
    return int(count or 0)


def validate_report_upload(*, filename: str, body: bytes) -> FileKind:
    kind = detect_file_kind(filename)
    if not body:
        raise ValidationFailed(f'"{filename}" is empty.', file_name=filename)
    if len(body) > settings.report_max_bytes:
        raise FileTooLarge(
            f'"{filename}" is {len(body)} bytes; report files may be at most '
            f"{settings.report_max_bytes} bytes.",
            file_name=filename,
            max_bytes=settings.report_max_bytes,
        )
    return kind


def _not_editable(report: Report) -> InvalidTransition:
    return InvalidTransition(
        f"Report is {report.status.value}; files can only be changed while it is "
        "pending or processing.",
        entity="report",
        current_status=report.status.value,
        expected_status=sorted(s.value for s in EDITABLE_REPORT_STATUSES),
    )


def _assert_report_editable(*, report: Report, user: User) -> None:
    if user.role != UserRole.ADMIN and report.user_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
    if report.status not in EDITABLE_REPORT_STATUSES:
        raise _not_editable(report)


def _hold_editable_report(
    session: Session, *, report: Report, first_filename: str | None = None
) -> None:
    """
    Re-check editability inside the write transaction.

    The conditional UPDATE serializes with a concurrent submit: once the report has left
    pending or processing nothing is written and ``InvalidTransition`` is raised. Passing
    ``first_filename`` marks the report processing and names it if it has no title yet.
    """
    values: dict = {"updated_at": utcnow()}
    if first_filename is not None:
        values["status"] = ReportStatus.PROCESSING
        values["filename"] = case((Report.filename == "", first_filename), else_=Report.filename)
    result = session.execute(
        update(Report)
        .where(Report.id == report.id, Report.status.in_(tuple(EDITABLE_REPORT_STATUSES)))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(report)
        log_event(
            logger,
            "report.file.rejected",
            report_id=str(report.id),
            reason="not_editable",
            status=report.status.value,
        )
        raise _not_editable(report)


def add_report_file(
    session: Session,
    *,
    report: Report,
    user: User,
    filename: str,
    content_type: str | None,
    body: bytes,
) -> ReportFile:
    _assert_report_editable(report=report, user=user)
    filename = sanitize_filename(filename) or "upload.bin"
    kind = validate_report_upload(filename=filename, body=body)

    if count_report_files(session, report_id=report.id) >= settings.report_max_files:
        raise ValidationFailed(
            f'Cannot add "{filename}": a report may contain at most '
            f"{settings.report_max_files} files.",
            file_name=filename,
            max_files=settings.report_max_files,
        )

    _hold_editable_report(session, report=report, first_filename=filename)
    key = f"reports/{report.id}/files/{uuid.uuid4()}-{filename}"
    try:
        stored = get_storage().put(key=key, body=body, content_type=content_type)
    except Exception:
        session.rollback()
        raise

    report_file = ReportFile(
        report_id=report.id,
        uploader_id=user.id,
        filename=filename,
        content_type=content_type,
        byte_size=stored.byte_size,
        sha256=stored.sha256,
        storage_key=stored.key,
        kind=kind,
        status=ReportFileStatus.UPLOADING,
        amount_count=0,
        total_amount=ZERO,
    )
    session.add(report_file)
    session.commit()
    session.refresh(report_file)
    log_event(
        logger,
        "report.file.added",
        report_id=str(report.id),
        report_file_id=str(report_file.id),
        filename=filename,
        kind=kind.value,
        byte_size=report_file.byte_size,
    )
    return report_file


def remove_report_file(
    session: Session, *, report: Report, user: User, report_file_id: uuid.UUID
) -> None:
    _assert_report_editable(report=report, user=user)
    report_file = session.scalar(
        select(ReportFile).where(
            ReportFile.id == report_file_id, ReportFile.report_id == report.id
        )
    )
    if not report_file:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")

    storage_key = report_file.storage_key
    _hold_editable_report(session, report=report)
    session.delete(report_file)
    session.commit()
    get_storage().delete(key=storage_key)
    recompute_report_total(session, report_id=report.id)
    log_event(
        logger,
        "report.file.removed",
        report_id=str(report.id),
        report_file_id=str(report_file_id),
    )


def completed_files_total(session: Session, *, report_id: uuid.UUID) -> Decimal:
    return aggregate(
        session.scalars(
            select(ReportFile.total_amount).where(
                ReportFile.report_id == report_id,
                ReportFile.status == ReportFileStatus.COMPLETED,
            )
        )
    )


def recompute_report_total(session: Session, *, report_id: uuid.UUID) -> Decimal:
    """Refresh ``total_amount`` from completed files; a no-op once the report is submitted."""
    total = completed_files_total(session, report_id=report_id)
    if total > MAX_AMOUNT:
        # Kept at the last storable value; submission refuses the report.
        log_event(logger, "report.total.out_of_range", total_amount=str(total))
        return total
    session.execute(
        update(Report)
        .where(Report.id == report_id, Report.status.in_(tuple(EDITABLE_REPORT_STATUSES)))
        .values(total_amount=total)
    )
    session.commit()
    return total
