from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from reportflow.api.deps import accessible_report, get_current_user
from reportflow.core.db import db_session
from reportflow.core.errors import FileTooLarge, UnsupportedFileType, ValidationFailed
from reportflow.core.logging import get_logger, log_event
from reportflow.modules.identity.models import User
from reportflow.modules.reports.models import Report, ReportStatus
from reportflow.modules.reports.schemas import (
    RejectedUploadOut,
    ReportCreate,
    ReportFileOut,
    ReportOut,
    ReportUploadOut,
)
from reportflow.modules.reports.service import (
    add_report_file,
    create_report,
    get_report_for_user,
    list_report_files,
    list_reports_for_user,
    remove_report_file,
)
from reportflow.worker.tasks import extract_report_file_task

router = APIRouter(tags=["reports"])
logger = get_logger(__name__)


@router.post("/reports", response_model=ReportOut)
def create_report_endpoint(
    payload: ReportCreate,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportOut:
    report = create_report(session, user=user, report_date=payload.report_date, title=payload.title)
    return ReportOut.model_validate(report, from_attributes=True)


@router.get("/reports", response_model=list[ReportOut])
def list_reports_endpoint(
    status: ReportStatus | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReportOut]:
    reports = list_reports_for_user(session, user=user, status_filter=status)
    return [ReportOut.model_validate(r, from_attributes=True) for r in reports]


@router.get("/reports/{report_id}", response_model=ReportOut)
def get_report_endpoint(report: Report = Depends(accessible_report)) -> ReportOut:
    return ReportOut.model_validate(report, from_attributes=True)


@router.post("/reports/{report_id}/files", response_model=ReportUploadOut)
async def upload_report_files(
    report_id: uuid.UUID,
    uploads: list[UploadFile] = File(...),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> ReportUploadOut:
    report = get_report_for_user(session, report_id=report_id, user=user)
    files: list[ReportFileOut] = []
    rejected: list[RejectedUploadOut] = []
    for upload in uploads:
        filename = upload.filename or "upload.bin"
        body = await upload.read()
        log_event(
            logger,
            "upload.received",
            report_id=str(report.id),
            filename=filename,
            content_type=upload.content_type,
            byte_size=len(body),
        )
        try:
            report_file = add_report_file(
                session,
                report=report,
                user=user,
                filename=filename,
                content_type=upload.content_type,
                body=body,
            )
        except (UnsupportedFileType, FileTooLarge, ValidationFailed) as e:
            log_event(
                logger,
                "upload.rejected",
                report_id=str(report.id),
                filename=filename,
                error_code=e.code,
            )
            rejected.append(RejectedUploadOut(filename=filename, code=e.code, message=e.message))
            continue

        async_result = extract_report_file_task.delay(str(report_file.id))
        log_event(
            logger,
            "celery.task.enqueued",
            task_name="extract_report_file",
            celery_task_id=async_result.id,
            report_id=str(report.id),
            report_file_id=str(report_file.id),
        )
        session.refresh(report_file)
        files.append(ReportFileOut.model_validate(report_file, from_attributes=True))
    return ReportUploadOut(files=files, rejected=rejected)


@router.get("/reports/{report_id}/files", response_model=list[ReportFileOut])
def list_report_files_endpoint(
    report: Report = Depends(accessible_report),
    session: Session = Depends(db_session),
) -> list[ReportFileOut]:
    return [
        ReportFileOut.model_validate(f, from_attributes=True)
        for f in list_report_files(session, report=report)
    ]


@router.delete("/reports/{report_id}/files/{report_file_id}", status_code=204)
def delete_report_file_endpoint(
    report_id: uuid.UUID,
    report_file_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    report = get_report_for_user(session, report_id=report_id, user=user)
    remove_report_file(session, report=report, user=user, report_file_id=report_file_id)
    return Response(status_code=204)
