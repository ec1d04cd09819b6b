from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from reportflow.modules.extraction.amounts import FileKind
from reportflow.modules.reports.models import ReportFileStatus, ReportStatus


class ReportCreate(BaseModel):
    report_date: date
    title: str | None = None


class ReportOut(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    filename: str
    report_date: date
    total_amount: Decimal
    status: ReportStatus
    manager_comments: str | None
    rejection_reason: str | None
    submitted_at: datetime | None
    decided_at: datetime | None
    file_urls: list[str]
    created_at: datetime
    updated_at: datetime


class ReportFileOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    uploader_id: uuid.UUID
    filename: str
    content_type: str | None
    byte_size: int
    sha256: str
    kind: FileKind | None
    status: ReportFileStatus
    matched_column: str | None
    amount_count: int
    total_amount: Decimal
    error_code: str | None
    error_message: str | None
    warning: str | None
    created_at: datetime
    updated_at: datetime


class RejectedUploadOut(BaseModel):
    filename: str
    code: str
    message: str


class ReportUploadOut(BaseModel):
    files: list[ReportFileOut]
    rejected: list[RejectedUploadOut]
