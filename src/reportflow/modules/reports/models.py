from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reportflow.core.models import ZERO, Base, Money, Timestamped, UUIDPrimaryKey
from reportflow.modules.extraction.amounts import FileKind


class ReportStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    FAILED = "failed"


class ReportFileStatus(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


# Files can still be added (and totals recomputed) while the report is in one of these.
EDITABLE_REPORT_STATUSES = frozenset({ReportStatus.PENDING, ReportStatus.PROCESSING})


class Report(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "reports_report"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    filename: Mapped[str] = mapped_column(String(512))
    report_date: Mapped[date] = mapped_column(Date)
    total_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    status: Mapped[ReportStatus] = mapped_column(
        Enum(ReportStatus, native_enum=False), index=True
    )

    manager_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    decided_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )

    user = relationship("User", foreign_keys=[user_id])
    decided_by = relationship("User", foreign_keys=[decided_by_user_id])
    files = relationship("ReportFile", order_by="ReportFile.created_at", viewonly=True)

    @property
    def file_urls(self) -> list[str]:
        return [f.storage_key for f in self.files]


class ReportFile(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "reports_report_file"

    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), index=True
    )
    uploader_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id")
    )

    filename: Mapped[str] = mapped_column(String(512))
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64), index=True)
    storage_key: Mapped[str] = mapped_column(String(1024), unique=True)
    kind: Mapped[FileKind | None] = mapped_column(Enum(FileKind, native_enum=False), nullable=True)

    status: Mapped[ReportFileStatus] = mapped_column(
        Enum(ReportFileStatus, native_enum=False), index=True
    )
    matched_column: Mapped[str | None] = mapped_column(String(200), nullable=True)
    amount_count: Mapped[int] = mapped_column(Integer, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Money, default=ZERO)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    warning: Mapped[str | None] = mapped_column(Text, nullable=True)

    report = relationship("Report")
    uploader = relationship("User")
