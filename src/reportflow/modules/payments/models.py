from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reportflow.core.models import Base, Money, Timestamped, UUIDPrimaryKey


class PaymentMethod(str, enum.Enum):
    CREDIT_CARD = "credit_card"
    UPI = "upi"
    NET_BANKING = "net_banking"
    OFFLINE = "offline"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_APPROVAL = "pending_approval"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIAL = "partial"
    REJECTED = "rejected"


class ProofStatus(str, enum.Enum):
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProofFileType(str, enum.Enum):
    PDF = "pdf"
    JPG = "jpg"
    JPEG = "jpeg"
    PNG = "png"


class Payment(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "payments_payment"

    # One payment per report; concurrent creation is settled by this constraint.
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), unique=True, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )

    amount: Mapped[Decimal] = mapped_column(Money)
    remaining_amount: Mapped[Decimal] = mapped_column(Money)
    method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod, native_enum=False))
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False), index=True
    )
    transaction_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    report = relationship("Report")
    user = relationship("User")


class PaymentProof(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "payments_payment_proof"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("payments_payment.id"), index=True
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("reports_report.id"), index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("identity_user.id"))

    filename: Mapped[str] = mapped_column(String(512))
    file_url: Mapped[str] = mapped_column(String(1024), unique=True)
    file_type: Mapped[ProofFileType] = mapped_column(Enum(ProofFileType, native_enum=False))
    content_type: Mapped[str | None] = mapped_column(String(200), nullable=True)
    byte_size: Mapped[int] = mapped_column(Integer)
    sha256: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Money)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[ProofStatus] = mapped_column(Enum(ProofStatus, native_enum=False), index=True)
    manager_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    decided_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True
    )
    decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment = relationship("Payment")
    uploader = relationship("User", foreign_keys=[user_id])
    decided_by = relationship("User", foreign_keys=[decided_by_user_id])
