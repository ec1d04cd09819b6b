from __future__ import annotations

import enum
import uuid

from sqlalchemy import JSON, Boolean, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reportflow.core.models import Base, Timestamped, UUIDPrimaryKey


class NotificationType(str, enum.Enum):
    REPORT_SUBMITTED = "report_submitted"
    REPORT_APPROVED = "report_approved"
    REPORT_REJECTED = "report_rejected"
    PAYMENT_PROOF_UPLOADED = "payment_proof_uploaded"
    PAYMENT_PROOF_APPROVED = "payment_proof_approved"
    PAYMENT_PROOF_REJECTED = "payment_proof_rejected"
    PAYMENT_CLEARED = "payment_cleared"
    REPORT_COMMENTED = "report_commented"


class Notification(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "notifications_notification"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), index=True
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, native_enum=False), index=True
    )
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    data_json: Mapped[dict] = mapped_column(JSON, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)

    user = relationship("User")
