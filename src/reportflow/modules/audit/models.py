from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reportflow.core.models import Base, UUIDPrimaryKey, utcnow


class HistoryEntity(str, enum.Enum):
    REPORT = "report"
    PAYMENT = "payment"
    PAYMENT_PROOF = "payment_proof"


class HistoryEntry(UUIDPrimaryKey, Base):
    """One applied workflow transition. Append-only."""

    __tablename__ = "audit_history_entry"

    # Not a foreign key: entries outlive payments removed by a clear.
    report_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    entity: Mapped[HistoryEntity] = mapped_column(Enum(HistoryEntity, native_enum=False))
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    actor_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("identity_user.id"), nullable=True, index=True
    )

    action: Mapped[str] = mapped_column(String(50), index=True)
    previous_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    actor = relationship("User")
