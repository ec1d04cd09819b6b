from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from reportflow.modules.payments.models import (
    PaymentMethod,
    PaymentStatus,
    ProofFileType,
    ProofStatus,
)


class PaymentOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    user_id: uuid.UUID
    amount: Decimal
    remaining_amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    transaction_id: str | None
    created_at: datetime
    updated_at: datetime


class PaymentProofOut(BaseModel):
    id: uuid.UUID
    payment_id: uuid.UUID
    report_id: uuid.UUID
    user_id: uuid.UUID
    filename: str
    file_url: str
    file_type: ProofFileType
    byte_size: int
    amount: Decimal
    notes: str | None
    status: ProofStatus
    manager_comments: str | None
    decided_at: datetime | None
    created_at: datetime


class PaymentStatsOut(BaseModel):
    total_payments: int
    total_amount: Decimal
    pending_count: int
    completed_count: int
    failed_count: int


class PaymentHistoryOut(BaseModel):
    payments: list[PaymentOut]
    stats: PaymentStatsOut
