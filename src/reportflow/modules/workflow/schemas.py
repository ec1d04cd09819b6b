from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from reportflow.modules.audit.models import HistoryEntity
from reportflow.modules.payments.schemas import PaymentOut, PaymentProofOut
from reportflow.modules.reports.schemas import ReportOut


class DecisionRequest(BaseModel):
    comments: str | None = None


class RejectionRequest(BaseModel):
    comments: str


class CommentRequest(BaseModel):
    comments: str


class ClearPaymentRequest(BaseModel):
    confirm: bool = False


class HistoryEntryOut(BaseModel):
    id: uuid.UUID
    report_id: uuid.UUID
    entity: HistoryEntity
    entity_id: uuid.UUID
    action: str
    previous_status: str | None
    new_status: str | None
    actor_user_id: uuid.UUID | None
    comments: str | None
    occurred_at: datetime


class TransitionOut(BaseModel):
    applied: bool
    report: ReportOut
    payment: PaymentOut | None = None
    proof: PaymentProofOut | None = None
    history: list[HistoryEntryOut] = []


class DashboardStatsOut(BaseModel):
    reports_by_status: dict[str, int]
    pending_approval_count: int
    pending_approval_amount: Decimal
    approved_amount: Decimal
    pending_proofs_count: int
    paid_amount: Decimal
    outstanding_amount: Decimal


class UserDashboardStatsOut(BaseModel):
    total_reports: int
    reports_this_month: int
    reports_last_month: int
    reports_by_status: dict[str, int]
    paid_amount: Decimal
    awaiting_payment_amount: Decimal
    proofs_in_review_count: int


class AdminDashboardStatsOut(BaseModel):
    total_users: int
    active_users: int
    total_reports: int
    reports_this_month: int
    reports_last_month: int
    monthly_growth_percent: Decimal
    paid_amount: Decimal
    outstanding_payment_amount: Decimal


class RecentActivityOut(BaseModel):
    pending_reports: list[ReportOut]
    pending_proofs: list[PaymentProofOut]
    recent_actions: list[HistoryEntryOut]
