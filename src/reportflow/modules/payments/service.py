from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from reportflow.core.models import ZERO
from reportflow.modules.extraction.amounts import round_money
from reportflow.modules.identity.models import User
from reportflow.modules.payments.models import Payment, PaymentProof, PaymentStatus
from reportflow.modules.reports.models import Report

PENDING_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PENDING_APPROVAL, PaymentStatus.PROCESSING}
)
FAILED_PAYMENT_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.REJECTED})


@dataclass(frozen=True)
class PaymentStats:
    total_payments: int
    total_amount: Decimal
    pending_count: int
    completed_count: int
    failed_count: int


def get_payment_for_report(session: Session, *, report: Report) -> Payment | None:
    return session.scalar(select(Payment).where(Payment.report_id == report.id))


def list_proofs_for_report(session: Session, *, report: Report) -> list[PaymentProof]:
    return list(
        session.scalars(
            select(PaymentProof)
            .where(PaymentProof.report_id == report.id)
            .order_by(PaymentProof.created_at.desc())
        )
    )


def list_payments_for_user(session: Session, *, user: User) -> list[Payment]:
    q = select(Payment).order_by(Payment.created_at.desc())
    if not user.is_reviewer:
        q = q.where(Payment.user_id == user.id)
    return list(session.scalars(q))


def summarize_payments(payments: list[Payment]) -> PaymentStats:
    return PaymentStats(
        total_payments=len(payments),
        total_amount=round_money(sum((p.amount for p in payments), ZERO)),
        pending_count=sum(1 for p in payments if p.status in PENDING_PAYMENT_STATUSES),
        completed_count=sum(1 for p in payments if p.status == PaymentStatus.COMPLETED),
        failed_count=sum(1 for p in payments if p.status in FAILED_PAYMENT_STATUSES),
    )


def get_proof_for_user(session: Session, *, proof_id: uuid.UUID, user: User) -> PaymentProof:
    proof = session.scalar(select(PaymentProof).where(PaymentProof.id == proof_id))
    if not proof:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment proof not found")
    if user.is_reviewer or proof.user_id == user.id:
        return proof
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")
