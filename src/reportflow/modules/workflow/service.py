from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from reportflow.core.models import ZERO, utcnow
from reportflow.modules.audit.models import HistoryEntity, HistoryEntry
from reportflow.modules.extraction.amounts import aggregate, round_money
from reportflow.modules.identity.models import User
from reportflow.modules.payments.models import Payment, PaymentProof, PaymentStatus, ProofStatus
from reportflow.modules.reports.models import Report, ReportStatus
from reportflow.modules.workflow.lifecycle import WorkflowAction

RECENT_LIMIT = 5
ACTIVE_USER_WINDOW = timedelta(days=30)

# Reviewer decisions and comments. Payment-side duplicates of proof decisions are left out.
REVIEW_ACTIONS = (
    WorkflowAction.REPORT_APPROVED,
    WorkflowAction.REPORT_REJECTED,
    WorkflowAction.REPORT_COMMENTED,
    WorkflowAction.PAYMENT_PROOF_APPROVED,
    WorkflowAction.PAYMENT_PROOF_REJECTED,
)


@dataclass(frozen=True)
class DashboardStats:
    reports_by_status: dict[str, int]
    pending_approval_count: int
    pending_approval_amount: Decimal
    approved_amount: Decimal
    pending_proofs_count: int
    paid_amount: Decimal
    outstanding_amount: Decimal


@dataclass(frozen=True)
class UserDashboardStats:
    total_reports: int
    reports_this_month: int
    reports_last_month: int
    reports_by_status: dict[str, int]
    paid_amount: Decimal
    awaiting_payment_amount: Decimal
    proofs_in_review_count: int


@dataclass(frozen=True)
class AdminDashboardStats:
    total_users: int
    active_users: int
    total_reports: int
    reports_this_month: int
    reports_last_month: int
    monthly_growth_percent: Decimal
    paid_amount: Decimal
    outstanding_payment_amount: Decimal


@dataclass(frozen=True)
class RecentActivity:
    pending_reports: list[Report]
    pending_proofs: list[PaymentProof]
    recent_actions: list[HistoryEntry]


def list_history(session: Session, *, report: Report) -> list[HistoryEntry]:
    return list(
        session.scalars(
            select(HistoryEntry)
            .where(HistoryEntry.report_id == report.id)
            .order_by(HistoryEntry.occurred_at.asc())
        )
    )


def list_reports_awaiting_approval(session: Session) -> list[Report]:
    return list(
        session.scalars(
            select(Report)
            .where(Report.status == ReportStatus.PENDING_APPROVAL)
            .order_by(Report.submitted_at.asc())
        )
    )


def list_proofs_awaiting_approval(session: Session) -> list[PaymentProof]:
    return list(
        session.scalars(
            select(PaymentProof)
            .where(PaymentProof.status == ProofStatus.PENDING_APPROVAL)
            .order_by(PaymentProof.created_at.asc())
        )
    )


def _money(value) -> Decimal:
    return round_money(Decimal(str(value or 0)))


def dashboard_stats(session: Session) -> DashboardStats:
    counts = {s.value: 0 for s in ReportStatus}
    for report_status, count in session.execute(
        select(Report.status, func.count()).group_by(Report.status)
    ):
        counts[report_status.value] = int(count)

    pending_amount = session.scalar(
        select(func.coalesce(func.sum(Report.total_amount), 0)).where(
            Report.status == ReportStatus.PENDING_APPROVAL
        )
    )
    approved_amount = session.scalar(
        select(func.coalesce(func.sum(Report.total_amount), 0)).where(
            Report.status == ReportStatus.APPROVED
        )
    )
    pending_proofs = session.scalar(
        select(func.count())
        .select_from(PaymentProof)
        .where(PaymentProof.status == ProofStatus.PENDING_APPROVAL)
    )
    paid = session.scalar(
        select(func.coalesce(func.sum(Payment.amount - Payment.remaining_amount), 0))
    )

    approved = _money(approved_amount)
    paid_amount = _money(paid)
    return DashboardStats(
        reports_by_status=counts,
        pending_approval_count=counts[ReportStatus.PENDING_APPROVAL.value],
        pending_approval_amount=_money(pending_amount),
        approved_amount=approved,
        pending_proofs_count=int(pending_proofs or 0),
        paid_amount=paid_amount,
        outstanding_amount=max(round_money(approved - paid_amount), ZERO),
    )


def _month_bounds(now: datetime) -> tuple[datetime, datetime]:
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = (this_month - timedelta(days=1)).replace(day=1)
    return last_month, this_month


def _count_reports(session: Session, *where) -> int:
    return int(session.scalar(select(func.count()).select_from(Report).where(*where)) or 0)


def _status_counts(session: Session, *where) -> dict[str, int]:
    counts = {s.value: 0 for s in ReportStatus}
    for report_status, count in session.execute(
        select(Report.status, func.count()).where(*where).group_by(Report.status)
    ):
        counts[report_status.value] = int(count)
    return counts


def user_dashboard_stats(
    session: Session, *, user: User, now: datetime | None = None
) -> UserDashboardStats:
    """Totals over the caller's own reports and payments."""
    last_month, this_month = _month_bounds(now or utcnow())
    own = Report.user_id == user.id
    payments = {
        p.report_id: p for p in session.scalars(select(Payment).where(Payment.user_id == user.id))
    }
    approved = session.scalars(
        select(Report).where(own, Report.status == ReportStatus.APPROVED)
    ).all()
    return UserDashboardStats(
        total_reports=_count_reports(session, own),
        reports_this_month=_count_reports(session, own, Report.created_at >= this_month),
        reports_last_month=_count_reports(
            session, own, Report.created_at >= last_month, Report.created_at < this_month
        ),
        reports_by_status=_status_counts(session, own),
        paid_amount=aggregate(p.amount - p.remaining_amount for p in payments.values()),
        # Approved reports without a payment yet are owed in full.
        awaiting_payment_amount=aggregate(
            payments[r.id].remaining_amount if r.id in payments else r.total_amount
            for r in approved
        ),
        proofs_in_review_count=sum(
            1 for p in payments.values() if p.status == PaymentStatus.PENDING_APPROVAL
        ),
    )


def admin_dashboard_stats(session: Session, *, now: datetime | None = None) -> AdminDashboardStats:
    now = now or utcnow()
    last_month, this_month = _month_bounds(now)
    this_count = _count_reports(session, Report.created_at >= this_month)
    last_count = _count_reports(
        session, Report.created_at >= last_month, Report.created_at < this_month
    )
    growth = ZERO
    if last_count:
        growth = round_money(Decimal(this_count - last_count) * 100 / last_count)

    active_users = session.scalar(
        select(func.count(distinct(Report.user_id))).where(
            Report.created_at >= now - ACTIVE_USER_WINDOW
        )
    )
    paid = session.scalar(
        select(func.coalesce(func.sum(Payment.amount - Payment.remaining_amount), 0))
    )
    outstanding = session.scalar(
        select(func.coalesce(func.sum(Payment.remaining_amount), 0)).where(
            Payment.status != PaymentStatus.COMPLETED
        )
    )
    return AdminDashboardStats(
        total_users=int(session.scalar(select(func.count()).select_from(User)) or 0),
        active_users=int(active_users or 0),
        total_reports=_count_reports(session),
        reports_this_month=this_count,
        reports_last_month=last_count,
        monthly_growth_percent=growth,
        paid_amount=_money(paid),
        outstanding_payment_amount=_money(outstanding),
    )


def list_recent_reports(session: Session, *, user: User, limit: int = RECENT_LIMIT) -> list[Report]:
    return list(
        session.scalars(
            select(Report)
            .where(Report.user_id == user.id)
            .order_by(Report.created_at.desc())
            .limit(limit)
        )
    )


def list_recent_payments(
    session: Session, *, user: User, limit: int = RECENT_LIMIT
) -> list[Payment]:
    return list(
        session.scalars(
            select(Payment)
            .where(Payment.user_id == user.id)
            .order_by(Payment.updated_at.desc())
            .limit(limit)
        )
    )


def recent_activity(session: Session, *, limit: int = 10) -> RecentActivity:
    """What a reviewer should look at next, plus the latest review decisions and comments."""
    pending_reports = session.scalars(
        select(Report)
        .where(Report.status == ReportStatus.PENDING_APPROVAL)
        .order_by(Report.submitted_at.desc())
        .limit(limit)
    ).all()
    pending_proofs = session.scalars(
        select(PaymentProof)
        .where(PaymentProof.status == ProofStatus.PENDING_APPROVAL)
        .order_by(PaymentProof.created_at.desc())
        .limit(limit)
    ).all()
    actions = session.scalars(
        select(HistoryEntry)
        .where(
            HistoryEntry.action.in_([a.value for a in REVIEW_ACTIONS]),
            HistoryEntry.entity.in_((HistoryEntity.REPORT, HistoryEntity.PAYMENT_PROOF)),
        )
        .order_by(HistoryEntry.occurred_at.desc())
        .limit(limit)
    ).all()
    return RecentActivity(
        pending_reports=list(pending_reports),
        pending_proofs=list(pending_proofs),
        recent_actions=list(actions),
    )
