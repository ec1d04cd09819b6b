from __future__ import annotations

import uuid
from dataclasses import asdict
from decimal import Decimal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.orm import Session

from reportflow.api.deps import (
    accessible_report,
    get_current_user,
    require_reviewer,
    require_role,
)
from reportflow.core.db import db_session
from reportflow.core.logging import get_logger, log_event
from reportflow.modules.identity.models import User, UserRole
from reportflow.modules.payments.models import PaymentMethod
from reportflow.modules.payments.schemas import PaymentOut, PaymentProofOut
from reportflow.modules.payments.service import get_proof_for_user
from reportflow.modules.reports.models import Report
from reportflow.modules.reports.schemas import ReportOut
from reportflow.modules.reports.service import get_report_for_user
from reportflow.modules.workflow.lifecycle import (
    Action,
    Approve,
    ApproveProof,
    ClearPending,
    Comment,
    Reject,
    RejectProof,
    Submit,
    TransitionResult,
    UploadProof,
    apply_action,
)
from reportflow.modules.workflow.schemas import (
    AdminDashboardStatsOut,
    ClearPaymentRequest,
    CommentRequest,
    DashboardStatsOut,
    DecisionRequest,
    HistoryEntryOut,
    RecentActivityOut,
    RejectionRequest,
    TransitionOut,
    UserDashboardStatsOut,
)
from reportflow.modules.workflow.service import (
    admin_dashboard_stats,
    dashboard_stats,
    list_history,
    list_proofs_awaiting_approval,
    list_recent_payments,
    list_recent_reports,
    list_reports_awaiting_approval,
    recent_activity,
    user_dashboard_stats,
)

router = APIRouter(tags=["workflow"])
logger = get_logger(__name__)


def _to_out(result: TransitionResult) -> TransitionOut:
    return TransitionOut(
        applied=result.applied,
        report=ReportOut.model_validate(result.report, from_attributes=True),
        payment=(
            PaymentOut.model_validate(result.payment, from_attributes=True)
            if result.payment is not None
            else None
        ),
        proof=(
            PaymentProofOut.model_validate(result.proof, from_attributes=True)
            if result.proof is not None
            else None
        ),
        history=[HistoryEntryOut.model_validate(h, from_attributes=True) for h in result.history],
    )


def _apply(session: Session, *, report_id: uuid.UUID, user: User, action: Action) -> TransitionOut:
    get_report_for_user(session, report_id=report_id, user=user)
    return _to_out(apply_action(session, report_id=report_id, actor=user, action=action))


@router.post("/reports/{report_id}/submit", response_model=TransitionOut)
def submit_report_endpoint(
    report_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TransitionOut:
    return _apply(session, report_id=report_id, user=user, action=Submit())


@router.post("/reports/{report_id}/approve", response_model=TransitionOut)
def approve_report_endpoint(
    report_id: uuid.UUID,
    payload: DecisionRequest | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(require_reviewer),
) -> TransitionOut:
    comments = payload.comments if payload else None
    return _apply(session, report_id=report_id, user=user, action=Approve(comments=comments))


@router.post("/reports/{report_id}/reject", response_model=TransitionOut)
def reject_report_endpoint(
    report_id: uuid.UUID,
    payload: RejectionRequest,
    session: Session = Depends(db_session),
    user: User = Depends(require_reviewer),
) -> TransitionOut:
    return _apply(session, report_id=report_id, user=user, action=Reject(comments=payload.comments))


@router.post("/reports/{report_id}/comments", response_model=TransitionOut)
def comment_report_endpoint(
    report_id: uuid.UUID,
    payload: CommentRequest,
    session: Session = Depends(db_session),
    user: User = Depends(require_reviewer),
) -> TransitionOut:
    action = Comment(comments=payload.comments)
    return _apply(session, report_id=report_id, user=user, action=action)


@router.post("/reports/{report_id}/payment/proofs", response_model=TransitionOut)
async def upload_proof_endpoint(
    report_id: uuid.UUID,
    upload: UploadFile = File(...),
    method: PaymentMethod = Form(...),
    amount: Decimal | None = Form(None),
    notes: str | None = Form(None),
    transaction_id: str | None = Form(None),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TransitionOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        report_id=str(report_id),
        filename=upload.filename or "proof",
        content_type=upload.content_type,
        byte_size=len(body),
        upload_kind="payment_proof",
    )
    action = UploadProof(
        method=method,
        filename=upload.filename or "proof",
        body=body,
        content_type=upload.content_type,
        amount=amount,
        notes=notes,
        transaction_id=transaction_id,
    )
    return _apply(session, report_id=report_id, user=user, action=action)


@router.post("/proofs/{proof_id}/approve", response_model=TransitionOut)
def approve_proof_endpoint(
    proof_id: uuid.UUID,
    payload: DecisionRequest | None = None,
    session: Session = Depends(db_session),
    user: User = Depends(require_reviewer),
) -> TransitionOut:
    proof = get_proof_for_user(session, proof_id=proof_id, user=user)
    action = ApproveProof(proof_id=proof.id, comments=payload.comments if payload else None)
    return _apply(session, report_id=proof.report_id, user=user, action=action)


@router.post("/proofs/{proof_id}/reject", response_model=TransitionOut)
def reject_proof_endpoint(
    proof_id: uuid.UUID,
    payload: RejectionRequest,
    session: Session = Depends(db_session),
    user: User = Depends(require_reviewer),
) -> TransitionOut:
    proof = get_proof_for_user(session, proof_id=proof_id, user=user)
    action = RejectProof(proof_id=proof.id, comments=payload.comments)
    return _apply(session, report_id=proof.report_id, user=user, action=action)


@router.post("/reports/{report_id}/payment/clear", response_model=TransitionOut)
def clear_payment_endpoint(
    report_id: uuid.UUID,
    payload: ClearPaymentRequest,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> TransitionOut:
    return _apply(
        session, report_id=report_id, user=user, action=ClearPending(confirm=payload.confirm)
    )


@router.get("/reports/{report_id}/history", response_model=list[HistoryEntryOut])
def report_history_endpoint(
    report: Report = Depends(accessible_report),
    session: Session = Depends(db_session),
) -> list[HistoryEntryOut]:
    return [
        HistoryEntryOut.model_validate(h, from_attributes=True)
        for h in list_history(session, report=report)
    ]


@router.get("/approvals/inbox", response_model=list[ReportOut])
def approval_inbox(
    session: Session = Depends(db_session),
    _: User = Depends(require_reviewer),
) -> list[ReportOut]:
    return [
        ReportOut.model_validate(r, from_attributes=True)
        for r in list_reports_awaiting_approval(session)
    ]


@router.get("/approvals/proofs", response_model=list[PaymentProofOut])
def proof_queue(
    session: Session = Depends(db_session),
    _: User = Depends(require_reviewer),
) -> list[PaymentProofOut]:
    return [
        PaymentProofOut.model_validate(p, from_attributes=True)
        for p in list_proofs_awaiting_approval(session)
    ]


@router.get("/manager/dashboard-stats", response_model=DashboardStatsOut)
def dashboard_stats_endpoint(
    session: Session = Depends(db_session),
    _: User = Depends(require_reviewer),
) -> DashboardStatsOut:
    return DashboardStatsOut(**asdict(dashboard_stats(session)))


@router.get("/manager/recent-activity", response_model=RecentActivityOut)
def recent_activity_endpoint(
    limit: int = Query(10, ge=1, le=50),
    session: Session = Depends(db_session),
    _: User = Depends(require_reviewer),
) -> RecentActivityOut:
    activity = recent_activity(session, limit=limit)
    return RecentActivityOut(
        pending_reports=[
            ReportOut.model_validate(r, from_attributes=True) for r in activity.pending_reports
        ],
        pending_proofs=[
            PaymentProofOut.model_validate(p, from_attributes=True) for p in activity.pending_proofs
        ],
        recent_actions=[
            HistoryEntryOut.model_validate(h, from_attributes=True) for h in activity.recent_actions
        ],
    )


@router.get("/admin/dashboard-stats", response_model=AdminDashboardStatsOut)
def admin_dashboard_stats_endpoint(
    session: Session = Depends(db_session),
    _: User = Depends(require_role(UserRole.ADMIN)),
) -> AdminDashboardStatsOut:
    return AdminDashboardStatsOut(**asdict(admin_dashboard_stats(session)))


@router.get("/dashboard/stats", response_model=UserDashboardStatsOut)
def user_dashboard_stats_endpoint(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> UserDashboardStatsOut:
    return UserDashboardStatsOut(**asdict(user_dashboard_stats(session, user=user)))


@router.get("/dashboard/recent-reports", response_model=list[ReportOut])
def recent_reports_endpoint(
    limit: int = Query(5, ge=1, le=50),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[ReportOut]:
    return [
        ReportOut.model_validate(r, from_attributes=True)
        for r in list_recent_reports(session, user=user, limit=limit)
    ]


@router.get("/dashboard/recent-payments", response_model=list[PaymentOut])
def recent_payments_endpoint(
    limit: int = Query(5, ge=1, le=50),
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> list[PaymentOut]:
    return [
        PaymentOut.model_validate(p, from_attributes=True)
        for p in list_recent_payments(session, user=user, limit=limit)
    ]
