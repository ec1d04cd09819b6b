"""
Report, payment and payment-proof lifecycle.

Every status change of a report, its payment or a payment proof goes through
``apply_action``. Each transition:

* checks the actor and the action's preconditions,
* writes the new status with a conditional ``UPDATE ... WHERE status = :expected`` and
  treats a zero rowcount as a lost race,
* records ``HistoryEntry`` rows in the same database transaction,
* dispatches notifications after commit (failures are logged, never raised).

A guard failure is re-checked against the current state: repeating the action that put
the entity where it is (same action, same actor) is a no-op with ``applied=False``;
anything else raises ``InvalidTransition``.
"""

from __future__ import annotations

import enum
import hashlib
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import NoReturn

from fastapi import HTTPException, status
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reportflow.core.config import settings
from reportflow.core.errors import (
    FileTooLarge,
    IncompleteUpload,
    InvalidTransition,
    UnsupportedFileType,
    ValidationFailed,
)
from reportflow.core.logging import get_logger, log_event, log_exception, report_context
from reportflow.core.models import ZERO, utcnow
from reportflow.core.storage import get_storage
from reportflow.modules.audit.models import HistoryEntity, HistoryEntry
from reportflow.modules.extraction.amounts import MAX_AMOUNT, aggregate, round_money
from reportflow.modules.identity.models import User, UserRole
from reportflow.modules.identity.service import list_reviewers
from reportflow.modules.notifications.models import NotificationType
from reportflow.modules.notifications.service import notify, notify_many
from reportflow.modules.payments.models import (
    Payment,
    PaymentMethod,
    PaymentProof,
    PaymentStatus,
    ProofFileType,
    ProofStatus,
)
from reportflow.modules.reports.models import Report, ReportFileStatus, ReportStatus
from reportflow.modules.reports.service import (
    get_report,
    list_report_files,
    sanitize_filename,
)

logger = get_logger(__name__)

PROOF_EXTENSIONS = tuple(f".{t.value}" for t in ProofFileType)

# Payment statuses from which a new proof may be uploaded. No payment yet is allowed too.
PROOF_UPLOADABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.REJECTED, PaymentStatus.PARTIAL)
CLEARABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.REJECTED)


class WorkflowAction(str, enum.Enum):
    REPORT_SUBMITTED = "report_submitted"
    REPORT_APPROVED = "report_approved"
    REPORT_REJECTED = "report_rejected"
    PAYMENT_PROOF_UPLOADED = "payment_proof_uploaded"
    PAYMENT_PROOF_APPROVED = "payment_proof_approved"
    PAYMENT_PROOF_REJECTED = "payment_proof_rejected"
    PAYMENT_CLEARED = "payment_cleared"
    REPORT_COMMENTED = "report_commented"


# Reviewers comment on reports they can see in a queue or history: anything submitted.
COMMENTABLE_STATUSES = (
    ReportStatus.PENDING_APPROVAL,
    ReportStatus.APPROVED,
    ReportStatus.REJECTED,
    ReportStatus.PAID,
)


@dataclass(frozen=True)
class Submit:
    pass


@dataclass(frozen=True)
class Approve:
    comments: str | None = None


@dataclass(frozen=True)
class Reject:
    comments: str


@dataclass(frozen=True)
class UploadProof:
    method: PaymentMethod
    filename: str
    body: bytes = field(repr=False)
    content_type: str | None = None
    amount: Decimal | None = None
    notes: str | None = None
    transaction_id: str | None = None


@dataclass(frozen=True)
class ApproveProof:
    proof_id: uuid.UUID
    comments: str | None = None


@dataclass(frozen=True)
class RejectProof:
    proof_id: uuid.UUID
    comments: str


@dataclass(frozen=True)
class ClearPending:
    confirm: bool = False


@dataclass(frozen=True)
class Comment:
    comments: str


Action = (
    Submit | Approve | Reject | Comment | UploadProof | ApproveProof | RejectProof | ClearPending
)


@dataclass
class TransitionResult:
    applied: bool
    report: Report
    payment: Payment | None = None
    proof: PaymentProof | None = None
    history: list[HistoryEntry] = field(default_factory=list)


def apply_action(
    session: Session, *, report_id: uuid.UUID, actor: User, action: Action
) -> TransitionResult:
    report = get_report(session, report_id=report_id)
    handler = _HANDLERS.get(type(action))
    if handler is None:
        raise TypeError(f"Unknown workflow action: {type(action).__name__}")
    with report_context(str(report.id)):
        return handler(session, report=report, actor=actor, action=action)


# Report transitions


def _submit(session: Session, *, report: Report, actor: User, action: Submit) -> TransitionResult:
    _require_owner(report=report, actor=actor, allow_admin=True)
    if report.status == ReportStatus.PENDING:
        raise IncompleteUpload(
            "Report has no files. Upload at least one report file before submitting.",
            report_id=str(report.id),
            files=[],
        )
    if report.status != ReportStatus.PROCESSING:
        return _guard_failed(
            session,
            report=report,
            actor=actor,
            action=WorkflowAction.REPORT_SUBMITTED,
            entity=HistoryEntity.REPORT,
            entity_id=report.id,
            current=report.status,
            expected=(ReportStatus.PROCESSING,),
            target=ReportStatus.PENDING_APPROVAL,
        )

    files = list_report_files(session, report=report)
    offending = [f for f in files if f.status != ReportFileStatus.COMPLETED]
    if not files or offending:
        if not files:
            message = "Report has no files. Upload at least one report file before submitting."
        else:
            listed = ", ".join(f'"{f.filename}" ({f.status.value})' for f in offending)
            message = f"Report cannot be submitted until every file is processed: {listed}."
        raise IncompleteUpload(
            message,
            report_id=str(report.id),
            files=[{"filename": f.filename, "status": f.status.value} for f in offending],
        )

    total = aggregate(f.total_amount for f in files)
    if total > MAX_AMOUNT:
        raise ValidationFailed(
            f"Report total {total} is above the largest supported amount of {MAX_AMOUNT}. "
            "Split the files across more than one report.",
            report_id=str(report.id),
            total_amount=str(total),
        )
    result = session.execute(
        update(Report)
        .where(Report.id == report.id, Report.status == ReportStatus.PROCESSING)
        .values(
            status=ReportStatus.PENDING_APPROVAL,
            total_amount=total,
            submitted_at=utcnow(),
        )
    )
    if not result.rowcount:
        return _lost_race(
            session,
            report=report,
            actor=actor,
            action=WorkflowAction.REPORT_SUBMITTED,
            entity=HistoryEntity.REPORT,
            expected=(ReportStatus.PROCESSING,),
            target=ReportStatus.PENDING_APPROVAL,
        )
    # A file added after the check above committed before our status write.
    if {f.id for f in list_report_files(session, report=report)} != {f.id for f in files}:
        session.rollback()
        raise IncompleteUpload(
            "Report files changed while submitting. Wait for every file to be processed "
            "and submit again.",
            report_id=str(report.id),
        )

    entry = _record(
        session,
        report_id=report.id,
        entity=HistoryEntity.REPORT,
        entity_id=report.id,
        action=WorkflowAction.REPORT_SUBMITTED,
        previous=ReportStatus.PROCESSING,
        new=ReportStatus.PENDING_APPROVAL,
        actor=actor,
    )
    session.commit()
    session.refresh(report)
    _log_transition(report=report, entry=entry, total_amount=str(total))

    title = report.filename or "Report"
    reviewer_ids = [u.id for u in list_reviewers(session) if u.id != actor.id]
    _dispatch(
        session,
        lambda: notify_many(
            session,
            user_ids=reviewer_ids,
            type=NotificationType.REPORT_SUBMITTED,
            title="Report submitted for approval",
            message=f'{actor.display_name} submitted "{title}" for {total} and it awaits approval.',
            data={"report_id": str(report.id), "amount": str(total)},
        ),
        report=report,
        notification_type=NotificationType.REPORT_SUBMITTED,
    )
    return TransitionResult(applied=True, report=report, history=[entry])


def _approve(session: Session, *, report: Report, actor: User, action: Approve) -> TransitionResult:
    return _decide(
        session,
        report=report,
        actor=actor,
        approved=True,
        comments=(action.comments or "").strip() or None,
    )


def _reject(session: Session, *, report: Report, actor: User, action: Reject) -> TransitionResult:
    comments = (action.comments or "").strip()
    if not comments:
        raise ValidationFailed("A reason is required to reject a report.", field="comments")
    return _decide(session, report=report, actor=actor, approved=False, comments=comments)


def _decide(
    session: Session, *, report: Report, actor: User, approved: bool, comments: str | None
) -> TransitionResult:
    _require_reviewer(actor)
    action = WorkflowAction.REPORT_APPROVED if approved else WorkflowAction.REPORT_REJECTED
    target = ReportStatus.APPROVED if approved else ReportStatus.REJECTED
    if report.status != ReportStatus.PENDING_APPROVAL:
        return _guard_failed(
            session,
            report=report,
            actor=actor,
            action=action,
            entity=HistoryEntity.REPORT,
            entity_id=report.id,
            current=report.status,
            expected=(ReportStatus.PENDING_APPROVAL,),
            target=target,
        )

    values: dict = {
        "status": target,
        "manager_comments": comments,
        "decided_at": utcnow(),
        "decided_by_user_id": actor.id,
    }
    if not approved:
        values["rejection_reason"] = comments
    result = session.execute(
        update(Report)
        .where(Report.id == report.id, Report.status == ReportStatus.PENDING_APPROVAL)
        .values(**values)
    )
    if not result.rowcount:
        return _lost_race(
            session,
            report=report,
            actor=actor,
            action=action,
            entity=HistoryEntity.REPORT,
            expected=(ReportStatus.PENDING_APPROVAL,),
            target=target,
        )

    entry = _record(
        session,
        report_id=report.id,
        entity=HistoryEntity.REPORT,
        entity_id=report.id,
        action=action,
        previous=ReportStatus.PENDING_APPROVAL,
        new=target,
        actor=actor,
        comments=comments,
    )
    session.commit()
    session.refresh(report)
    _log_transition(report=report, entry=entry)

    title = report.filename or "Report"
    if approved:
        notification_type = NotificationType.REPORT_APPROVED
        heading = "Report approved"
        message = f'Your report "{title}" has been approved.'
    else:
        notification_type = NotificationType.REPORT_REJECTED
        heading = "Report rejected"
        message = f'Your report "{title}" has been rejected. Reason: {comments}'
    _dispatch(
        session,
        lambda: notify(
            session,
            user_id=report.user_id,
            type=notification_type,
            title=heading,
            message=message,
            data={"report_id": str(report.id), "comments": comments},
        ),
        report=report,
        notification_type=notification_type,
    )
    return TransitionResult(applied=True, report=report, history=[entry])


def _comment(session: Session, *, report: Report, actor: User, action: Comment) -> TransitionResult:
    """Attach a reviewer comment without deciding; the report keeps its status."""
    _require_reviewer(actor)
    comments = (action.comments or "").strip()
    if not comments:
        raise ValidationFailed("A comment cannot be empty.", field="comments")
    if report.status not in COMMENTABLE_STATUSES:
        _reject_transition(
            report=report,
            actor=actor,
            action=WorkflowAction.REPORT_COMMENTED,
            entity=HistoryEntity.REPORT,
            current=report.status,
            expected=COMMENTABLE_STATUSES,
        )

    observed = report.status
    result = session.execute(
        update(Report)
        .where(Report.id == report.id, Report.status == observed)
        .values(manager_comments=comments)
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(report)
        _reject_transition(
            report=report,
            actor=actor,
            action=WorkflowAction.REPORT_COMMENTED,
            entity=HistoryEntity.REPORT,
            current=report.status,
            expected=(observed,),
        )

    entry = _record(
        session,
        report_id=report.id,
        entity=HistoryEntity.REPORT,
        entity_id=report.id,
        action=WorkflowAction.REPORT_COMMENTED,
        previous=observed,
        new=observed,
        actor=actor,
        comments=comments,
    )
    session.commit()
    session.refresh(report)
    _log_transition(report=report, entry=entry)

    if report.user_id != actor.id:
        _dispatch(
            session,
            lambda: notify(
                session,
                user_id=report.user_id,
                type=NotificationType.REPORT_COMMENTED,
                title="Manager comment added",
                message=(
                    f'{actor.display_name} commented on "{report.filename or "Report"}": '
                    f"{comments}"
                ),
                data={"report_id": str(report.id), "comment": comments},
            ),
            report=report,
            notification_type=NotificationType.REPORT_COMMENTED,
        )
    return TransitionResult(applied=True, report=report, history=[entry])


# Payment transitions


def _upload_proof(
    session: Session, *, report: Report, actor: User, action: UploadProof
) -> TransitionResult:
    _require_owner(report=report, actor=actor, allow_admin=False)
    if report.status != ReportStatus.APPROVED:
        raise InvalidTransition(
            f"Report is {report.status.value}; payment proofs can only be uploaded for "
            "approved reports.",
            entity="report",
            current_status=report.status.value,
            expected_status=[ReportStatus.APPROVED.value],
        )

    filename = sanitize_filename(action.filename) or "proof"
    payment = _get_payment(session, report_id=report.id)
    if payment is not None and payment.status not in PROOF_UPLOADABLE_STATUSES:
        return _proof_upload_refused(
            session, report=report, actor=actor, action=action, filename=filename, payment=payment
        )

    file_type = _validate_proof_file(filename=filename, body=action.body)
    remaining = payment.remaining_amount if payment is not None else report.total_amount
    amount = _validate_proof_amount(amount=action.amount, remaining=remaining)

    key = f"reports/{report.id}/proofs/{uuid.uuid4()}-{filename}"
    stored = get_storage().put(key=key, body=action.body, content_type=action.content_type)

    previous = payment.status if payment is not None else None
    try:
        payment = _move_payment_to_review(session, report=report, payment=payment, action=action)
    except IntegrityError:
        payment = None
    if payment is None:
        session.rollback()
        get_storage().delete(key=stored.key)
        return _proof_upload_refused(
            session,
            report=report,
            actor=actor,
            action=action,
            filename=filename,
            payment=_get_payment(session, report_id=report.id),
        )

    proof = PaymentProof(
        payment_id=payment.id,
        report_id=report.id,
        user_id=actor.id,
        filename=filename,
        file_url=stored.key,
        file_type=file_type,
        content_type=action.content_type,
        byte_size=stored.byte_size,
        sha256=stored.sha256,
        amount=amount,
        notes=(action.notes or "").strip() or None,
        status=ProofStatus.PENDING_APPROVAL,
    )
    session.add(proof)
    session.flush()
    entries = [
        _record(
            session,
            report_id=report.id,
            entity=HistoryEntity.PAYMENT,
            entity_id=payment.id,
            action=WorkflowAction.PAYMENT_PROOF_UPLOADED,
            previous=previous,
            new=PaymentStatus.PENDING_APPROVAL,
            actor=actor,
        ),
        _record(
            session,
            report_id=report.id,
            entity=HistoryEntity.PAYMENT_PROOF,
            entity_id=proof.id,
            action=WorkflowAction.PAYMENT_PROOF_UPLOADED,
            previous=None,
            new=ProofStatus.PENDING_APPROVAL,
            actor=actor,
            comments=proof.notes,
        ),
    ]
    session.commit()
    session.refresh(payment)
    session.refresh(proof)
    _log_transition(
        report=report, entry=entries[0], payment_id=str(payment.id), proof_id=str(proof.id)
    )

    reviewer_ids = [u.id for u in list_reviewers(session) if u.id != actor.id]
    _dispatch(
        session,
        lambda: notify_many(
            session,
            user_ids=reviewer_ids,
            type=NotificationType.PAYMENT_PROOF_UPLOADED,
            title="Payment proof uploaded",
            message=(
                f"{actor.display_name} uploaded a payment proof of {amount} for "
                f'"{report.filename or "Report"}".'
            ),
            data={
                "report_id": str(report.id),
                "payment_id": str(payment.id),
                "proof_id": str(proof.id),
                "amount": str(amount),
            },
        ),
        report=report,
        notification_type=NotificationType.PAYMENT_PROOF_UPLOADED,
    )
    return TransitionResult(
        applied=True, report=report, payment=payment, proof=proof, history=entries
    )


def _proof_upload_refused(
    session: Session,
    *,
    report: Report,
    actor: User,
    action: UploadProof,
    filename: str,
    payment: Payment | None,
) -> TransitionResult:
    """
    Resolve an upload whose payment is not accepting proofs.

    Re-sending the file already awaiting review (same name and content) replays as a
    no-op; a different file is refused so it is never silently dropped.
    """
    pending = None
    if payment is not None and payment.status == PaymentStatus.PENDING_APPROVAL:
        pending = _pending_proof(session, payment_id=payment.id)
        same_file = (
            pending is not None
            and pending.filename == filename
            and pending.sha256 == hashlib.sha256(action.body).hexdigest()
        )
        if not same_file:
            _reject_transition(
                report=report,
                actor=actor,
                action=WorkflowAction.PAYMENT_PROOF_UPLOADED,
                entity=HistoryEntity.PAYMENT,
                current=payment.status,
                expected=PROOF_UPLOADABLE_STATUSES,
            )
    return _guard_failed(
        session,
        report=report,
        actor=actor,
        action=WorkflowAction.PAYMENT_PROOF_UPLOADED,
        entity=HistoryEntity.PAYMENT,
        entity_id=payment.id if payment else report.id,
        current=payment.status if payment else None,
        expected=PROOF_UPLOADABLE_STATUSES,
        target=PaymentStatus.PENDING_APPROVAL,
        payment=payment,
        proof=pending,
    )


def _move_payment_to_review(
    session: Session, *, report: Report, payment: Payment | None, action: UploadProof
) -> Payment | None:
    """Create the payment or move it to ``pending_approval``; None when the guard lost."""
    if payment is None:
        payment = Payment(
            report_id=report.id,
            user_id=report.user_id,
            amount=report.total_amount,
            remaining_amount=report.total_amount,
            method=action.method,
            status=PaymentStatus.PENDING_APPROVAL,
            transaction_id=action.transaction_id,
        )
        session.add(payment)
        session.flush()
        return payment

    values: dict = {"status": PaymentStatus.PENDING_APPROVAL, "method": action.method}
    if action.transaction_id:
        values["transaction_id"] = action.transaction_id
    result = session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == payment.status)
        .values(**values)
    )
    if not result.rowcount:
        return None
    return payment


def _approve_proof(
    session: Session, *, report: Report, actor: User, action: ApproveProof
) -> TransitionResult:
    return _decide_proof(
        session,
        report=report,
        actor=actor,
        proof_id=action.proof_id,
        approved=True,
        comments=(action.comments or "").strip() or None,
    )


def _reject_proof(
    session: Session, *, report: Report, actor: User, action: RejectProof
) -> TransitionResult:
    comments = (action.comments or "").strip()
    if not comments:
        raise ValidationFailed("A reason is required to reject a payment proof.", field="comments")
    return _decide_proof(
        session,
        report=report,
        actor=actor,
        proof_id=action.proof_id,
        approved=False,
        comments=comments,
    )


def _decide_proof(
    session: Session,
    *,
    report: Report,
    actor: User,
    proof_id: uuid.UUID,
    approved: bool,
    comments: str | None,
) -> TransitionResult:
    _require_reviewer(actor)
    proof = session.scalar(
        select(PaymentProof).where(
            PaymentProof.id == proof_id, PaymentProof.report_id == report.id
        )
    )
    if not proof:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment proof not found")
    payment = session.scalar(select(Payment).where(Payment.id == proof.payment_id))
    if not payment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    if approved:
        action = WorkflowAction.PAYMENT_PROOF_APPROVED
    else:
        action = WorkflowAction.PAYMENT_PROOF_REJECTED
    target = ProofStatus.APPROVED if approved else ProofStatus.REJECTED
    if proof.status != ProofStatus.PENDING_APPROVAL:
        return _guard_failed(
            session,
            report=report,
            actor=actor,
            action=action,
            entity=HistoryEntity.PAYMENT_PROOF,
            entity_id=proof.id,
            current=proof.status,
            expected=(ProofStatus.PENDING_APPROVAL,),
            target=target,
            payment=payment,
            proof=proof,
        )

    remaining = payment.remaining_amount
    if approved:
        remaining = max(round_money(payment.remaining_amount - proof.amount), ZERO)
        payment_target = PaymentStatus.COMPLETED if remaining == ZERO else PaymentStatus.PARTIAL
    else:
        payment_target = PaymentStatus.REJECTED

    now = utcnow()
    result = session.execute(
        update(PaymentProof)
        .where(PaymentProof.id == proof.id, PaymentProof.status == ProofStatus.PENDING_APPROVAL)
        .values(
            status=target,
            manager_comments=comments,
            decided_by_user_id=actor.id,
            decided_at=now,
        )
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(proof)
        return _guard_failed(
            session,
            report=report,
            actor=actor,
            action=action,
            entity=HistoryEntity.PAYMENT_PROOF,
            entity_id=proof.id,
            current=proof.status,
            expected=(ProofStatus.PENDING_APPROVAL,),
            target=target,
            payment=payment,
            proof=proof,
        )

    result = session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING_APPROVAL)
        .values(status=payment_target, remaining_amount=remaining)
    )
    if not result.rowcount:
        session.rollback()
        session.refresh(payment)
        raise InvalidTransition(
            f"Payment is {payment.status.value}; expected pending_approval while a proof "
            "awaits review.",
            entity="payment",
            current_status=payment.status.value,
            expected_status=[PaymentStatus.PENDING_APPROVAL.value],
        )

    entries = [
        _record(
            session,
            report_id=report.id,
            entity=HistoryEntity.PAYMENT_PROOF,
            entity_id=proof.id,
            action=action,
            previous=ProofStatus.PENDING_APPROVAL,
            new=target,
            actor=actor,
            comments=comments,
        ),
        _record(
            session,
            report_id=report.id,
            entity=HistoryEntity.PAYMENT,
            entity_id=payment.id,
            action=action,
            previous=PaymentStatus.PENDING_APPROVAL,
            new=payment_target,
            actor=actor,
            comments=comments,
        ),
    ]
    session.commit()
    session.refresh(proof)
    session.refresh(payment)
    _log_transition(
        report=report,
        entry=entries[0],
        payment_id=str(payment.id),
        payment_status=payment.status.value,
        remaining_amount=str(payment.remaining_amount),
    )

    if approved:
        notification_type = NotificationType.PAYMENT_PROOF_APPROVED
        heading = "Payment proof approved"
        if payment.status == PaymentStatus.COMPLETED:
            message = "Your payment proof has been approved and payment is now completed."
        else:
            message = (
                "Your payment proof has been approved. "
                f"Remaining amount: {payment.remaining_amount}."
            )
    else:
        notification_type = NotificationType.PAYMENT_PROOF_REJECTED
        heading = "Payment proof rejected"
        message = f"Your payment proof has been rejected. Reason: {comments}"
    _dispatch(
        session,
        lambda: notify(
            session,
            user_id=report.user_id,
            type=notification_type,
            title=heading,
            message=message,
            data={
                "report_id": str(report.id),
                "payment_id": str(payment.id),
                "proof_id": str(proof.id),
                "comments": comments,
            },
        ),
        report=report,
        notification_type=notification_type,
    )
    return TransitionResult(
        applied=True, report=report, payment=payment, proof=proof, history=entries
    )


def _clear_pending(
    session: Session, *, report: Report, actor: User, action: ClearPending
) -> TransitionResult:
    _require_owner(report=report, actor=actor, allow_admin=False)
    if not action.confirm:
        raise ValidationFailed(
            "Clearing a pending payment deletes its proofs; confirm to continue.",
            field="confirm",
        )

    payment = _get_payment(session, report_id=report.id)
    if payment is None:
        replay = _latest_history(session, report_id=report.id, entity=HistoryEntity.PAYMENT)
        if replay and _is_replay(replay, action=WorkflowAction.PAYMENT_CLEARED, actor=actor):
            return _noop(report=report, actor=actor, entry=replay)
        raise InvalidTransition(
            "Report has no payment to clear.",
            entity="payment",
            current_status=None,
            expected_status=[s.value for s in CLEARABLE_STATUSES],
        )
    if payment.status not in CLEARABLE_STATUSES:
        _reject_transition(
            report=report,
            actor=actor,
            action=WorkflowAction.PAYMENT_CLEARED,
            entity=HistoryEntity.PAYMENT,
            current=payment.status,
            expected=CLEARABLE_STATUSES,
        )

    proof_keys = list(
        session.scalars(select(PaymentProof.file_url).where(PaymentProof.payment_id == payment.id))
    )
    previous = payment.status
    payment_id = payment.id
    session.execute(delete(PaymentProof).where(PaymentProof.payment_id == payment_id))
    result = session.execute(
        delete(Payment).where(Payment.id == payment_id, Payment.status.in_(CLEARABLE_STATUSES))
    )
    if not result.rowcount:
        session.rollback()
        current = _get_payment(session, report_id=report.id)
        _reject_transition(
            report=report,
            actor=actor,
            action=WorkflowAction.PAYMENT_CLEARED,
            entity=HistoryEntity.PAYMENT,
            current=current.status if current else None,
            expected=CLEARABLE_STATUSES,
        )

    entry = _record(
        session,
        report_id=report.id,
        entity=HistoryEntity.PAYMENT,
        entity_id=payment_id,
        action=WorkflowAction.PAYMENT_CLEARED,
        previous=previous,
        new=None,
        actor=actor,
    )
    session.commit()
    orphaned = get_storage().delete_many(keys=proof_keys)
    _log_transition(
        report=report,
        entry=entry,
        payment_id=str(payment_id),
        proofs_removed=len(proof_keys),
        proof_files_orphaned=len(orphaned) or None,
    )

    _dispatch(
        session,
        lambda: notify(
            session,
            user_id=report.user_id,
            type=NotificationType.PAYMENT_CLEARED,
            title="Pending payment cleared",
            message=(
                f'The pending payment for "{report.filename or "Report"}" has been cleared. '
                "You can start a new payment."
            ),
            data={"report_id": str(report.id), "payment_id": str(payment_id)},
        ),
        report=report,
        notification_type=NotificationType.PAYMENT_CLEARED,
    )
    return TransitionResult(applied=True, report=report, history=[entry])


_HANDLERS: dict[type, Callable[..., TransitionResult]] = {
    Submit: _submit,
    Approve: _approve,
    Reject: _reject,
    Comment: _comment,
    UploadProof: _upload_proof,
    ApproveProof: _approve_proof,
    RejectProof: _reject_proof,
    ClearPending: _clear_pending,
}


# Guards


def _require_owner(*, report: Report, actor: User, allow_admin: bool) -> None:
    if report.user_id == actor.id:
        return
    if allow_admin and actor.role == UserRole.ADMIN:
        return
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def _require_reviewer(actor: User) -> None:
    if not actor.is_reviewer:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed")


def _validate_proof_file(*, filename: str, body: bytes) -> ProofFileType:
    lowered = filename.lower()
    ext = lowered.rsplit(".", 1)[-1] if "." in lowered else ""
    try:
        file_type = ProofFileType(ext)
    except ValueError:
        raise UnsupportedFileType(
            f'"{filename}" is not a supported payment proof. '
            f"Upload one of: {', '.join(PROOF_EXTENSIONS)}.",
            file_name=filename,
            allowed_extensions=list(PROOF_EXTENSIONS),
        ) from None
    if not body:
        raise ValidationFailed(f'"{filename}" is empty.', file_name=filename)
    if len(body) > settings.proof_max_bytes:
        raise FileTooLarge(
            f'"{filename}" is {len(body)} bytes; payment proofs may be at most '
            f"{settings.proof_max_bytes} bytes.",
            file_name=filename,
            max_bytes=settings.proof_max_bytes,
        )
    return file_type


def _validate_proof_amount(*, amount: Decimal | None, remaining: Decimal) -> Decimal:
    if remaining <= ZERO:
        raise ValidationFailed(
            "Nothing is left to pay on this report.", remaining_amount=str(remaining)
        )
    if amount is None:
        return round_money(remaining)
    amount = round_money(Decimal(amount))
    if amount <= ZERO or amount > remaining:
        raise ValidationFailed(
            f"Proof amount must be greater than 0 and at most the remaining {remaining}.",
            field="amount",
            remaining_amount=str(remaining),
        )
    return amount


def _get_payment(session: Session, *, report_id: uuid.UUID) -> Payment | None:
    return session.scalar(select(Payment).where(Payment.report_id == report_id))


def _pending_proof(session: Session, *, payment_id: uuid.UUID) -> PaymentProof | None:
    return session.scalar(
        select(PaymentProof)
        .where(
            PaymentProof.payment_id == payment_id,
            PaymentProof.status == ProofStatus.PENDING_APPROVAL,
        )
        .order_by(PaymentProof.created_at.desc())
        .limit(1)
    )


def _latest_history(
    session: Session,
    *,
    report_id: uuid.UUID,
    entity: HistoryEntity,
    entity_id: uuid.UUID | None = None,
) -> HistoryEntry | None:
    q = select(HistoryEntry).where(
        HistoryEntry.report_id == report_id, HistoryEntry.entity == entity
    )
    if entity_id is not None:
        q = q.where(HistoryEntry.entity_id == entity_id)
    return session.scalar(q.order_by(HistoryEntry.occurred_at.desc()).limit(1))


def _is_replay(entry: HistoryEntry, *, action: WorkflowAction, actor: User) -> bool:
    return entry.action == action.value and entry.actor_user_id == actor.id


def _lost_race(
    session: Session,
    *,
    report: Report,
    actor: User,
    action: WorkflowAction,
    entity: HistoryEntity,
    expected: Iterable[enum.Enum],
    target: enum.Enum,
) -> TransitionResult:
    session.rollback()
    session.refresh(report)
    return _guard_failed(
        session,
        report=report,
        actor=actor,
        action=action,
        entity=entity,
        entity_id=report.id,
        current=report.status,
        expected=expected,
        target=target,
    )


def _guard_failed(
    session: Session,
    *,
    report: Report,
    actor: User,
    action: WorkflowAction,
    entity: HistoryEntity,
    entity_id: uuid.UUID,
    current: enum.Enum | None,
    expected: Iterable[enum.Enum],
    target: enum.Enum,
    payment: Payment | None = None,
    proof: PaymentProof | None = None,
) -> TransitionResult:
    if current == target:
        latest = _latest_history(session, report_id=report.id, entity=entity, entity_id=entity_id)
        if latest and _is_replay(latest, action=action, actor=actor):
            if entity == HistoryEntity.PAYMENT and proof is None:
                proof = _pending_proof(session, payment_id=entity_id)
            return _noop(report=report, actor=actor, entry=latest, payment=payment, proof=proof)
    _reject_transition(
        report=report,
        actor=actor,
        action=action,
        entity=entity,
        current=current,
        expected=expected,
    )


def _reject_transition(
    *,
    report: Report,
    actor: User,
    action: WorkflowAction,
    entity: HistoryEntity,
    current: enum.Enum | None,
    expected: Iterable[enum.Enum],
) -> NoReturn:
    expected_values = [e.value for e in expected]
    current_value = current.value if current is not None else None
    log_event(
        logger,
        "workflow.transition.rejected",
        report_id=str(report.id),
        action=action.value,
        entity=entity.value,
        actor_user_id=str(actor.id),
        current_status=current_value,
        expected_status=expected_values,
    )
    raise InvalidTransition(
        f"Cannot apply {action.value}: {entity.value.replace('_', ' ')} is "
        f"{current_value or 'missing'}, expected {' or '.join(expected_values)}.",
        entity=entity.value,
        action=action.value,
        current_status=current_value,
        expected_status=expected_values,
    )


def _noop(
    *,
    report: Report,
    actor: User,
    entry: HistoryEntry,
    payment: Payment | None = None,
    proof: PaymentProof | None = None,
) -> TransitionResult:
    log_event(
        logger,
        "workflow.transition.replayed",
        report_id=str(report.id),
        action=entry.action,
        entity=entry.entity.value,
        actor_user_id=str(actor.id),
    )
    return TransitionResult(applied=False, report=report, payment=payment, proof=proof)


# Side effects


def _record(
    session: Session,
    *,
    report_id: uuid.UUID,
    entity: HistoryEntity,
    entity_id: uuid.UUID,
    action: WorkflowAction,
    previous: enum.Enum | None,
    new: enum.Enum | None,
    actor: User,
    comments: str | None = None,
) -> HistoryEntry:
    entry = HistoryEntry(
        report_id=report_id,
        entity=entity,
        entity_id=entity_id,
        actor_user_id=actor.id,
        action=action.value,
        previous_status=previous.value if previous is not None else None,
        new_status=new.value if new is not None else None,
        comments=comments,
    )
    session.add(entry)
    return entry


def _log_transition(*, report: Report, entry: HistoryEntry, **fields) -> None:
    log_event(
        logger,
        "workflow.transition",
        report_id=str(report.id),
        action=entry.action,
        entity=entry.entity.value,
        entity_id=str(entry.entity_id),
        from_status=entry.previous_status,
        to_status=entry.new_status,
        actor_user_id=str(entry.actor_user_id),
        **fields,
    )


def _dispatch(
    session: Session,
    send: Callable[[], object],
    *,
    report: Report,
    notification_type: NotificationType,
) -> None:
    try:
        send()
    except Exception:
        session.rollback()
        log_exception(
            logger,
            "notification.dispatch.failure",
            report_id=str(report.id),
            notification_type=notification_type.value,
        )
