from __future__ import annotations

import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from reportflow.api.deps import accessible_report, get_current_user
from reportflow.core.db import db_session
from reportflow.core.storage import ObjectNotFound, get_storage
from reportflow.modules.identity.models import User
from reportflow.modules.payments.schemas import (
    PaymentHistoryOut,
    PaymentOut,
    PaymentProofOut,
    PaymentStatsOut,
)
from reportflow.modules.payments.service import (
    get_payment_for_report,
    get_proof_for_user,
    list_payments_for_user,
    list_proofs_for_report,
    summarize_payments,
)
from reportflow.modules.reports.models import Report

router = APIRouter(tags=["payments"])


@router.get("/reports/{report_id}/payment", response_model=PaymentOut | None)
def get_report_payment(
    report: Report = Depends(accessible_report),
    session: Session = Depends(db_session),
) -> PaymentOut | None:
    payment = get_payment_for_report(session, report=report)
    if payment is None:
        return None
    return PaymentOut.model_validate(payment, from_attributes=True)


@router.get("/reports/{report_id}/payment/proofs", response_model=list[PaymentProofOut])
def list_report_proofs(
    report: Report = Depends(accessible_report),
    session: Session = Depends(db_session),
) -> list[PaymentProofOut]:
    return [
        PaymentProofOut.model_validate(p, from_attributes=True)
        for p in list_proofs_for_report(session, report=report)
    ]


@router.get("/payments", response_model=PaymentHistoryOut)
def payment_history(
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> PaymentHistoryOut:
    payments = list_payments_for_user(session, user=user)
    return PaymentHistoryOut(
        payments=[PaymentOut.model_validate(p, from_attributes=True) for p in payments],
        stats=PaymentStatsOut(**asdict(summarize_payments(payments))),
    )


@router.get("/proofs/{proof_id}/download")
def download_proof(
    proof_id: uuid.UUID,
    session: Session = Depends(db_session),
    user: User = Depends(get_current_user),
) -> Response:
    proof = get_proof_for_user(session, proof_id=proof_id, user=user)
    try:
        body = get_storage().get(key=proof.file_url)
    except ObjectNotFound as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f'The file for proof "{proof.filename}" is missing from storage.',
        ) from e
    return Response(
        content=body,
        media_type=proof.content_type or "application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{proof.filename}"'},
    )
