# FILE: clinic_billing/api/routes_billing_payments.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_actor, get_db, get_payment_recorder
from clinic_billing.api.response import ok
from clinic_billing.core.rbac import Actor
from clinic_billing.schemas.billing import AdjustmentIn, PaymentIn, PaymentRecordOut
from clinic_billing.services.billing_payment_service import PaymentRecorder

router = APIRouter(prefix="/billing/bills", tags=["Billing Payments"])


@router.post("/{bill_id}/payments")
def record_payment_api(
        bill_id: int,
        payload: PaymentIn,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        recorder: PaymentRecorder = Depends(get_payment_recorder),
):
    rec = recorder.record_payment(
        db,
        bill_id=bill_id,
        amount=payload.amount,
        method=payload.payment_method,
        received_by=actor,
        reference=payload.reference_no,
        notes=payload.notes,
        payment_date=payload.payment_date,
    )
    return ok(PaymentRecordOut.model_validate(rec), status_code=201)


@router.post("/{bill_id}/adjustments")
def record_adjustment_api(
        bill_id: int,
        payload: AdjustmentIn,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        recorder: PaymentRecorder = Depends(get_payment_recorder),
):
    rec = recorder.record_adjustment(
        db,
        bill_id=bill_id,
        amount=payload.amount,
        reason=payload.reason,
        actor=actor,
    )
    return ok(PaymentRecordOut.model_validate(rec), status_code=201)
