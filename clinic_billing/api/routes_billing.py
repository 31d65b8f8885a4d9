# FILE: clinic_billing/api/routes_billing.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_actor, get_db
from clinic_billing.api.response import ok
from clinic_billing.core.rbac import Actor, BillingPerm, require_any
from clinic_billing.schemas.billing import (
    BillCreate,
    BillOut,
    PaymentRecordOut,
    RefundableOut,
)
from clinic_billing.services.billing_ledger import (
    create_bill,
    get_bill,
    get_refundable_amount,
    list_bill_payments,
    recompute_and_commit,
)

router = APIRouter(prefix="/billing/bills", tags=["Billing"])

# Anyone with a billing permission may read
READ_PERMS = list(BillingPerm)


@router.post("")
def create_bill_api(
        payload: BillCreate,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    bill = create_bill(
        db,
        clinic_id=actor.clinic_id,
        patient_id=payload.patient_id,
        visit_id=payload.visit_id,
        due_date=payload.due_date,
        notes=payload.notes,
        items=payload.items,
        actor=actor,
    )
    return ok(BillOut.model_validate(bill), status_code=201)


@router.get("/{bill_id}")
def get_bill_api(
        bill_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, READ_PERMS)
    bill = get_bill(db, bill_id, clinic_id=actor.clinic_id)
    return ok(BillOut.model_validate(bill))


@router.get("/{bill_id}/payments")
def list_bill_payments_api(
        bill_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, READ_PERMS)
    bill = get_bill(db, bill_id, clinic_id=actor.clinic_id)
    rows = list_bill_payments(db, bill.id)
    return ok([PaymentRecordOut.model_validate(r) for r in rows])


@router.get("/{bill_id}/refundable")
def refundable_api(
        bill_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, READ_PERMS)
    bill = get_bill(db, bill_id, clinic_id=actor.clinic_id)
    return ok(
        RefundableOut(bill_id=bill.id,
                      refundable_amount=get_refundable_amount(db, bill.id)))


@router.post("/{bill_id}/recompute")
def recompute_api(
        bill_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, [BillingPerm.MANAGE_BILLING])
    bill = recompute_and_commit(db, bill_id, clinic_id=actor.clinic_id)
    return ok(BillOut.model_validate(bill))
