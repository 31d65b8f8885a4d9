# FILE: clinic_billing/api/routes_billing_refunds.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_actor, get_db, get_refund_workflow
from clinic_billing.api.response import ok
from clinic_billing.core.rbac import Actor, BillingPerm, require_any
from clinic_billing.models.billing import RefundRequestStatus
from clinic_billing.schemas.billing import (
    PaymentRecordOut,
    RefundCreate,
    RefundPayIn,
    RefundRejectIn,
    RefundRequestOut,
)
from clinic_billing.services.refund_workflow import RefundWorkflow

router = APIRouter(prefix="/billing", tags=["Billing Refunds"])


@router.post("/bills/{bill_id}/refunds")
def create_refund_api(
        bill_id: int,
        payload: RefundCreate,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    req = wf.create(
        db,
        bill_id=bill_id,
        amount=payload.amount,
        method=payload.refund_method,
        reason=payload.reason,
        actor=actor,
        source_type=payload.source_type,
        lines=payload.lines,
        submit=payload.submit,
        metadata=payload.metadata,
    )
    return ok(RefundRequestOut.model_validate(req), status_code=201)


@router.get("/refunds")
def list_refunds_api(
        status: Optional[RefundRequestStatus] = Query(None),
        bill_id: Optional[int] = Query(None),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    require_any(actor, list(BillingPerm))
    rows = wf.list_requests(db,
                            clinic_id=actor.clinic_id,
                            status=status,
                            bill_id=bill_id)
    return ok([RefundRequestOut.model_validate(r) for r in rows],
              meta={"count": len(rows)})


@router.get("/refunds/{request_id}")
def get_refund_api(
        request_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    require_any(actor, list(BillingPerm))
    req = wf.get_request(db, request_id, clinic_id=actor.clinic_id)
    return ok(RefundRequestOut.model_validate(req))


@router.post("/refunds/{request_id}/submit")
def submit_refund_api(
        request_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    req = wf.submit(db, request_id=request_id, actor=actor)
    return ok(RefundRequestOut.model_validate(req))


@router.post("/refunds/{request_id}/approve")
def approve_refund_api(
        request_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    req = wf.approve(db, request_id=request_id, actor=actor)
    return ok(RefundRequestOut.model_validate(req))


@router.post("/refunds/{request_id}/reject")
def reject_refund_api(
        request_id: int,
        payload: Optional[RefundRejectIn] = Body(None),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    payload = payload or RefundRejectIn()
    req = wf.reject(db,
                    request_id=request_id,
                    reason=payload.reason,
                    actor=actor)
    return ok(RefundRequestOut.model_validate(req))


@router.post("/refunds/{request_id}/mark-paid")
def mark_refund_paid_api(
        request_id: int,
        payload: Optional[RefundPayIn] = Body(None),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    payload = payload or RefundPayIn()
    rec = wf.mark_paid(db,
                       request_id=request_id,
                       actor=actor,
                       payment_method=payload.payment_method,
                       notes=payload.notes)
    return ok(PaymentRecordOut.model_validate(rec))


@router.post("/refunds/{request_id}/cancel")
def cancel_refund_api(
        request_id: int,
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
        wf: RefundWorkflow = Depends(get_refund_workflow),
):
    req = wf.cancel(db, request_id=request_id, actor=actor)
    return ok(RefundRequestOut.model_validate(req))
