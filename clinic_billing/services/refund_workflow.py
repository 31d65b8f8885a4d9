# FILE: clinic_billing/services/refund_workflow.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.core.rbac import (
    REFUND_APPROVER_PERMS,
    REFUND_REQUESTER_PERMS,
    Actor,
    can_approve_refunds,
    require_any,
)
from clinic_billing.models.billing import (
    Bill,
    BillItem,
    PaymentMethod,
    PaymentRecord,
    RecordType,
    RefundRequest,
    RefundRequestLine,
    RefundRequestStatus as RS,
    RefundSourceType,
)
from clinic_billing.services.audit_logger import log_audit
from clinic_billing.services.billing_errors import (
    ExceedsRefundable,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from clinic_billing.services.billing_ledger import (
    bill_snapshot,
    ledger_totals,
    ledger_tx,
    lock_bill,
    recompute_aggregates,
)
from clinic_billing.services.billing_math import D, money2
from clinic_billing.services.billing_notifications import RefundNotifier, RefundPaidEvent
from clinic_billing.utils.timezone import now_local

logger = logging.getLogger(__name__)

# Legal moves. PENDING_APPROVAL -> PAID is only honoured with direct pay on.
TRANSITIONS: Dict[RS, FrozenSet[RS]] = {
    RS.DRAFT: frozenset({RS.PENDING_APPROVAL, RS.APPROVED, RS.REJECTED, RS.CANCELLED}),
    RS.PENDING_APPROVAL: frozenset({RS.APPROVED, RS.REJECTED, RS.CANCELLED, RS.PAID}),
    RS.APPROVED: frozenset({RS.PAID, RS.CANCELLED}),
    RS.REJECTED: frozenset(),
    RS.PAID: frozenset(),
    RS.CANCELLED: frozenset(),
}

TERMINAL: FrozenSet[RS] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


def _guard(current: RS, target: RS, *, allow_direct_pay: bool = False) -> None:
    """The only place refund request legality is decided."""
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(current, target)
    if current == RS.PENDING_APPROVAL and target == RS.PAID and not allow_direct_pay:
        raise InvalidTransition(current, target)


def _get(x: Any, key: str, default: Any = None) -> Any:
    if isinstance(x, dict):
        return x.get(key, default)
    return getattr(x, key, default)


def _method_or_none(x) -> Optional[PaymentMethod]:
    if x is None or x == "":
        return None
    try:
        return PaymentMethod(x.value if hasattr(x, "value") else str(x))
    except ValueError:
        raise ValidationError(f"Unknown refund method: {x}",
                              details={"refund_method": str(x)})


def _request_view(req: RefundRequest) -> Dict[str, Any]:
    return {
        "bill_id": req.bill_id,
        "status": req.status.value,
        "total_amount": str(money2(req.total_amount)),
    }


class RefundWorkflow:
    """
    Refund request state machine.

    Every transition locks the bill row, then the request row, checks
    _guard() and moves the status with a compare-and-set UPDATE, so of two
    racing callers exactly one wins and the other gets InvalidTransition.
    """

    def __init__(self,
                 allow_direct_pay: Optional[bool] = None,
                 notifier: Optional[RefundNotifier] = None) -> None:
        if allow_direct_pay is None:
            allow_direct_pay = settings.REFUND_ALLOW_DIRECT_PAY
        self.allow_direct_pay = bool(allow_direct_pay)
        self.notifier = notifier or RefundNotifier()

    # -------------------------
    # Reads
    # -------------------------
    def get_request(self,
                    db: Session,
                    request_id: int,
                    *,
                    clinic_id: Optional[int] = None) -> RefundRequest:
        req = db.get(RefundRequest, int(request_id))
        if not req or (clinic_id is not None
                       and int(req.clinic_id) != int(clinic_id)):
            raise NotFound("Refund request not found",
                           details={"refund_request_id": request_id})
        return req

    def list_requests(self,
                      db: Session,
                      *,
                      clinic_id: int,
                      status: Optional[RS] = None,
                      bill_id: Optional[int] = None) -> List[RefundRequest]:
        q = db.query(RefundRequest).filter(
            RefundRequest.clinic_id == int(clinic_id))
        if status is not None:
            q = q.filter(RefundRequest.status == RS(status))
        if bill_id is not None:
            q = q.filter(RefundRequest.bill_id == int(bill_id))
        return q.order_by(RefundRequest.created_at.desc(),
                          RefundRequest.id.desc()).all()

    # -------------------------
    # Locking / CAS
    # -------------------------
    def _lock(self, db: Session, request_id: int, actor: Actor):
        req = self.get_request(db, request_id, clinic_id=actor.clinic_id)
        bill = lock_bill(db, req.bill_id)
        req = (db.query(RefundRequest).filter(
            RefundRequest.id == req.id).populate_existing().with_for_update().one())
        return bill, req

    def _move(self, db: Session, req: RefundRequest, target: RS,
              **values) -> None:
        expected = req.status
        _guard(expected, target, allow_direct_pay=self.allow_direct_pay)

        res = db.execute(
            update(RefundRequest).where(
                RefundRequest.id == req.id,
                RefundRequest.status == expected,
            ).values(status=target, updated_at=now_local(),
                     **values).execution_options(synchronize_session=False))
        if res.rowcount != 1:
            db.refresh(req)
            raise InvalidTransition(req.status, target)
        db.refresh(req)

    def _check_ceiling(self, db: Session, bill: Bill, amount: Decimal) -> None:
        ceiling = ledger_totals(db, bill.id).refundable
        if amount <= 0 or amount > ceiling:
            raise ExceedsRefundable(amount, ceiling)

    # -------------------------
    # Lines
    # -------------------------
    def _build_lines(self, bill: Bill, lines: Iterable[Any],
                     amount: Decimal) -> List[RefundRequestLine]:
        items = {int(it.id): it for it in bill.items}
        out: List[RefundRequestLine] = []
        seen = set()
        line_sum = Decimal("0")

        for idx, ln in enumerate(lines, start=1):
            item_id = _get(ln, "bill_item_id")
            item = items.get(int(item_id)) if item_id is not None else None
            if item is None:
                raise ValidationError(
                    f"Refund line {idx}: item does not belong to this bill",
                    details={"bill_item_id": item_id})
            if item.id in seen:
                raise ValidationError(
                    f"Refund line {idx}: item listed twice",
                    details={"bill_item_id": item.id})
            seen.add(item.id)

            qty = D(_get(ln, "quantity", 0))
            if qty < 0 or qty != qty.to_integral_value():
                raise ValidationError(
                    f"Refund line {idx}: quantity must be a whole number >= 0",
                    details={"bill_item_id": item.id})
            qty = int(qty)
            amt = money2(_get(ln, "amount"))
            if amt <= 0:
                raise ValidationError(f"Refund line {idx}: amount must be > 0",
                                      details={"bill_item_id": item.id})
            self._check_item_room(item, qty, amt)

            out.append(
                RefundRequestLine(bill_item_id=item.id, quantity=qty, amount=amt))
            line_sum += amt

        if out and money2(line_sum) != amount:
            raise ValidationError(
                "Refund lines must add up to the refund amount",
                details={
                    "lines_total": str(money2(line_sum)),
                    "amount": str(amount)
                })
        return out

    @staticmethod
    def _check_item_room(item: BillItem, qty: int, amt: Decimal) -> None:
        qty_left = int(item.quantity) - int(item.refunded_quantity or 0)
        amt_left = money2(item.total_price) - money2(item.refunded_amount)
        if qty > qty_left or amt > amt_left:
            raise ValidationError(
                f"Refund exceeds what is left on item '{item.item_name}'",
                details={
                    "bill_item_id": item.id,
                    "quantity_left": qty_left,
                    "amount_left": str(amt_left),
                })

    def _apply_lines(self, req: RefundRequest) -> None:
        for ln in req.lines:
            item = ln.bill_item
            self._check_item_room(item, int(ln.quantity), money2(ln.amount))
            item.refunded_quantity = int(item.refunded_quantity or 0) + int(
                ln.quantity)
            item.refunded_amount = money2(money2(item.refunded_amount) + money2(ln.amount))
            item.last_refund_reason = req.reason

    # -------------------------
    # Operations
    # -------------------------
    def create(
        self,
        db: Session,
        *,
        bill_id: int,
        amount,
        method,
        reason: Optional[str],
        actor: Actor,
        source_type=RefundSourceType.BILL,
        lines: Optional[Iterable[Any]] = None,
        submit: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> RefundRequest:
        require_any(actor, REFUND_REQUESTER_PERMS)
        amt = money2(amount)
        method = _method_or_none(method)
        try:
            source_type = RefundSourceType(getattr(source_type, "value", source_type))
        except ValueError:
            raise ValidationError(f"Unknown refund source: {source_type}")

        with ledger_tx(db):
            bill = lock_bill(db, bill_id, clinic_id=actor.clinic_id)
            recompute_aggregates(db, bill.id)
            self._check_ceiling(db, bill, amt)

            status = RS.PENDING_APPROVAL if submit and can_approve_refunds(
                actor) else RS.DRAFT
            req = RefundRequest(
                bill_id=bill.id,
                patient_id=bill.patient_id,
                clinic_id=bill.clinic_id,
                source_type=source_type,
                total_amount=amt,
                refund_method=method,
                reason=(reason or "").strip() or None,
                status=status,
                initiated_by=actor.id,
                metadata_json=metadata or None,
            )
            req.lines = self._build_lines(bill, lines or [], amt)
            db.add(req)
            db.flush()

            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_CREATE",
                      table_name="refund_requests",
                      record_id=req.id,
                      new_values=_request_view(req))

        logger.info("Refund request %s for %s on bill %s created as %s",
                    req.id, amt, bill.bill_number, req.status.value)
        return req

    def submit(self, db: Session, *, request_id: int,
               actor: Actor) -> RefundRequest:
        require_any(actor, REFUND_REQUESTER_PERMS)
        with ledger_tx(db):
            bill, req = self._lock(db, request_id, actor)
            before = _request_view(req)
            self._move(db, req, RS.PENDING_APPROVAL)
            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_SUBMIT",
                      table_name="refund_requests",
                      record_id=req.id,
                      old_values=before,
                      new_values=_request_view(req))
        return req

    def approve(self, db: Session, *, request_id: int,
                actor: Actor) -> RefundRequest:
        require_any(actor,
                    REFUND_APPROVER_PERMS,
                    message="You are not allowed to approve refunds.")
        with ledger_tx(db):
            bill, req = self._lock(db, request_id, actor)
            before = _request_view(req)
            _guard(req.status, RS.APPROVED, allow_direct_pay=self.allow_direct_pay)
            recompute_aggregates(db, bill.id)
            self._check_ceiling(db, bill, money2(req.total_amount))

            self._move(db, req, RS.APPROVED, approved_by=actor.id,
                       approved_at=now_local())
            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_APPROVE",
                      table_name="refund_requests",
                      record_id=req.id,
                      old_values=before,
                      new_values=_request_view(req))

        logger.info("Refund request %s approved by %s", req.id, actor.id)
        return req

    def reject(self, db: Session, *, request_id: int, reason: Optional[str],
               actor: Actor) -> RefundRequest:
        require_any(actor,
                    REFUND_APPROVER_PERMS,
                    message="You are not allowed to reject refunds.")
        with ledger_tx(db):
            bill, req = self._lock(db, request_id, actor)
            before = _request_view(req)
            self._move(db, req, RS.REJECTED,
                       rejected_reason=(reason or "").strip() or None)
            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_REJECT",
                      table_name="refund_requests",
                      record_id=req.id,
                      old_values=before,
                      new_values={
                          **_request_view(req), "rejected_reason":
                          req.rejected_reason
                      })

        logger.info("Refund request %s rejected by %s", req.id, actor.id)
        return req

    def cancel(self, db: Session, *, request_id: int,
               actor: Actor) -> RefundRequest:
        require_any(actor, REFUND_REQUESTER_PERMS)
        with ledger_tx(db):
            bill, req = self._lock(db, request_id, actor)
            before = _request_view(req)
            self._move(db, req, RS.CANCELLED, cancelled_at=now_local())
            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_CANCEL",
                      table_name="refund_requests",
                      record_id=req.id,
                      old_values=before,
                      new_values=_request_view(req))
        return req

    def mark_paid(self,
                  db: Session,
                  *,
                  request_id: int,
                  actor: Actor,
                  payment_method=None,
                  notes: Optional[str] = None) -> PaymentRecord:
        """
        Pay out an approved refund: refund record, status, item refunds and
        bill aggregates commit together. Subscribers hear about it after
        the commit.
        """
        require_any(actor,
                    REFUND_APPROVER_PERMS,
                    message="You are not allowed to pay out refunds.")
        with ledger_tx(db):
            bill, req = self._lock(db, request_id, actor)
            before = bill_snapshot(bill)
            _guard(req.status, RS.PAID, allow_direct_pay=self.allow_direct_pay)

            method = _method_or_none(payment_method) or req.refund_method
            if method is None:
                raise ValidationError("Refund payment method is required")

            amt = money2(req.total_amount)
            recompute_aggregates(db, bill.id)
            self._check_ceiling(db, bill, amt)

            paid_at = now_local()
            self._move(db, req, RS.PAID, paid_at=paid_at,
                       refund_method=method,
                       approved_by=req.approved_by or actor.id,
                       approved_at=req.approved_at or paid_at)

            rec = PaymentRecord(
                bill_id=bill.id,
                clinic_id=bill.clinic_id,
                record_type=RecordType.REFUND,
                payment_method=method,
                amount=amt,
                payment_date=paid_at,
                refund_request_id=req.id,
                reason=req.reason,
                notes=notes,
                received_by=actor.id,
                approved_by=req.approved_by,
            )
            db.add(rec)
            self._apply_lines(req)
            bill.refund_notes = req.reason or bill.refund_notes
            db.flush()

            recompute_aggregates(db, bill.id)
            log_audit(db,
                      user_id=actor.id,
                      action="REFUND_PAID",
                      table_name="refund_requests",
                      record_id=req.id,
                      old_values=before,
                      new_values={
                          "payment_record_id": rec.id,
                          "amount": str(amt),
                          "refund_method": method.value,
                          **bill_snapshot(bill)
                      })

        logger.info("Refund request %s paid: %s via %s on bill %s", req.id,
                    amt, method.value, bill.bill_number)
        self.notifier.publish(
            RefundPaidEvent(bill_id=bill.id,
                            refund_request_id=req.id,
                            amount=amt))
        return rec
