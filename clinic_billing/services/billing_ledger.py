# FILE: clinic_billing/services/billing_ledger.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

from sqlalchemy.orm import Session

from clinic_billing.core.rbac import Actor, BillingPerm, require_any
from clinic_billing.models.billing import (
    Bill,
    BillItem,
    ItemType,
    PaymentRecord,
    PaymentStatus,
    RecordType,
    RefundRequest,
    RefundRequestStatus,
    RefundStatus,
)
from clinic_billing.services.audit_logger import log_audit
from clinic_billing.services.billing_errors import (
    ConsistencyViolation,
    NotFound,
    ValidationError,
)
from clinic_billing.services.billing_math import ZERO, D, compute_line_amounts, money2
from clinic_billing.services.billing_numbers import next_bill_number
from clinic_billing.services.error_logger import format_exception, log_error
from clinic_billing.utils.timezone import now_local, to_local_naive, today_local

logger = logging.getLogger(__name__)

# Requests that still hold a claim on the bill's refundable amount
OPEN_REFUND_STATUSES = (
    RefundRequestStatus.PENDING_APPROVAL,
    RefundRequestStatus.APPROVED,
)


class PatientLookup(Protocol):
    """Patient / visit directory. Used only for display fields on the bill."""

    def get_patient(self, patient_id: int) -> Optional[Dict[str, Any]]:
        ...

    def get_visit(self, visit_id: int) -> Optional[Dict[str, Any]]:
        ...


@dataclass(frozen=True)
class LedgerTotals:
    """
    Record sums for one bill. `collected` counts payment records only;
    `paid` adds signed adjustments and drives the balance. Refunds are
    capped by cash actually collected.
    """

    items_total: Decimal
    collected: Decimal
    adjusted: Decimal
    refund_records: Decimal
    refunded: Decimal
    open_requests: int
    last_refund_at: Optional[datetime]

    @property
    def paid(self) -> Decimal:
        return money2(self.collected + self.adjusted)

    @property
    def refund_base(self) -> Decimal:
        # a negative adjustment can take paid below what was collected
        return min(self.collected, self.paid)

    @property
    def refundable(self) -> Decimal:
        return max(money2(self.refund_base - self.refunded), ZERO)


# -------------------------
# Transaction boundary
# -------------------------
@contextmanager
def ledger_tx(db: Session) -> Iterator[None]:
    """
    One bill-scoped unit of work: commit on success, roll back on any error.
    Consistency violations are persisted to error_logs after the rollback.
    """
    try:
        yield
        db.commit()
    except ConsistencyViolation as exc:
        db.rollback()
        logger.critical("Ledger consistency violation: %s", exc.message)
        log_error(
            db,
            description=exc.message,
            module=__name__,
            function="ledger_tx",
            http_status=exc.status_code,
            request_payload=exc.details or None,
            stack_trace=format_exception(exc),
        )
        raise
    except Exception:
        db.rollback()
        raise


def _get(x: Any, key: str, default: Any = None) -> Any:
    if isinstance(x, dict):
        return x.get(key, default)
    return getattr(x, key, default)


def _enum_value(x):
    return x.value if hasattr(x, "value") else x


def bill_snapshot(bill: Bill) -> Dict[str, Any]:
    return {
        "total_amount": str(money2(bill.total_amount)),
        "paid_amount": str(money2(bill.paid_amount)),
        "balance_amount": str(money2(bill.balance_amount)),
        "total_refunded_amount": str(money2(bill.total_refunded_amount)),
        "payment_status": _enum_value(bill.payment_status),
        "refund_status": _enum_value(bill.refund_status),
    }


# -------------------------
# Reads
# -------------------------
def get_bill(db: Session,
             bill_id: int,
             *,
             clinic_id: Optional[int] = None) -> Bill:
    bill = db.get(Bill, int(bill_id))
    if not bill or (clinic_id is not None
                    and int(bill.clinic_id) != int(clinic_id)):
        raise NotFound("Bill not found", details={"bill_id": bill_id})
    return bill


def lock_bill(db: Session,
              bill_id: int,
              *,
              clinic_id: Optional[int] = None) -> Bill:
    """
    SELECT ... FOR UPDATE on the bill row. Every ledger write for a bill
    holds this lock until commit, so read-modify-write of the aggregates
    never interleaves.
    """
    bill = (db.query(Bill).filter(
        Bill.id == int(bill_id)).populate_existing().with_for_update().first())
    if not bill or (clinic_id is not None
                    and int(bill.clinic_id) != int(clinic_id)):
        raise NotFound("Bill not found", details={"bill_id": bill_id})
    return bill


def list_bill_payments(db: Session, bill_id: int) -> List[PaymentRecord]:
    return (db.query(PaymentRecord).filter(
        PaymentRecord.bill_id == int(bill_id)).order_by(
            PaymentRecord.payment_date.asc(), PaymentRecord.id.asc()).all())


def ledger_totals(db: Session, bill_id: int) -> LedgerTotals:
    """
    Sum the committed (and flushed) records of one bill.
    """
    db.flush()
    bill_id = int(bill_id)

    items_total = sum(
        (money2(p) for (p, ) in db.query(BillItem.total_price).filter(
            BillItem.bill_id == bill_id)),
        Decimal("0"),
    )

    collected = Decimal("0")
    adjusted = Decimal("0")
    refund_records = Decimal("0")
    for rtype, amount in db.query(PaymentRecord.record_type,
                                  PaymentRecord.amount).filter(
                                      PaymentRecord.bill_id == bill_id):
        if rtype == RecordType.PAYMENT:
            collected += money2(amount)
        elif rtype == RecordType.ADJUSTMENT:
            adjusted += money2(amount)
        elif rtype == RecordType.REFUND:
            refund_records += money2(amount)

    refunded = Decimal("0")
    open_requests = 0
    last_refund_at = None
    for status, amount, paid_at in db.query(
            RefundRequest.status, RefundRequest.total_amount,
            RefundRequest.paid_at).filter(RefundRequest.bill_id == bill_id):
        if status == RefundRequestStatus.PAID:
            refunded += money2(amount)
            if paid_at and (last_refund_at is None
                            or paid_at > last_refund_at):
                last_refund_at = paid_at
        elif status in OPEN_REFUND_STATUSES:
            open_requests += 1

    return LedgerTotals(
        items_total=money2(items_total),
        collected=money2(collected),
        adjusted=money2(adjusted),
        refund_records=money2(refund_records),
        refunded=money2(refunded),
        open_requests=open_requests,
        last_refund_at=last_refund_at,
    )


def get_refundable_amount(db: Session, bill_id: int) -> Decimal:
    """
    max(collected - refunded, 0) read straight from the records, where
    collected never exceeds paid. This is the ceiling every refund
    validation uses.
    """
    get_bill(db, bill_id)
    return ledger_totals(db, bill_id).refundable


# -------------------------
# Status derivation
# -------------------------
def derive_payment_status(*,
                          paid: Decimal,
                          balance: Decimal,
                          due_date: Optional[date],
                          today: Optional[date] = None) -> PaymentStatus:
    if balance <= 0:
        return PaymentStatus.PAID
    today = today or today_local()
    if due_date is not None and due_date < today:
        return PaymentStatus.OVERDUE
    if paid <= 0:
        return PaymentStatus.PENDING
    return PaymentStatus.PARTIAL


def derive_refund_status(*, refunded: Decimal, refundable: Decimal,
                         open_requests: int) -> RefundStatus:
    if open_requests > 0:
        return RefundStatus.PENDING
    if refunded > 0 and refundable <= 0:
        return RefundStatus.REFUNDED
    if refunded > 0:
        return RefundStatus.PARTIAL
    return RefundStatus.NOT_REQUESTED


# -------------------------
# Recompute
# -------------------------
def recompute_aggregates(db: Session,
                         bill_id: int,
                         *,
                         today: Optional[date] = None) -> Bill:
    """
    Re-derive every cached aggregate of a bill from its records.

    Must run inside the same transaction as the write that triggered it.
    Idempotent and order-independent: it only sums what is committed, so
    re-running it after a crash is always safe.
    """
    bill = get_bill(db, bill_id)
    t = ledger_totals(db, bill.id)

    total = money2(bill.total_amount)
    if total != t.items_total:
        raise ConsistencyViolation(
            f"Bill {bill.bill_number}: total {total} != sum of items {t.items_total}",
            details={
                "bill_id": bill.id,
                "total_amount": str(total),
                "items_total": str(t.items_total)
            },
        )
    if t.refund_records != t.refunded:
        raise ConsistencyViolation(
            f"Bill {bill.bill_number}: refund records {t.refund_records} != paid refund requests {t.refunded}",
            details={
                "bill_id": bill.id,
                "refund_records": str(t.refund_records),
                "refunded": str(t.refunded)
            },
        )
    if t.refunded > t.refund_base:
        raise ConsistencyViolation(
            f"Bill {bill.bill_number}: refunded {t.refunded} exceeds collected {t.refund_base}",
            details={
                "bill_id": bill.id,
                "collected_amount": str(t.collected),
                "paid_amount": str(t.paid),
                "total_refunded_amount": str(t.refunded)
            },
        )

    balance = money2(total - t.paid)
    if t.paid + balance != total:
        raise ConsistencyViolation(
            f"Bill {bill.bill_number}: paid + balance != total",
            details={"bill_id": bill.id},
        )

    bill.paid_amount = t.paid
    bill.balance_amount = balance
    bill.total_refunded_amount = t.refunded
    bill.payment_status = derive_payment_status(paid=t.paid,
                                                balance=balance,
                                                due_date=bill.due_date,
                                                today=today)
    bill.refund_status = derive_refund_status(refunded=t.refunded,
                                              refundable=t.refundable,
                                              open_requests=t.open_requests)
    if t.last_refund_at is not None:
        bill.last_refund_at = t.last_refund_at

    db.flush()
    return bill


def recompute_and_commit(db: Session,
                         bill_id: int,
                         *,
                         clinic_id: Optional[int] = None) -> Bill:
    """Standalone repair entry point (e.g. after a crash mid-request)."""
    with ledger_tx(db):
        lock_bill(db, bill_id, clinic_id=clinic_id)
        bill = recompute_aggregates(db, bill_id)
    return bill


# -------------------------
# Create
# -------------------------
def _validate_items(items: Iterable[Any]) -> List[Dict[str, Any]]:
    rows = list(items or [])
    if not rows:
        raise ValidationError("A bill needs at least one item")

    out: List[Dict[str, Any]] = []
    for idx, it in enumerate(rows, start=1):
        name = (_get(it, "item_name") or "").strip()
        if not name:
            raise ValidationError(f"Item {idx}: item_name is required",
                                  details={"item": idx})

        try:
            item_type = ItemType(_enum_value(_get(it, "item_type", ItemType.OTHER)))
        except ValueError:
            raise ValidationError(f"Item {idx}: unknown item_type",
                                  details={"item": idx})

        qty = D(_get(it, "quantity", 1))
        if qty <= 0 or qty != qty.to_integral_value():
            raise ValidationError(
                f"Item {idx}: quantity must be a positive whole number",
                details={"item": idx, "quantity": str(qty)})

        unit_price = money2(_get(it, "unit_price"))
        if unit_price <= 0:
            raise ValidationError(f"Item {idx}: unit_price must be > 0",
                                  details={"item": idx, "unit_price": str(unit_price)})

        discount = money2(_get(it, "discount", 0))
        tax = money2(_get(it, "tax", 0))
        if discount < 0 or tax < 0:
            raise ValidationError(
                f"Item {idx}: discount and tax cannot be negative",
                details={"item": idx})

        amounts = compute_line_amounts(qty, unit_price, discount, tax)
        if discount > amounts["gross"]:
            raise ValidationError(
                f"Item {idx}: discount exceeds line value",
                details={"item": idx, "discount": str(discount), "gross": str(amounts["gross"])})

        out.append({
            "item_type": item_type,
            "item_name": name,
            "quantity": int(qty),
            "unit_price": unit_price,
            "discount": amounts["discount"],
            "tax": amounts["tax"],
            "total_price": amounts["total_price"],
        })
    return out


def create_bill(
    db: Session,
    *,
    clinic_id: int,
    patient_id: int,
    items: Iterable[Any],
    actor: Actor,
    visit_id: Optional[int] = None,
    due_date: Optional[date] = None,
    bill_date: Optional[datetime] = None,
    notes: Optional[str] = None,
    patient_lookup: Optional[PatientLookup] = None,
) -> Bill:
    require_any(actor, [BillingPerm.MANAGE_BILLING])
    lines = _validate_items(items)

    patient_name = None
    visit_date = None
    if patient_lookup is not None:
        patient = patient_lookup.get_patient(int(patient_id)) or {}
        patient_name = _get(patient, "name")
        if visit_id is not None:
            visit = patient_lookup.get_visit(int(visit_id)) or {}
            visit_date = _get(visit, "visit_date")

    with ledger_tx(db):
        bill = Bill(
            clinic_id=int(clinic_id),
            patient_id=int(patient_id),
            visit_id=int(visit_id) if visit_id is not None else None,
            bill_number=next_bill_number(db, clinic_id=clinic_id),
            patient_name=patient_name,
            visit_date=visit_date,
            bill_date=to_local_naive(bill_date) if bill_date else now_local(),
            due_date=due_date,
            notes=notes,
            total_amount=money2(
                sum((ln["total_price"] for ln in lines), Decimal("0"))),
            paid_amount=ZERO,
            created_by=actor.id,
        )
        for seq, ln in enumerate(lines, start=1):
            bill.items.append(BillItem(seq=seq, **ln))

        db.add(bill)
        db.flush()

        recompute_aggregates(db, bill.id)

        log_audit(db,
                  user_id=actor.id,
                  action="CREATE",
                  table_name="bills",
                  record_id=bill.id,
                  new_values={
                      "bill_number": bill.bill_number,
                      **bill_snapshot(bill)
                  })

    logger.info("Bill %s created for patient %s total=%s", bill.bill_number,
                bill.patient_id, bill.total_amount)
    return bill
