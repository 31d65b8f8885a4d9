# FILE: clinic_billing/services/billing_payment_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.core.rbac import Actor, BillingPerm, require_any
from clinic_billing.models.billing import PaymentMethod, PaymentRecord, RecordType
from clinic_billing.services.audit_logger import log_audit
from clinic_billing.services.billing_errors import (
    InvalidAmount,
    OverpaymentNotAllowed,
    ValidationError,
)
from clinic_billing.services.billing_ledger import (
    bill_snapshot,
    ledger_totals,
    ledger_tx,
    lock_bill,
    recompute_aggregates,
)
from clinic_billing.services.billing_math import money2
from clinic_billing.utils.timezone import now_local, to_local_naive

logger = logging.getLogger(__name__)


def _method(x) -> PaymentMethod:
    try:
        return PaymentMethod(x.value if hasattr(x, "value") else str(x))
    except ValueError:
        raise ValidationError(f"Unknown payment method: {x}",
                              details={"payment_method": str(x)})


class PaymentRecorder:
    """
    Appends payment / adjustment records to a bill and keeps the bill's
    aggregates in step, all in one transaction per call.
    """

    def __init__(self, allow_overpayment: Optional[bool] = None) -> None:
        if allow_overpayment is None:
            allow_overpayment = settings.BILLING_ALLOW_OVERPAYMENT
        self.allow_overpayment = bool(allow_overpayment)

    def record_payment(
        self,
        db: Session,
        *,
        bill_id: int,
        amount,
        method,
        received_by: Actor,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        payment_date: Optional[datetime] = None,
    ) -> PaymentRecord:
        require_any(received_by, [BillingPerm.MANAGE_BILLING])

        amt = money2(amount)
        if amt <= 0:
            raise InvalidAmount("Payment amount must be > 0",
                                details={"amount": str(amt)})
        method = _method(method)

        with ledger_tx(db):
            bill = lock_bill(db, bill_id, clinic_id=received_by.clinic_id)
            before = bill_snapshot(recompute_aggregates(db, bill.id))
            balance = money2(bill.balance_amount)

            if amt > balance:
                if not self.allow_overpayment:
                    raise OverpaymentNotAllowed(amt, balance)
                overage = money2(amt - max(balance, money2(0)))
                note = f"Overpayment of {overage} over balance {balance}"
                notes = f"{notes}\n{note}" if notes else note
                logger.warning("Bill %s overpaid by %s (balance=%s, amount=%s)",
                               bill.bill_number, overage, balance, amt)

            rec = PaymentRecord(
                bill_id=bill.id,
                clinic_id=bill.clinic_id,
                record_type=RecordType.PAYMENT,
                payment_method=method,
                amount=amt,
                payment_date=to_local_naive(payment_date)
                if payment_date else now_local(),
                reference_no=(reference or "").strip() or None,
                notes=notes,
                received_by=received_by.id,
            )
            db.add(rec)
            db.flush()

            recompute_aggregates(db, bill.id)

            log_audit(db,
                      user_id=received_by.id,
                      action="PAYMENT",
                      table_name="payment_records",
                      record_id=rec.id,
                      old_values=before,
                      new_values={
                          "bill_id": bill.id,
                          "amount": str(amt),
                          "payment_method": method.value,
                          **bill_snapshot(bill)
                      })

        logger.info("Payment %s of %s via %s recorded on bill %s", rec.id, amt,
                    method.value, bill.bill_number)
        return rec

    def record_adjustment(
        self,
        db: Session,
        *,
        bill_id: int,
        amount,
        reason: str,
        actor: Actor,
    ) -> PaymentRecord:
        """
        Signed correction to paid_amount (write-off, waiver, data-entry fix).
        Moves the balance only; the refund ceiling stays on collected cash.
        """
        require_any(actor, [BillingPerm.MANAGE_BILLING])

        amt = money2(amount)
        if amt == 0:
            raise InvalidAmount("Adjustment amount must be non-zero")
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Adjustment reason is required")

        with ledger_tx(db):
            bill = lock_bill(db, bill_id, clinic_id=actor.clinic_id)
            before = bill_snapshot(recompute_aggregates(db, bill.id))

            t = ledger_totals(db, bill.id)
            new_paid = money2(t.paid + amt)
            if new_paid < 0:
                raise ValidationError(
                    "Adjustment would drive paid amount below zero",
                    details={
                        "paid_amount": str(t.paid),
                        "adjustment": str(amt)
                    })
            if min(t.collected, new_paid) < t.refunded:
                raise ValidationError(
                    "Adjustment would drive paid amount below the refunded amount",
                    details={
                        "paid_amount": str(t.paid),
                        "collected_amount": str(t.collected),
                        "total_refunded_amount": str(t.refunded),
                        "adjustment": str(amt),
                    })

            rec = PaymentRecord(
                bill_id=bill.id,
                clinic_id=bill.clinic_id,
                record_type=RecordType.ADJUSTMENT,
                payment_method=None,
                amount=amt,
                payment_date=now_local(),
                reason=reason,
                received_by=actor.id,
                approved_by=actor.id,
            )
            db.add(rec)
            db.flush()

            recompute_aggregates(db, bill.id)

            log_audit(db,
                      user_id=actor.id,
                      action="ADJUSTMENT",
                      table_name="payment_records",
                      record_id=rec.id,
                      old_values=before,
                      new_values={
                          "bill_id": bill.id,
                          "amount": str(amt),
                          "reason": reason,
                          **bill_snapshot(bill)
                      })

        logger.info("Adjustment %s of %s on bill %s (%s)", rec.id, amt,
                    bill.bill_number, reason)
        return rec
