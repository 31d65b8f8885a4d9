# FILE: clinic_billing/models/billing.py
from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from clinic_billing.db.base import Base
from clinic_billing.services.billing_errors import ConsistencyViolation


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    CHEQUE = "cheque"
    NET_BANKING = "net_banking"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class RefundStatus(str, Enum):
    """Bill-level refund status, derived from the bill's refund requests."""
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    PARTIAL = "partial"
    REFUNDED = "refunded"


class RefundRequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"
    CANCELLED = "cancelled"


class RecordType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class ItemType(str, Enum):
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"
    MEDICINE = "medicine"
    TEST = "test"
    OTHER = "other"


class RefundSourceType(str, Enum):
    BILL = "bill"
    PHARMACY_DISPENSE = "pharmacy_dispense"


class NumberResetPeriod(str, Enum):
    NONE = "NONE"
    YEAR = "YEAR"
    MONTH = "MONTH"


class BillNumberSeries(Base):
    """
    One counter row per clinic + prefix. Locked FOR UPDATE while drawing
    the next bill number so numbers stay sequential per clinic.
    """
    __tablename__ = "bill_number_series"
    __table_args__ = (UniqueConstraint("clinic_id",
                                       "prefix",
                                       "reset_period",
                                       name="uq_bill_number_series"), )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    prefix = Column(String(20), nullable=False, default="BILL-")
    reset_period = Column(SAEnum(NumberResetPeriod),
                          nullable=False,
                          default=NumberResetPeriod.YEAR)
    last_period_key = Column(String(10), nullable=True)
    next_number = Column(Integer, nullable=False, default=1)
    padding = Column(Integer, nullable=False, default=6)

    updated_at = Column(DateTime,
                        default=datetime.utcnow,
                        onupdate=datetime.utcnow)


class Bill(Base):
    """
    Patient-facing bill for one visit / service set.

    paid_amount, balance_amount, total_refunded_amount, payment_status and
    refund_status are caches written only by
    services.billing_ledger.recompute_aggregates().
    """

    __tablename__ = "bills"
    __table_args__ = (
        UniqueConstraint("clinic_id", "bill_number",
                         name="uq_bills_clinic_number"),
        Index("ix_bills_clinic_date", "clinic_id", "bill_date"),
        Index("ix_bills_patient", "patient_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, nullable=False, index=True)
    patient_id = Column(Integer, nullable=False)
    visit_id = Column(Integer, nullable=True)

    bill_number = Column(String(32), nullable=False)

    # Display-only snapshot from the patient / visit directory
    patient_name = Column(String(200), nullable=True)
    visit_date = Column(DateTime, nullable=True)

    bill_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    due_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    # Sum of item total_price
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    # Payments + signed adjustments (refunds excluded)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    # total_amount - paid_amount (negative when overpaid)
    balance_amount = Column(Numeric(12, 2), nullable=False, default=0)
    # Sum of PAID refund requests
    total_refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)

    payment_status = Column(SAEnum(PaymentStatus),
                            nullable=False,
                            default=PaymentStatus.PENDING)
    refund_status = Column(SAEnum(RefundStatus),
                           nullable=False,
                           default=RefundStatus.NOT_REQUESTED)

    last_refund_at = Column(DateTime, nullable=True)
    refund_notes = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    items = relationship(
        "BillItem",
        back_populates="bill",
        cascade="all, delete-orphan",
        order_by="BillItem.seq",
    )


class BillItem(Base):
    __tablename__ = "bill_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bill_items_qty_pos"),
        CheckConstraint("unit_price > 0", name="ck_bill_items_price_pos"),
        CheckConstraint("total_price >= 0", name="ck_bill_items_total_nonneg"),
        CheckConstraint(
            "refunded_quantity >= 0 AND refunded_quantity <= quantity",
            name="ck_bill_items_refunded_qty"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= total_price",
            name="ck_bill_items_refunded_amount"),
        Index("ix_bill_items_bill", "bill_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(
        Integer,
        ForeignKey("bills.id", ondelete="CASCADE"),
        nullable=False,
    )

    # S.no order for print
    seq = Column(Integer, default=1)

    item_type = Column(SAEnum(ItemType), nullable=False)
    item_name = Column(String(300), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    tax = Column(Numeric(12, 2), nullable=False, default=0)

    # quantity * unit_price - discount + tax
    total_price = Column(Numeric(12, 2), nullable=False)

    refunded_quantity = Column(Integer, nullable=False, default=0)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    last_refund_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    bill = relationship("Bill", back_populates="items")


class PaymentRecord(Base):
    """
    Append-only ledger entry against a bill.

    - payment:    positive, counts towards paid_amount
    - adjustment: signed correction (e.g. waived balance), counts towards paid_amount
    - refund:     positive money returned to the patient; tracked through
                  total_refunded_amount, never subtracted from paid_amount
    """

    __tablename__ = "payment_records"
    __table_args__ = (
        Index("ix_payment_records_bill", "bill_id"),
        Index("ix_payment_records_clinic_date", "clinic_id", "payment_date"),
        CheckConstraint(
            "record_type = 'ADJUSTMENT' OR amount >= 0",
            name="ck_payment_records_amount_nonneg"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(
        Integer,
        ForeignKey("bills.id"),
        nullable=False,
    )
    clinic_id = Column(Integer, nullable=False)

    record_type = Column(SAEnum(RecordType),
                         nullable=False,
                         default=RecordType.PAYMENT)
    # null for adjustments (no money moved)
    payment_method = Column(SAEnum(PaymentMethod), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_date = Column(DateTime, nullable=False, default=datetime.utcnow)

    refund_request_id = Column(Integer,
                               ForeignKey("refund_requests.id"),
                               nullable=True,
                               unique=True)

    # card ref / cheque no / UPI txn id
    reference_no = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    received_by = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    __table_args__ = (
        Index("ix_refund_requests_bill", "bill_id"),
        Index("ix_refund_requests_clinic_status", "clinic_id", "status"),
        CheckConstraint("total_amount > 0",
                        name="ck_refund_requests_amount_pos"),
    )

    id = Column(Integer, primary_key=True, index=True)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=False)
    patient_id = Column(Integer, nullable=False)
    clinic_id = Column(Integer, nullable=False)

    source_type = Column(SAEnum(RefundSourceType),
                         nullable=False,
                         default=RefundSourceType.BILL)
    total_amount = Column(Numeric(12, 2), nullable=False)
    refund_method = Column(SAEnum(PaymentMethod), nullable=True)
    reason = Column(Text, nullable=True)

    status = Column(SAEnum(RefundRequestStatus),
                    nullable=False,
                    default=RefundRequestStatus.DRAFT)

    initiated_by = Column(Integer, nullable=True)
    approved_by = Column(Integer, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    rejected_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    metadata_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
    )

    lines = relationship(
        "RefundRequestLine",
        back_populates="refund_request",
        cascade="all, delete-orphan",
    )


class RefundRequestLine(Base):
    """
    Optional item-level breakdown of a refund request.
    Applied to BillItem.refunded_quantity / refunded_amount when the
    request is paid.
    """

    __tablename__ = "refund_request_lines"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_refund_lines_qty_nonneg"),
        CheckConstraint("amount > 0", name="ck_refund_lines_amount_pos"),
    )

    id = Column(Integer, primary_key=True, index=True)
    refund_request_id = Column(
        Integer,
        ForeignKey("refund_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    bill_item_id = Column(Integer, ForeignKey("bill_items.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    amount = Column(Numeric(12, 2), nullable=False)

    refund_request = relationship("RefundRequest", back_populates="lines")
    bill_item = relationship("BillItem")


@event.listens_for(PaymentRecord, "before_update")
def _payment_record_no_update(mapper, connection, target):
    raise ConsistencyViolation(
        f"Payment record {target.id} is append-only and cannot be updated")


@event.listens_for(PaymentRecord, "before_delete")
def _payment_record_no_delete(mapper, connection, target):
    raise ConsistencyViolation(
        f"Payment record {target.id} is append-only and cannot be deleted")
