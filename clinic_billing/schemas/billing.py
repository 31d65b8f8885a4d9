# FILE: clinic_billing/schemas/billing.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    field_validator,
    model_validator,
)

from clinic_billing.models.billing import (
    ItemType,
    PaymentMethod,
    PaymentStatus,
    RecordType,
    RefundRequestStatus,
    RefundSourceType,
    RefundStatus,
)
from clinic_billing.services.billing_ledger import derive_payment_status
from clinic_billing.services.billing_math import money2

# Money goes over the wire as a 2dp string
Money = Annotated[Decimal, PlainSerializer(lambda v: str(money2(v)), return_type=str)]


def _d(v) -> Decimal:
    return Decimal(str(v if v is not None else 0))


# ---------- inputs ----------


class BillItemIn(BaseModel):
    item_type: ItemType = ItemType.OTHER
    item_name: str = Field(..., min_length=1, max_length=300)
    quantity: int = 1
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")

    @field_validator("quantity")
    @classmethod
    def _qty(cls, v):
        if int(v) <= 0:
            raise ValueError("quantity must be > 0")
        return int(v)

    @field_validator("unit_price")
    @classmethod
    def _price(cls, v):
        if _d(v) <= 0:
            raise ValueError("unit_price must be > 0")
        return _d(v)


class BillCreate(BaseModel):
    patient_id: int
    visit_id: Optional[int] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[BillItemIn]

    @field_validator("items")
    @classmethod
    def _items(cls, v):
        if not v:
            raise ValueError("items required")
        return v


class PaymentIn(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.CASH
    reference_no: Optional[str] = None
    notes: Optional[str] = None
    payment_date: Optional[datetime] = None


class AdjustmentIn(BaseModel):
    amount: Decimal
    reason: str = Field(..., min_length=1)


class RefundLineIn(BaseModel):
    bill_item_id: int
    quantity: int = 0
    amount: Decimal


class RefundCreate(BaseModel):
    amount: Decimal
    refund_method: Optional[PaymentMethod] = None
    reason: Optional[str] = None
    source_type: RefundSourceType = RefundSourceType.BILL
    lines: List[RefundLineIn] = Field(default_factory=list)
    submit: bool = True
    metadata: Optional[Dict[str, Any]] = None


class RefundRejectIn(BaseModel):
    reason: Optional[str] = None


class RefundPayIn(BaseModel):
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


# ---------- outputs ----------


class BillItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    seq: Optional[int] = None
    item_type: ItemType
    item_name: str
    quantity: int
    unit_price: Money
    discount: Money
    tax: Money
    total_price: Money
    refunded_quantity: int = 0
    refunded_amount: Money = Decimal("0")


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    patient_id: int
    visit_id: Optional[int] = None
    bill_number: str
    patient_name: Optional[str] = None
    bill_date: datetime
    due_date: Optional[date] = None
    notes: Optional[str] = None

    total_amount: Money
    paid_amount: Money
    balance_amount: Money
    total_refunded_amount: Money
    payment_status: PaymentStatus
    refund_status: RefundStatus
    last_refund_at: Optional[datetime] = None

    items: List[BillItemOut] = Field(default_factory=list)

    @model_validator(mode="after")
    def _status_as_of_today(self):
        # overdue turns on by date alone, with no write to refresh the column
        self.payment_status = derive_payment_status(paid=self.paid_amount,
                                                    balance=self.balance_amount,
                                                    due_date=self.due_date)
        return self


class PaymentRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_id: int
    record_type: RecordType
    payment_method: Optional[PaymentMethod] = None
    amount: Money
    payment_date: datetime
    refund_request_id: Optional[int] = None
    reference_no: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    received_by: Optional[int] = None


class RefundLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_item_id: int
    quantity: int
    amount: Money


class RefundRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bill_id: int
    patient_id: int
    source_type: RefundSourceType
    total_amount: Money
    refund_method: Optional[PaymentMethod] = None
    reason: Optional[str] = None
    status: RefundRequestStatus
    initiated_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    lines: List[RefundLineOut] = Field(default_factory=list)


class RefundableOut(BaseModel):
    bill_id: int
    refundable_amount: Money
