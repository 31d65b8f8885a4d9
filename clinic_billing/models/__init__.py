# clinic_billing/models/__init__.py
from .audit import AuditLog
from .billing import (
    Bill,
    BillItem,
    BillNumberSeries,
    ItemType,
    NumberResetPeriod,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    RecordType,
    RefundRequest,
    RefundRequestLine,
    RefundRequestStatus,
    RefundSourceType,
    RefundStatus,
)
from .error_log import ErrorLog

__all__ = [
    "AuditLog",
    "Bill",
    "BillItem",
    "BillNumberSeries",
    "ErrorLog",
    "ItemType",
    "NumberResetPeriod",
    "PaymentMethod",
    "PaymentRecord",
    "PaymentStatus",
    "RecordType",
    "RefundRequest",
    "RefundRequestLine",
    "RefundRequestStatus",
    "RefundSourceType",
    "RefundStatus",
]
