from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
)

from clinic_billing.db.base import Base


class ErrorLog(Base):
    """
    Persisted error log: consistency violations and unhandled API errors.
    """
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)

    error_source = Column(String(50), nullable=False, default="backend")

    # quick summary
    description = Column(String(1000), nullable=True)

    # where it happened
    endpoint = Column(String(255), nullable=True)  # e.g. "POST /api/billing/bills"
    module = Column(String(255), nullable=True)  # e.g. "billing_ledger"
    function = Column(String(255), nullable=True)  # e.g. "recompute_aggregates"

    http_status = Column(Integer, nullable=True)
    clinic_id = Column(Integer, nullable=True)

    request_payload = Column(JSON, nullable=True)
    stack_trace = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
