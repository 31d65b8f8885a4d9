from datetime import datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    JSON,
)

from clinic_billing.db.base import Base


class AuditLog(Base):
    """
    Ledger audit trail.
    Every bill / payment / refund mutation writes here.
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True)  # system jobs may be null
    # CREATE / PAYMENT / ADJUSTMENT / REFUND_<TRANSITION>
    action = Column(String(40), nullable=False)

    table_name = Column(String(255), nullable=False)
    record_id = Column(String(100),
                       nullable=False)  # generic pk, stored as string

    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
