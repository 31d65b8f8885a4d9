# clinic_billing/db/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """All ledger tables (bills, payment records, refunds, audit) inherit from this."""
    pass
