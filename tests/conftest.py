"""
Pytest fixtures for the billing ledger test suite.

Provides:
- An in-memory SQLite database per test (StaticPool, one shared connection)
- Actors with the usual billing permission sets
- Bill factories
"""

from datetime import datetime
from decimal import Decimal
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_billing.core.rbac import Actor, BillingPerm
from clinic_billing.db.init_db import init_db
from clinic_billing.services.billing_ledger import create_bill
from clinic_billing.services.billing_payment_service import PaymentRecorder
from clinic_billing.services.refund_workflow import RefundWorkflow

CLINIC_ID = 1
OTHER_CLINIC_ID = 2

# consultation 600 + CBC 2 x 200 = 1000
DEFAULT_ITEMS = [
    {
        "item_type": "consultation",
        "item_name": "General consultation",
        "quantity": 1,
        "unit_price": "600",
    },
    {
        "item_type": "test",
        "item_name": "CBC",
        "quantity": 2,
        "unit_price": "200",
    },
]


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine,
                        autoflush=False,
                        expire_on_commit=False,
                        future=True)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path) -> Generator[Engine, None, None]:
    """On-disk database so two sessions really use two connections."""
    eng = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine) -> Generator[Session, None, None]:
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


# ---------- actors ----------


@pytest.fixture
def clerk() -> Actor:
    return Actor(id=10,
                 clinic_id=CLINIC_ID,
                 permissions=frozenset({BillingPerm.MANAGE_BILLING.value}))


@pytest.fixture
def approver() -> Actor:
    return Actor(id=20,
                 clinic_id=CLINIC_ID,
                 permissions=frozenset({BillingPerm.APPROVE_REFUNDS.value}))


@pytest.fixture
def requester() -> Actor:
    return Actor(id=30,
                 clinic_id=CLINIC_ID,
                 permissions=frozenset({BillingPerm.REQUEST_REFUNDS.value}))


@pytest.fixture
def viewer() -> Actor:
    return Actor(id=40,
                 clinic_id=CLINIC_ID,
                 permissions=frozenset({BillingPerm.VIEW_REPORTS.value}))


# ---------- services ----------


@pytest.fixture
def recorder() -> PaymentRecorder:
    return PaymentRecorder(allow_overpayment=True)


@pytest.fixture
def workflow() -> RefundWorkflow:
    return RefundWorkflow(allow_direct_pay=False)


# ---------- bills ----------


@pytest.fixture
def make_bill(db, clerk):

    def _make(items=None, **kwargs):
        kwargs.setdefault("clinic_id", CLINIC_ID)
        kwargs.setdefault("patient_id", 501)
        return create_bill(db,
                           items=items or DEFAULT_ITEMS,
                           actor=kwargs.pop("actor", clerk),
                           **kwargs)

    return _make


@pytest.fixture
def bill(make_bill):
    """Unpaid bill, total 1000."""
    return make_bill()


@pytest.fixture
def paid_bill(db, bill, recorder, clerk):
    """Bill of 1000 settled with one cash payment of 1000."""
    recorder.record_payment(db,
                            bill_id=bill.id,
                            amount=Decimal("1000"),
                            method="cash",
                            received_by=clerk)
    db.refresh(bill)
    return bill


@pytest.fixture
def report_day() -> datetime:
    return datetime(2025, 3, 14, 9, 0)
