from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from clinic_billing.models.billing import (
    Bill,
    PaymentRecord,
    PaymentStatus,
    RefundStatus,
)
from clinic_billing.models.error_log import ErrorLog
from clinic_billing.models.audit import AuditLog
from clinic_billing.schemas.billing import BillOut
from clinic_billing.services.billing_errors import (
    ConsistencyViolation,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from clinic_billing.services.billing_ledger import (
    bill_snapshot,
    derive_payment_status,
    get_bill,
    get_refundable_amount,
    list_bill_payments,
    lock_bill,
    recompute_aggregates,
    recompute_and_commit,
)
from clinic_billing.utils.timezone import today_local
from tests.conftest import CLINIC_ID, OTHER_CLINIC_ID


class TestCreateBill:

    def test_new_bill_starts_unpaid(self, bill):
        assert bill.total_amount == Decimal("1000.00")
        assert bill.paid_amount == Decimal("0.00")
        assert bill.balance_amount == Decimal("1000.00")
        assert bill.total_refunded_amount == Decimal("0.00")
        assert bill.payment_status == PaymentStatus.PENDING
        assert bill.refund_status == RefundStatus.NOT_REQUESTED
        assert [it.seq for it in bill.items] == [1, 2]

    def test_bill_number_is_sequential_per_clinic(self, make_bill):
        first = make_bill()
        second = make_bill()
        year = first.bill_date.strftime("%Y")
        assert first.bill_number == f"BILL-{year}-000001"
        assert second.bill_number == f"BILL-{year}-000002"

    def test_line_totals_apply_discount_and_tax(self, make_bill):
        b = make_bill(items=[{
            "item_type": "procedure",
            "item_name": "Dressing",
            "quantity": 2,
            "unit_price": "100",
            "discount": "20",
            "tax": "9",
        }])
        assert b.items[0].total_price == Decimal("189.00")
        assert b.total_amount == Decimal("189.00")

    def test_display_fields_come_from_lookup(self, make_bill):

        class Directory:

            def get_patient(self, patient_id):
                return {"name": "Asha R"}

            def get_visit(self, visit_id):
                return {"visit_date": datetime(2025, 1, 2, 11, 30)}

        b = make_bill(visit_id=77, patient_lookup=Directory())
        assert b.patient_name == "Asha R"
        assert b.visit_date == datetime(2025, 1, 2, 11, 30)

    def test_creation_is_audited(self, db, bill):
        row = db.query(AuditLog).filter(AuditLog.table_name == "bills").one()
        assert row.action == "CREATE"
        assert row.record_id == str(bill.id)
        assert row.new_values["total_amount"] == "1000.00"

    @pytest.mark.parametrize(
        "items",
        [
            [],
            [{"item_name": "X", "quantity": 0, "unit_price": "10"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "0"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "-5"}],
            [{"item_name": "X", "quantity": 1.5, "unit_price": "10"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "10", "discount": "-1"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "10", "tax": "-1"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "10", "discount": "11"}],
            [{"item_name": "", "quantity": 1, "unit_price": "10"}],
            [{"item_name": "X", "item_type": "massage", "unit_price": "10"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "abc"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "10", "discount": "ten"}],
            [{"item_name": "X", "quantity": 1, "unit_price": "10", "tax": "NaN"}],
        ],
    )
    def test_rejects_bad_items(self, db, clerk, items):
        from clinic_billing.services.billing_ledger import create_bill

        with pytest.raises(ValidationError):
            create_bill(db,
                        clinic_id=CLINIC_ID,
                        patient_id=1,
                        items=items,
                        actor=clerk)
        assert db.query(Bill).count() == 0

    def test_requires_manage_billing(self, db, viewer):
        from clinic_billing.services.billing_ledger import create_bill

        with pytest.raises(PermissionDenied):
            create_bill(db,
                        clinic_id=CLINIC_ID,
                        patient_id=1,
                        items=[{"item_name": "X", "unit_price": "10"}],
                        actor=viewer)


class TestReads:

    def test_get_bill_is_clinic_scoped(self, db, bill):
        assert get_bill(db, bill.id, clinic_id=CLINIC_ID).id == bill.id
        with pytest.raises(NotFound):
            get_bill(db, bill.id, clinic_id=OTHER_CLINIC_ID)
        with pytest.raises(NotFound):
            lock_bill(db, 9999)

    def test_list_bill_payments_in_date_order(self, db, bill, recorder,
                                              clerk):
        recorder.record_payment(db,
                                bill_id=bill.id,
                                amount="100",
                                method="upi",
                                received_by=clerk,
                                payment_date=datetime(2025, 3, 2, 12, 0))
        recorder.record_payment(db,
                                bill_id=bill.id,
                                amount="50",
                                method="cash",
                                received_by=clerk,
                                payment_date=datetime(2025, 3, 1, 12, 0))
        rows = list_bill_payments(db, bill.id)
        assert [r.amount for r in rows] == [Decimal("50.00"), Decimal("100.00")]

    def test_refundable_is_paid_minus_refunded(self, db, paid_bill):
        assert get_refundable_amount(db, paid_bill.id) == Decimal("1000.00")


class TestRecompute:

    def test_recompute_is_idempotent(self, db, paid_bill):
        first = bill_snapshot(recompute_aggregates(db, paid_bill.id))
        second = bill_snapshot(recompute_aggregates(db, paid_bill.id))
        assert first == second
        db.rollback()

    def test_recompute_repairs_drifted_cache(self, db, paid_bill):
        db.execute(
            update(Bill).where(Bill.id == paid_bill.id).values(
                paid_amount=Decimal("1.00"),
                balance_amount=Decimal("999.00"),
                payment_status=PaymentStatus.PARTIAL,
            ))
        db.commit()

        fixed = recompute_and_commit(db, paid_bill.id)
        assert fixed.paid_amount == Decimal("1000.00")
        assert fixed.balance_amount == Decimal("0.00")
        assert fixed.payment_status == PaymentStatus.PAID

    def test_total_mismatch_is_a_consistency_violation(self, db, bill):
        db.execute(
            update(Bill).where(Bill.id == bill.id).values(
                total_amount=Decimal("1200.00")))
        db.commit()

        with pytest.raises(ConsistencyViolation) as ei:
            recompute_and_commit(db, bill.id)

        assert ei.value.details["items_total"] == "1000.00"
        logged = db.query(ErrorLog).one()
        assert logged.http_status == 500
        assert "sum of items" in logged.description

    def test_payment_records_are_append_only(self, db, paid_bill):
        rec = db.query(PaymentRecord).one()
        rec.amount = Decimal("1.00")
        with pytest.raises(ConsistencyViolation):
            db.flush()
        db.rollback()

        rec = db.query(PaymentRecord).one()
        db.delete(rec)
        with pytest.raises(ConsistencyViolation):
            db.flush()
        db.rollback()
        assert db.query(PaymentRecord).count() == 1


class TestPaymentStatus:

    def test_statuses(self):
        today = date(2025, 3, 14)
        assert derive_payment_status(paid=Decimal("0"),
                                     balance=Decimal("10"),
                                     due_date=None,
                                     today=today) == PaymentStatus.PENDING
        assert derive_payment_status(paid=Decimal("5"),
                                     balance=Decimal("5"),
                                     due_date=today,
                                     today=today) == PaymentStatus.PARTIAL
        assert derive_payment_status(
            paid=Decimal("5"),
            balance=Decimal("5"),
            due_date=today - timedelta(days=1),
            today=today) == PaymentStatus.OVERDUE
        assert derive_payment_status(
            paid=Decimal("10"),
            balance=Decimal("0"),
            due_date=today - timedelta(days=1),
            today=today) == PaymentStatus.PAID

    def test_overdue_shows_on_read_without_a_write(self, db, make_bill,
                                                   recorder, clerk):
        today = today_local()
        b = make_bill(due_date=today + timedelta(days=1))
        recorder.record_payment(db,
                                bill_id=b.id,
                                amount="100",
                                method="cash",
                                received_by=clerk)
        db.execute(
            update(Bill).where(Bill.id == b.id).values(
                due_date=today - timedelta(days=1)))
        db.commit()
        db.refresh(b)

        assert b.payment_status == PaymentStatus.PARTIAL
        out = BillOut.model_validate(b)
        assert out.payment_status == PaymentStatus.OVERDUE
        assert out.model_dump(mode="json")["payment_status"] == "overdue"

        db.refresh(b)
        assert b.payment_status == PaymentStatus.PARTIAL

    def test_settled_bill_past_due_reads_paid(self, db, paid_bill):
        db.execute(
            update(Bill).where(Bill.id == paid_bill.id).values(
                due_date=today_local() - timedelta(days=30)))
        db.commit()
        db.refresh(paid_bill)
        assert BillOut.model_validate(paid_bill).payment_status == PaymentStatus.PAID
