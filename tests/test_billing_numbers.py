from datetime import datetime

from clinic_billing.models.billing import NumberResetPeriod
from clinic_billing.services.billing_numbers import next_bill_number


def test_yearly_series_resets_on_new_year(db):
    dec = datetime(2024, 12, 31, 23, 0)
    jan = datetime(2025, 1, 1, 0, 5)

    assert next_bill_number(db, clinic_id=1, on_dt=dec) == "BILL-2024-000001"
    assert next_bill_number(db, clinic_id=1, on_dt=dec) == "BILL-2024-000002"
    assert next_bill_number(db, clinic_id=1, on_dt=jan) == "BILL-2025-000001"


def test_series_are_per_clinic(db):
    on = datetime(2025, 5, 1)
    assert next_bill_number(db, clinic_id=1, on_dt=on) == "BILL-2025-000001"
    assert next_bill_number(db, clinic_id=2, on_dt=on) == "BILL-2025-000001"


def test_monthly_and_unbroken_series(db):
    on = datetime(2025, 5, 1)
    assert next_bill_number(db,
                            clinic_id=1,
                            prefix="OPD-",
                            reset_period=NumberResetPeriod.MONTH,
                            padding=4,
                            on_dt=on) == "OPD-2025-05-0001"
    assert next_bill_number(db,
                            clinic_id=1,
                            prefix="IP-",
                            reset_period=NumberResetPeriod.NONE,
                            on_dt=on) == "IP-000001"
