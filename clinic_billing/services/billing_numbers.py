from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.models.billing import BillNumberSeries, NumberResetPeriod
from clinic_billing.utils.timezone import now_local


def _period_key(dt: datetime, reset: NumberResetPeriod) -> Optional[str]:
    if reset == NumberResetPeriod.NONE:
        return None
    if reset == NumberResetPeriod.YEAR:
        return dt.strftime("%Y")
    return dt.strftime("%Y-%m")  # MONTH


def next_bill_number(
    db: Session,
    *,
    clinic_id: int,
    prefix: Optional[str] = None,
    reset_period: NumberResetPeriod = NumberResetPeriod.YEAR,
    padding: Optional[int] = None,
    on_dt: Optional[datetime] = None,
) -> str:
    """
    Draw the next bill number for a clinic, e.g. BILL-2025-000042.
    The series row is locked so concurrent bill creation stays sequential.
    """
    prefix = prefix if prefix is not None else settings.BILL_NUMBER_PREFIX
    padding = padding or settings.BILL_NUMBER_PADDING
    now = on_dt or now_local()
    pk = _period_key(now, reset_period)

    row = (db.query(BillNumberSeries).filter(
        BillNumberSeries.clinic_id == int(clinic_id),
        BillNumberSeries.prefix == prefix,
        BillNumberSeries.reset_period == reset_period,
    ).with_for_update().first())

    if not row:
        row = BillNumberSeries(
            clinic_id=int(clinic_id),
            prefix=prefix,
            reset_period=reset_period,
            padding=padding,
            next_number=1,
            last_period_key=pk,
        )
        db.add(row)
        db.flush()

    # reset logic
    if reset_period != NumberResetPeriod.NONE and row.last_period_key != pk:
        row.last_period_key = pk
        row.next_number = 1

    n = int(row.next_number or 1)
    row.next_number = n + 1
    db.flush()

    body = str(n).zfill(int(row.padding or padding))
    if pk:
        return f"{prefix}{pk}-{body}"
    return f"{prefix}{body}"
