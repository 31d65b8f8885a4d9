# FILE: clinic_billing/services/billing_reports.py
from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.models.billing import (
    Bill,
    BillItem,
    PaymentMethod,
    PaymentRecord,
    RecordType,
)
from clinic_billing.services.billing_errors import ValidationError
from clinic_billing.services.billing_math import ZERO, allocate_pro_rata, money2, pct
from clinic_billing.utils.timezone import day_bounds

MAX_RANGE_DAYS = 366

# ---------- helpers ----------


def _date_range(start: date, end: date) -> Tuple[date, date]:
    """
    Inclusive [start, end] in clinic days. Reversed input is swapped.
    """
    if end < start:
        start, end = end, start
    if (end - start).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(
            f"Report range cannot exceed {MAX_RANGE_DAYS} days",
            details={
                "start_date": start.isoformat(),
                "end_date": end.isoformat()
            })
    return start, end


def _records(db: Session, clinic_id: int, rtype: RecordType, start: datetime,
             end: datetime) -> List[PaymentRecord]:
    return (db.query(PaymentRecord).filter(
        PaymentRecord.clinic_id == int(clinic_id),
        PaymentRecord.record_type == rtype,
        PaymentRecord.payment_date >= start,
        PaymentRecord.payment_date < end,
    ).order_by(PaymentRecord.payment_date.asc(), PaymentRecord.id.asc()).all())


def _method_rows(payments: Iterable[PaymentRecord],
                 total: Decimal) -> List[Dict[str, Any]]:
    amounts: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    counts: Dict[str, int] = defaultdict(int)
    for p in payments:
        m = p.payment_method.value
        amounts[m] += money2(p.amount)
        counts[m] += 1

    rows = [{
        "method": m,
        "amount": money2(a),
        "count": counts[m],
        "percentage": pct(a, total),
    } for m, a in amounts.items()]
    rows.sort(key=lambda r: (-r["amount"], r["method"]))
    return rows


def _summarize(day: date, payments: Sequence[PaymentRecord],
               refunds: Sequence[PaymentRecord]) -> Dict[str, Any]:
    total = money2(sum((money2(p.amount) for p in payments), Decimal("0")))
    refund_total = money2(
        sum((money2(r.amount) for r in refunds), Decimal("0")))

    out: Dict[str, Any] = {"date": day.isoformat()}
    for m in PaymentMethod:
        out[m.value] = ZERO

    breakdown = _method_rows(payments, total)
    for row in breakdown:
        out[row["method"]] = row["amount"]

    out.update({
        "total": total,
        "transaction_count": len(payments),
        "payment_breakdown": breakdown,
        "refund_total": refund_total,
        "net_collection": money2(total - refund_total),
    })
    return out


# ---------- reports ----------


def daily_summary(db: Session, *, clinic_id: int, day: date) -> Dict[str, Any]:
    """
    Collections for one clinic-local day: payment records only, split by
    method. Refunds paid out the same day are reported alongside.
    """
    start, end = day_bounds(day)
    payments = _records(db, clinic_id, RecordType.PAYMENT, start, end)
    refunds = _records(db, clinic_id, RecordType.REFUND, start, end)
    return _summarize(day, payments, refunds)


def _service_categories(db: Session, payments: Sequence[PaymentRecord],
                        total: Decimal) -> List[Dict[str, Any]]:
    bill_ids = sorted({int(p.bill_id) for p in payments})
    if not bill_ids:
        return []

    items_by_bill: Dict[int, List[BillItem]] = defaultdict(list)
    for it in (db.query(BillItem).filter(BillItem.bill_id.in_(bill_ids)).order_by(
            BillItem.bill_id.asc(), BillItem.seq.asc(), BillItem.id.asc())):
        items_by_bill[int(it.bill_id)].append(it)

    amounts: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    touched: Dict[str, set] = defaultdict(set)
    for p in payments:
        items = items_by_bill.get(int(p.bill_id)) or []
        parts = allocate_pro_rata(p.amount, [it.total_price for it in items])
        for it, part in zip(items, parts):
            if part == 0:
                continue
            cat = it.item_type.value
            amounts[cat] += part
            touched[cat].add(int(it.id))

    rows = [{
        "category": cat,
        "amount": money2(a),
        "count": len(touched[cat]),
        "percentage": pct(a, total),
    } for cat, a in amounts.items()]
    rows.sort(key=lambda r: (-r["amount"], r["category"]))
    return rows


def _hourly(payments: Sequence[PaymentRecord]) -> List[Dict[str, Any]]:
    amounts = [Decimal("0")] * 24
    counts = [0] * 24
    for p in payments:
        h = p.payment_date.hour
        amounts[h] += money2(p.amount)
        counts[h] += 1
    return [{
        "hour": f"{h:02d}:00",
        "amount": money2(amounts[h]),
        "count": counts[h],
    } for h in range(24)]


def enhanced_report(db: Session,
                    *,
                    clinic_id: int,
                    day: date,
                    top_n: Optional[int] = None) -> Dict[str, Any]:
    top_n = settings.PEAK_HOURS_TOP_N if top_n is None else int(top_n)
    start, end = day_bounds(day)

    payments = _records(db, clinic_id, RecordType.PAYMENT, start, end)
    total = money2(sum((money2(p.amount) for p in payments), Decimal("0")))
    count = len(payments)

    outstanding = Decimal("0")
    for (bal, ) in db.query(Bill.balance_amount).filter(
            Bill.clinic_id == int(clinic_id),
            Bill.bill_date >= start,
            Bill.bill_date < end,
    ):
        if money2(bal) > 0:
            outstanding += money2(bal)

    hourly = _hourly(payments)
    busy = [{
        "hour": int(h["hour"][:2]),
        "amount": h["amount"],
        "count": h["count"],
    } for h in hourly if h["count"] > 0]
    busy.sort(key=lambda r: (-r["amount"], r["hour"]))

    return {
        "date": day.isoformat(),
        "total": total,
        "transaction_count": count,
        "average_transaction_value": money2(total / count) if count else ZERO,
        "outstanding_balance": money2(outstanding),
        "payment_methods": _method_rows(payments, total),
        "service_categories": _service_categories(db, payments, total),
        "peak_hours": busy[:max(top_n, 0)],
        "hourly_breakdown": hourly,
    }


def period_summary(db: Session, *, clinic_id: int, start: date,
                   end: date) -> Dict[str, Any]:
    """
    One daily summary per day in [start, end] plus range totals.
    """
    start, end = _date_range(start, end)
    lo, _ = day_bounds(start)
    _, hi = day_bounds(end)

    by_day_pay: Dict[date, List[PaymentRecord]] = defaultdict(list)
    by_day_ref: Dict[date, List[PaymentRecord]] = defaultdict(list)
    for p in _records(db, clinic_id, RecordType.PAYMENT, lo, hi):
        by_day_pay[p.payment_date.date()].append(p)
    for r in _records(db, clinic_id, RecordType.REFUND, lo, hi):
        by_day_ref[r.payment_date.date()].append(r)

    days: List[Dict[str, Any]] = []
    d = start
    while d <= end:
        days.append(_summarize(d, by_day_pay.get(d, []), by_day_ref.get(d, [])))
        d += timedelta(days=1)

    total = money2(sum((x["total"] for x in days), Decimal("0")))
    refund_total = money2(sum((x["refund_total"] for x in days), Decimal("0")))
    method_totals = {
        m.value: money2(sum((x[m.value] for x in days), Decimal("0")))
        for m in PaymentMethod
    }

    return {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total": total,
        "transaction_count": sum(x["transaction_count"] for x in days),
        "refund_total": refund_total,
        "net_collection": money2(total - refund_total),
        "method_totals": method_totals,
        "daily_summaries": days,
    }
