# FILE: clinic_billing/api/routes_billing_reports.py
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clinic_billing.api.deps import current_actor, get_db
from clinic_billing.api.response import ok
from clinic_billing.core.rbac import Actor, BillingPerm, require_any
from clinic_billing.schemas.reports import (
    DailySummaryOut,
    EnhancedReportOut,
    PeriodSummaryOut,
)
from clinic_billing.services.billing_reports import (
    daily_summary,
    enhanced_report,
    period_summary,
)
from clinic_billing.utils.timezone import today_local

router = APIRouter(prefix="/billing/reports", tags=["Billing Reports"])

REPORT_PERMS = [BillingPerm.VIEW_REPORTS, BillingPerm.MANAGE_BILLING]


@router.get("/daily")
def daily_summary_api(
        day: Optional[date] = Query(None, alias="date"),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, REPORT_PERMS)
    data = daily_summary(db,
                         clinic_id=actor.clinic_id,
                         day=day or today_local())
    return ok(DailySummaryOut.model_validate(data))


@router.get("/daily/enhanced")
def enhanced_report_api(
        day: Optional[date] = Query(None, alias="date"),
        top_n: Optional[int] = Query(None, ge=0, le=24),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, REPORT_PERMS)
    data = enhanced_report(db,
                           clinic_id=actor.clinic_id,
                           day=day or today_local(),
                           top_n=top_n)
    return ok(EnhancedReportOut.model_validate(data))


@router.get("/range")
def period_summary_api(
        date_from: date = Query(...),
        date_to: date = Query(...),
        db: Session = Depends(get_db),
        actor: Actor = Depends(current_actor),
):
    require_any(actor, REPORT_PERMS)
    data = period_summary(db,
                          clinic_id=actor.clinic_id,
                          start=date_from,
                          end=date_to)
    return ok(PeriodSummaryOut.model_validate(data))
