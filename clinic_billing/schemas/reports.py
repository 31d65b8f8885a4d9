# FILE: clinic_billing/schemas/reports.py
from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict

from clinic_billing.schemas.billing import Money


class MethodRow(BaseModel):
    method: str
    amount: Money
    count: int
    percentage: Money


class CategoryRow(BaseModel):
    category: str
    amount: Money
    count: int
    percentage: Money


class HourRow(BaseModel):
    hour: str
    amount: Money
    count: int


class PeakHourRow(BaseModel):
    hour: int
    amount: Money
    count: int


class DailySummaryOut(BaseModel):
    model_config = ConfigDict(extra="ignore")

    date: str
    cash: Money
    card: Money
    upi: Money
    cheque: Money
    net_banking: Money
    wallet: Money
    total: Money
    transaction_count: int
    payment_breakdown: List[MethodRow]
    refund_total: Money
    net_collection: Money


class EnhancedReportOut(BaseModel):
    date: str
    total: Money
    transaction_count: int
    average_transaction_value: Money
    outstanding_balance: Money
    payment_methods: List[MethodRow]
    service_categories: List[CategoryRow]
    peak_hours: List[PeakHourRow]
    hourly_breakdown: List[HourRow]


class PeriodSummaryOut(BaseModel):
    start_date: str
    end_date: str
    total: Money
    transaction_count: int
    refund_total: Money
    net_collection: Money
    method_totals: Dict[str, Money]
    daily_summaries: List[DailySummaryOut]
