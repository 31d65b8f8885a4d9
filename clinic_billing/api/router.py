# clinic_billing/api/router.py
from fastapi import APIRouter

from clinic_billing.api import (
    routes_billing,
    routes_billing_payments,
    routes_billing_refunds,
    routes_billing_reports,
)

api_router = APIRouter()

api_router.include_router(routes_billing.router)
api_router.include_router(routes_billing_payments.router)
api_router.include_router(routes_billing_refunds.router)
api_router.include_router(routes_billing_reports.router)
