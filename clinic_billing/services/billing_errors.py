# FILE: clinic_billing/services/billing_errors.py
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(RuntimeError):
    """
    Base for every ledger error. Carries a machine code, the HTTP status the
    API layer should answer with, and structured details (current ceiling,
    states, balances) so the caller can correct and resubmit.
    """
    code = "billing_error"
    status_code = 400

    def __init__(self,
                 message: str,
                 *,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class InvalidAmount(ValidationError):
    code = "invalid_amount"


class NotFound(BillingError):
    code = "not_found"
    status_code = 404


class PermissionDenied(BillingError):
    code = "permission_denied"
    status_code = 403


class ExceedsRefundable(BillingError):
    code = "exceeds_refundable"
    status_code = 409

    def __init__(self, requested, ceiling) -> None:
        super().__init__(
            f"Refund amount {requested} exceeds refundable amount {ceiling}",
            details={
                "requested": str(requested),
                "refundable_amount": str(ceiling),
            },
        )
        self.requested = requested
        self.ceiling = ceiling


class InvalidTransition(BillingError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, current, attempted) -> None:
        cur = getattr(current, "value", current)
        att = getattr(attempted, "value", attempted)
        super().__init__(
            f"Refund request cannot move from {cur} to {att}",
            details={
                "current_state": cur,
                "attempted_state": att
            },
        )
        self.current = current
        self.attempted = attempted


class OverpaymentNotAllowed(BillingError):
    code = "overpayment_not_allowed"
    status_code = 409

    def __init__(self, amount, balance) -> None:
        super().__init__(
            f"Payment {amount} exceeds remaining balance {balance}",
            details={
                "amount": str(amount),
                "balance_amount": str(balance)
            },
        )


class ConsistencyViolation(BillingError):
    """
    A derived aggregate disagrees with the records it is derived from.
    Indicates a transaction-boundary bug; never corrected silently.
    """
    code = "consistency_violation"
    status_code = 500
