# clinic_billing/services/billing_math.py
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict

from clinic_billing.services.billing_errors import ValidationError

Q2 = Decimal("0.01")
ZERO = Decimal("0.00")


def D(x) -> Decimal:
    try:
        d = Decimal(str(x if x is not None else 0))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Not a valid amount: {x!r}",
                              details={"value": str(x)})
    if not d.is_finite():
        raise ValidationError(f"Not a valid amount: {x!r}",
                              details={"value": str(x)})
    return d


def money2(x) -> Decimal:
    return D(x).quantize(Q2, rounding=ROUND_HALF_UP)


def compute_line_amounts(qty, unit_price, discount, tax) -> Dict[str, Decimal]:
    """
    Bill line math:
      gross = qty * unit_price
      total_price = gross - discount + tax
    Inputs are validated by the ledger before this is called.
    """
    gross = money2(D(qty) * D(unit_price))
    discount = money2(discount)
    tax = money2(tax)

    return {
        "gross": gross,
        "discount": discount,
        "tax": tax,
        "total_price": money2(gross - discount + tax),
    }


def pct(part, whole) -> Decimal:
    whole = D(whole)
    if whole == 0:
        return ZERO
    return money2(D(part) * Decimal("100") / whole)


def allocate_pro_rata(amount, weights) -> list[Decimal]:
    """
    Split amount across weights, quantized to 0.01. The rounding residue is
    put on the last non-zero weight so the parts always sum to amount.
    """
    amount = money2(amount)
    weights = [D(w) for w in weights]
    total_w = sum(weights, Decimal("0"))
    if not weights or total_w <= 0:
        return [ZERO for _ in weights]

    parts = [money2(amount * w / total_w) for w in weights]
    residue = amount - sum(parts, Decimal("0"))
    if residue:
        last = max(i for i, w in enumerate(weights) if w > 0)
        parts[last] = money2(parts[last] + residue)
    return parts
