from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional, Set

from clinic_billing.services.billing_errors import PermissionDenied


class BillingPerm(str, Enum):
    MANAGE_BILLING = "manage_billing"
    APPROVE_REFUNDS = "approve_refunds"
    REQUEST_REFUNDS = "request_refunds"
    VIEW_REPORTS = "view_billing_reports"


# Either capability lets an actor approve / reject / pay out refunds
REFUND_APPROVER_PERMS = (BillingPerm.APPROVE_REFUNDS, BillingPerm.MANAGE_BILLING)

# Raising, submitting or withdrawing a refund request
REFUND_REQUESTER_PERMS = (BillingPerm.REQUEST_REFUNDS, ) + REFUND_APPROVER_PERMS


@dataclass(frozen=True)
class Actor:
    """
    Identity handed to the ledger by the auth collaborator.
    The ledger only asks "may this actor do X?".
    """
    id: Optional[int]
    clinic_id: Optional[int] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False


def _code(x: Any) -> str:
    """
    Normalize permission code safely.
    Supports:
      - Enum -> enum.value
      - str  -> str
      - object with .code -> str/Enum
      - dict {"code": ...}
    """
    if x is None:
        return ""

    if isinstance(x, Enum):
        return str(x.value)

    if isinstance(x, str):
        return x

    if isinstance(x, dict) and "code" in x:
        return _code(x["code"])

    if hasattr(x, "code"):
        return _code(getattr(x, "code"))

    return str(x)


def is_admin_user(user: Any) -> bool:
    if not user:
        return False
    return bool(getattr(user, "is_admin", False))


def iter_user_perm_codes(user: Any) -> Set[str]:
    out: Set[str] = set()
    if not user:
        return out

    for p in getattr(user, "permissions", None) or []:
        c = _code(p).strip()
        if c:
            out.add(c)
    return out


def has_perm(user: Any, code: Any) -> bool:
    if is_admin_user(user):
        return True

    want = _code(code).strip()
    if not want:
        return False

    return want in iter_user_perm_codes(user)


def has_any(user: Any, required: Iterable[Any]) -> bool:
    if is_admin_user(user):
        return True
    required_set = {_code(x).strip() for x in required if _code(x).strip()}
    return bool(iter_user_perm_codes(user).intersection(required_set))


def require_any(user: Any,
                required: Iterable[Any],
                *,
                message: Optional[str] = None) -> None:
    """
    Raise PermissionDenied if user doesn't have at least one permission from 'required'.
    """
    required = list(required)
    if has_any(user, required):
        return

    raise PermissionDenied(
        message or "You do not have permission to perform this action.",
        details={"required_any": sorted(_code(x) for x in required)},
    )


def can_approve_refunds(user: Any) -> bool:
    return has_any(user, REFUND_APPROVER_PERMS)
