# clinic_billing/api/deps.py
from __future__ import annotations

from functools import lru_cache
from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from clinic_billing.core.config import settings
from clinic_billing.core.rbac import Actor
from clinic_billing.db.session import SessionLocal
from clinic_billing.services.billing_notifications import RefundNotifier, build_notifier
from clinic_billing.services.billing_payment_service import PaymentRecorder
from clinic_billing.services.refund_workflow import RefundWorkflow


# =========================================================
# DB (per request)
# =========================================================
def get_db(request: Request) -> Generator[Session, None, None]:
    db = SessionLocal()
    # the unhandled-exception handler persists to error_logs through this
    request.state.db = db
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _decode_token(raw_token: str) -> dict:
    try:
        return jwt.decode(raw_token,
                          settings.JWT_SECRET,
                          algorithms=[settings.JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def actor_from_claims(payload: dict) -> Actor:
    sub = payload.get("sub")
    cid = payload.get("cid")
    if sub is None or cid is None:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    try:
        return Actor(
            id=int(sub),
            clinic_id=int(cid),
            permissions=frozenset(str(p) for p in payload.get("perms") or []),
            is_admin=bool(payload.get("admin", False)),
        )
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")


def current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")
    return actor_from_claims(_decode_token(raw))


# =========================================================
# SERVICES (process-wide)
# =========================================================
@lru_cache()
def get_notifier() -> RefundNotifier:
    return build_notifier(settings.REFUND_PAID_SUBSCRIBERS)


@lru_cache()
def get_payment_recorder() -> PaymentRecorder:
    return PaymentRecorder(allow_overpayment=settings.BILLING_ALLOW_OVERPAYMENT)


def get_refund_workflow(notifier: RefundNotifier = Depends(
    get_notifier)) -> RefundWorkflow:
    return RefundWorkflow(allow_direct_pay=settings.REFUND_ALLOW_DIRECT_PAY,
                          notifier=notifier)
