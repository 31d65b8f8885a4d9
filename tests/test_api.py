from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import update

from clinic_billing.api.deps import get_db
from clinic_billing.core.config import settings
from clinic_billing.core.rbac import BillingPerm
from clinic_billing.main import app
from clinic_billing.models.billing import Bill
from clinic_billing.utils.timezone import today_local
from tests.conftest import DEFAULT_ITEMS, make_session_factory

API = settings.API_V1_STR


def _token(sub=7, cid=1, perms=()):
    claims = {"sub": str(sub), "cid": cid, "perms": [getattr(p, "value", p) for p in perms]}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def _auth(**kw):
    return {"Authorization": f"Bearer {_token(**kw)}"}


MANAGER = dict(perms=[BillingPerm.MANAGE_BILLING])
VIEWER = dict(perms=[BillingPerm.VIEW_REPORTS])


@pytest.fixture
def client(engine):
    factory = make_session_factory(engine)

    def _db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create_bill(client, **auth):
    r = client.post(f"{API}/billing/bills",
                    json={
                        "patient_id": 501,
                        "items": DEFAULT_ITEMS
                    },
                    headers=_auth(**(auth or MANAGER)))
    assert r.status_code == 201, r.text
    return r.json()["data"]


def test_create_and_read_bill(client):
    bill = _create_bill(client)
    assert bill["total_amount"] == "1000.00"
    assert bill["balance_amount"] == "1000.00"
    assert bill["payment_status"] == "pending"
    assert bill["refund_status"] == "not_requested"
    assert len(bill["items"]) == 2

    r = client.get(f"{API}/billing/bills/{bill['id']}", headers=_auth(**VIEWER))
    body = r.json()
    assert r.status_code == 200
    assert body["ok"] is True
    assert body["data"]["bill_number"] == bill["bill_number"]


def test_missing_token(client):
    r = client.get(f"{API}/billing/bills/1")
    assert r.status_code == 401
    assert r.json() == {
        "ok": False,
        "error": {
            "msg": "Missing token",
            "code": None,
            "details": None
        }
    }


def test_bad_token(client):
    r = client.get(f"{API}/billing/bills/1",
                   headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_request_validation_uses_envelope(client):
    r = client.post(f"{API}/billing/bills",
                    json={
                        "patient_id": 1,
                        "items": []
                    },
                    headers=_auth(**MANAGER))
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "request_validation"


def test_bill_of_other_clinic_is_not_found(client):
    bill = _create_bill(client)
    r = client.get(f"{API}/billing/bills/{bill['id']}",
                   headers=_auth(cid=2, **VIEWER))
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "not_found"


def test_viewer_cannot_pay(client):
    bill = _create_bill(client)
    r = client.post(f"{API}/billing/bills/{bill['id']}/payments",
                    json={
                        "amount": "100",
                        "payment_method": "cash"
                    },
                    headers=_auth(**VIEWER))
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "permission_denied"


def test_payment_refund_round(client):
    bill = _create_bill(client)
    bid = bill["id"]
    h = _auth(**MANAGER)

    r = client.post(f"{API}/billing/bills/{bid}/payments",
                    json={
                        "amount": "1000",
                        "payment_method": "upi",
                        "reference_no": "UPI-1"
                    },
                    headers=h)
    assert r.status_code == 201
    assert r.json()["data"]["amount"] == "1000.00"

    r = client.post(f"{API}/billing/bills/{bid}/refunds",
                    json={
                        "amount": "1200",
                        "refund_method": "cash"
                    },
                    headers=h)
    assert r.status_code == 409
    err = r.json()["error"]
    assert err["code"] == "exceeds_refundable"
    assert err["details"]["refundable_amount"] == "1000.00"

    r = client.post(f"{API}/billing/bills/{bid}/refunds",
                    json={
                        "amount": "300",
                        "refund_method": "cash",
                        "reason": "test not done"
                    },
                    headers=h)
    assert r.status_code == 201
    req = r.json()["data"]
    assert req["status"] == "pending_approval"

    r = client.post(f"{API}/billing/refunds/{req['id']}/mark-paid", headers=h)
    assert r.status_code == 409
    assert r.json()["error"]["details"] == {
        "current_state": "pending_approval",
        "attempted_state": "paid"
    }

    r = client.post(f"{API}/billing/refunds/{req['id']}/approve", headers=h)
    assert r.json()["data"]["status"] == "approved"

    r = client.post(f"{API}/billing/refunds/{req['id']}/mark-paid",
                    json={"notes": "handed over at desk"},
                    headers=h)
    assert r.status_code == 200
    rec = r.json()["data"]
    assert rec["record_type"] == "refund"
    assert rec["amount"] == "300.00"

    bill = client.get(f"{API}/billing/bills/{bid}", headers=h).json()["data"]
    assert bill["paid_amount"] == "1000.00"
    assert bill["total_refunded_amount"] == "300.00"
    assert bill["refund_status"] == "partial"

    r = client.get(f"{API}/billing/bills/{bid}/refundable", headers=h)
    assert r.json()["data"] == {"bill_id": bid, "refundable_amount": "700.00"}

    r = client.get(f"{API}/billing/bills/{bid}/payments", headers=h)
    assert [p["record_type"] for p in r.json()["data"]] == ["payment", "refund"]

    r = client.get(f"{API}/billing/refunds", params={"status": "paid"}, headers=h)
    assert r.json()["meta"]["count"] == 1


def test_reject_and_cancel(client):
    bill = _create_bill(client)
    bid = bill["id"]
    h = _auth(**MANAGER)
    client.post(f"{API}/billing/bills/{bid}/payments",
                json={"amount": "500"},
                headers=h)

    first = client.post(f"{API}/billing/bills/{bid}/refunds",
                        json={"amount": "100"},
                        headers=h).json()["data"]
    r = client.post(f"{API}/billing/refunds/{first['id']}/reject",
                    json={"reason": "duplicate"},
                    headers=h)
    assert r.json()["data"]["status"] == "rejected"
    assert r.json()["data"]["rejected_reason"] == "duplicate"

    second = client.post(f"{API}/billing/bills/{bid}/refunds",
                         json={
                             "amount": "100",
                             "submit": False
                         },
                         headers=h).json()["data"]
    assert second["status"] == "draft"
    r = client.post(f"{API}/billing/refunds/{second['id']}/cancel", headers=h)
    assert r.json()["data"]["status"] == "cancelled"


def test_adjustment_and_recompute(client):
    bill = _create_bill(client)
    bid = bill["id"]
    h = _auth(**MANAGER)
    client.post(f"{API}/billing/bills/{bid}/payments",
                json={"amount": "900"},
                headers=h)
    r = client.post(f"{API}/billing/bills/{bid}/adjustments",
                    json={
                        "amount": "100",
                        "reason": "rounding waiver"
                    },
                    headers=h)
    assert r.status_code == 201

    r = client.post(f"{API}/billing/bills/{bid}/recompute", headers=h)
    assert r.json()["data"]["payment_status"] == "paid"
    assert r.json()["data"]["balance_amount"] == "0.00"


def test_reports(client):
    bill = _create_bill(client)
    h = _auth(**MANAGER)
    client.post(f"{API}/billing/bills/{bill['id']}/payments",
                json={
                    "amount": "500",
                    "payment_method": "cash",
                    "payment_date": "2025-03-14T10:15:00"
                },
                headers=h)

    r = client.get(f"{API}/billing/reports/daily",
                   params={"date": "2025-03-14"},
                   headers=_auth(**VIEWER))
    data = r.json()["data"]
    assert data["total"] == "500.00"
    assert data["cash"] == "500.00"
    assert data["payment_breakdown"][0]["percentage"] == "100.00"

    r = client.get(f"{API}/billing/reports/daily/enhanced",
                   params={"date": "2025-03-14"},
                   headers=_auth(**VIEWER))
    assert r.json()["data"]["peak_hours"] == [{
        "hour": 10,
        "amount": "500.00",
        "count": 1
    }]

    r = client.get(f"{API}/billing/reports/range",
                   params={
                       "date_from": "2025-03-13",
                       "date_to": "2025-03-14"
                   },
                   headers=_auth(**VIEWER))
    assert len(r.json()["data"]["daily_summaries"]) == 2

    r = client.get(f"{API}/billing/reports/daily",
                   headers=_auth(perms=[BillingPerm.REQUEST_REFUNDS]))
    assert r.status_code == 403


def test_bill_turns_overdue_on_read(client, engine):
    today = today_local()
    h = _auth(**MANAGER)
    r = client.post(f"{API}/billing/bills",
                    json={
                        "patient_id": 501,
                        "due_date": (today + timedelta(days=1)).isoformat(),
                        "items": DEFAULT_ITEMS
                    },
                    headers=h)
    bid = r.json()["data"]["id"]
    r = client.post(f"{API}/billing/bills/{bid}/payments",
                    json={"amount": "100"},
                    headers=h)
    assert r.status_code == 201

    with make_session_factory(engine)() as s:
        s.execute(
            update(Bill).where(Bill.id == bid).values(
                due_date=today - timedelta(days=1)))
        s.commit()

    bill = client.get(f"{API}/billing/bills/{bid}", headers=h).json()["data"]
    assert bill["payment_status"] == "overdue"
    assert bill["balance_amount"] == "900.00"


def test_waiver_does_not_raise_refund_ceiling(client):
    bid = _create_bill(client)["id"]
    h = _auth(**MANAGER)
    client.post(f"{API}/billing/bills/{bid}/payments",
                json={"amount": "800"},
                headers=h)
    client.post(f"{API}/billing/bills/{bid}/adjustments",
                json={
                    "amount": "200",
                    "reason": "waiver"
                },
                headers=h)

    r = client.get(f"{API}/billing/bills/{bid}/refundable", headers=h)
    assert r.json()["data"]["refundable_amount"] == "800.00"

    r = client.post(f"{API}/billing/bills/{bid}/refunds",
                    json={"amount": "1000"},
                    headers=h)
    assert r.status_code == 409
    assert r.json()["error"]["details"]["refundable_amount"] == "800.00"
