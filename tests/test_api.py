from urllib.parse import urlencode

import stripe
from sqlmodel import Session, select

from models import Order
from poller import OrderStatusPoller
from tests.conftest import USER, make_order, signed_notify

CNY_TIER = {"priceId": "price_80", "plan": "one-time", "credits": 80, "amount": 2025, "currency": "cny"}


def order_count(store):
    with Session(store.engine) as db_sess:
        return len(db_sess.exec(select(Order)).all())


def post_form(client, fields):
    return client.post(
        "/webhook/wechat",
        content=urlencode(fields),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )


def test_checkout_requires_auth(client, store):
    resp = client.post("/checkout", json=CNY_TIER)
    assert resp.status_code == 401
    assert resp.json() == {"code": -2, "message": "no auth"}
    assert order_count(store) == 0


def test_checkout_without_auth_and_bad_body_is_still_401(client, store):
    resp = client.post("/checkout", json={"amount": "lots"})
    assert resp.status_code == 401
    assert order_count(store) == 0


def test_checkout_invalid_params(client, store, auth):
    resp = client.post("/checkout", json=dict(CNY_TIER, plan="weekly"), headers=auth)
    assert resp.status_code == 400
    assert resp.json()["code"] == -1

    resp = client.post("/checkout", json={"plan": "one-time"}, headers=auth)
    assert resp.status_code == 400

    resp = client.post("/checkout", json=dict(CNY_TIER, amount="lots"), headers=auth)
    assert resp.status_code == 400
    assert resp.json() == {"code": -1, "message": "invalid params"}
    assert order_count(store) == 0


def test_checkout_stripe(client, store, auth):
    body = {"priceId": "price_m", "plan": "monthly", "credits": 300, "amount": 999, "currency": "usd"}
    resp = client.post("/checkout", json=body, headers=auth)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["payment_type"] == "stripe"
    assert data["session_id"] == "cs_test_abc"
    assert store.get_order(data["order_no"]).session_id == "cs_test_abc"


def test_checkout_provider_failure_is_generic(client, store, auth, wechat):
    wechat.fail = True
    resp = client.post("/checkout", json=CNY_TIER, headers=auth)
    assert resp.status_code == 502
    assert resp.json() == {"code": -1, "message": "payment failed"}
    assert order_count(store) == 1


def test_status_errors(client):
    resp = client.get("/orders/wechat/status")
    assert resp.status_code == 400
    assert resp.json()["code"] == -1

    resp = client.get("/orders/wechat/status", params={"order_no": "GHOST"})
    assert resp.status_code == 404
    assert resp.json()["code"] == -1


def test_webhook_json_body(client, store):
    make_order(store, "A1")
    resp = client.post("/webhook/wechat", json=signed_notify("A1"))
    assert resp.status_code == 200
    assert resp.text == "SUCCESS"
    assert resp.headers["content-type"].startswith("text/plain")
    assert store.get_order("A1").is_paid


def test_webhook_rejections_are_plain_fail(client, store):
    make_order(store, "A1", amount=2025)

    for fields in (signed_notify("A1", amount=1000), signed_notify("GHOST"), signed_notify("A1", key="x")):
        resp = post_form(client, fields)
        assert resp.status_code == 400
        assert resp.text == "FAIL"

    resp = client.post("/webhook/wechat", content=b"[1, 2]", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.text == "FAIL"

    resp = client.post("/webhook/wechat", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.text == "FAIL"

    assert not store.get_order("A1").is_paid
    assert store.get_order("GHOST") is None


def test_stripe_webhook(client, store, monkeypatch):
    make_order(store, "S1", amount=999, credits=300, currency="usd", provider="stripe")
    event = {"type": "checkout.session.completed", "data": {"object": {
        "id": "cs_test_abc", "payment_status": "paid", "amount_total": 999, "metadata": {"order_no": "S1"},
    }}}
    monkeypatch.setattr(stripe.Webhook, "construct_event", lambda payload, sig_header, secret: event)

    resp = client.post("/webhook/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert store.get_order("S1").is_paid


def test_stripe_webhook_bad_signature(client, monkeypatch):
    def construct_event(payload, sig_header, secret):
        raise stripe.SignatureVerificationError("no match", sig_header)

    monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
    resp = client.post("/webhook/stripe", content=b"{}", headers={"stripe-signature": "bad"})
    assert resp.status_code == 401


def test_end_to_end_wechat_purchase(client, store, auth):
    resp = client.post("/checkout", json=CNY_TIER, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    data = body["data"]
    assert data["payment_type"] == "wechat"
    assert data["qr_code"]
    order_no = data["order_no"]

    status = client.get("/orders/wechat/status", params={"order_no": order_no}).json()
    assert status == {"code": 0, "message": "ok", "data": {"paid": False, "status": 1, "orderNo": order_no}}

    notify = signed_notify(order_no, amount=2025)
    assert post_form(client, notify).text == "SUCCESS"
    assert post_form(client, notify).text == "SUCCESS"

    def fetch(no):
        return client.get("/orders/wechat/status", params={"order_no": no}).json()["data"]

    final = OrderStatusPoller(fetch, order_no, interval=0, timeout=1).wait()
    assert final == {"paid": True, "status": 2, "orderNo": order_no}

    credits = client.get("/user/credits", headers=auth).json()["data"]
    assert credits == {"user_email": USER, "credits": 80}


def test_user_credits_requires_auth(client):
    resp = client.get("/user/credits")
    assert resp.status_code == 401
    assert resp.json()["code"] == -2
