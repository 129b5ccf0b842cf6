import json

import httpx
import pytest

from galatix.gateway import MOCK_SIGNATURE_HEADER, MockPay


def make_product(client, **kw):
    body = {"name": "Gala ticket", "category": "ticket", "price_cents": 7500}
    body.update(kw)
    r = client.post("/api/admin/products", json=body)
    assert r.status_code == 200, r.text
    return r.json()["id"]


def buy(client, *items, **kw):
    body = {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "customer_email": "buyer@example.org",
    }
    body.update(kw)
    r = client.post("/api/checkout", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def post_event(client, kind, order_id, psid="mock_x", secret=None,
               event=None):
    if secret is None:
        secret = client.app.state.settings.mock_secret
    pay = MockPay(secret=secret)
    event = event or pay.build_event(kind, psid, order_id, 100)
    payload = json.dumps(event).encode()
    headers = {"content-type": "application/json"}
    if secret:
        headers[MOCK_SIGNATURE_HEADER] = pay.sign(payload)
    return client.post("/api/webhook", content=payload, headers=headers)


def login(client, email, password):
    r = client.post("/api/auth/login",
                    json={"email": email, "password": password})
    assert r.status_code == 200, r.text


# ----------------------------
# storefront
# ----------------------------
def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_catalog_grouped_and_sorted(admin_client):
    c = admin_client
    make_product(c, name="B", price_cents=9000)
    make_product(c, name="A", price_cents=5000)
    make_product(c, name="Late", price_cents=1000, sort_order=5)
    hidden = make_product(c, name="Hidden", category="raffle", price_cents=2500)
    c.delete(f"/api/admin/products/{hidden}")

    r = c.get("/api/products").json()
    assert set(r) == {"ticket", "sponsorship", "raffle", "donation"}
    assert [p["name"] for p in r["ticket"]] == ["A", "B", "Late"]
    assert r["raffle"] == []
    assert c.get("/api/products/nope").status_code == 404


def test_checkout_validation_maps_to_400(admin_client):
    c = admin_client
    pid = make_product(c, quantity_available=1)
    r = c.post("/api/checkout", json={
        "items": [{"product_id": pid, "quantity": 2}],
        "customer_email": "buyer@example.org",
    })
    assert r.status_code == 400
    assert r.json() == {"detail": "Only 1 Gala ticket available"}

    r = c.post("/api/checkout", json={
        "items": [{"product_id": pid, "quantity": 0}],
        "customer_email": "buyer@example.org",
    })
    assert r.status_code == 400
    assert "detail" in r.json()

    r = c.post("/api/checkout", json={
        "items": [{"product_id": pid, "quantity": 1}],
        "customer_email": "buyer@example.org",
        "payment_method": "bitcoin",
    })
    assert r.status_code == 400


# ----------------------------
# webhook
# ----------------------------
def test_signed_webhook_fulfills_once(admin_client):
    c = admin_client
    pid = make_product(c)
    raffle = make_product(c, name="Bundle", category="raffle",
                          price_cents=10000)
    order = buy(c, (pid, 2), (raffle, 1), donation_cents=500)
    oid = order["order_id"]

    event = MockPay(secret="").build_event(
        "succeeded", order["session_id"], oid, order["total_cents"]
    )
    assert post_event(c, None, oid, event=event).json() == {"received": True}
    # same delivery again: acknowledged, not reprocessed
    assert post_event(c, None, oid, event=event).status_code == 200
    # a different event for an already paid order is fine too
    assert post_event(c, "succeeded", oid).status_code == 200

    summary = c.get(f"/api/orders/{oid}").json()
    assert summary["status"] == "paid"
    assert summary["attendee_count"] == 2
    assert summary["raffle_entry_numbers"] == [1, 2, 3, 4, 5]
    assert summary["total_cents"] == 25500
    assert "customer_email" not in summary

    by_session = c.get(f"/api/orders/by-session/{order['session_id']}")
    assert by_session.json()["order_id"] == oid

    product = c.get(f"/api/products/{pid}").json()
    assert product["quantity_sold"] == 2

    donors = c.get("/api/admin/donors").json()
    assert [(d["email"], d["order_count"], d["total_donated_cents"])
            for d in donors] == [("buyer@example.org", 1, 25500)]


def test_webhook_rejects_bad_signature(admin_client):
    c = admin_client
    oid = buy(c, (make_product(c), 1))["order_id"]
    r = post_event(c, "succeeded", oid, secret="wrong-secret")
    assert r.status_code == 400
    r = post_event(c, "succeeded", oid, secret="")
    assert r.status_code == 400
    assert c.get(f"/api/orders/{oid}").json()["status"] == "pending"


def test_webhook_acks_unknown_order_and_cancels(admin_client):
    c = admin_client
    assert post_event(c, "succeeded", "no-such-order").status_code == 200

    oid = buy(c, (make_product(c), 1))["order_id"]
    assert post_event(c, "failed", oid).status_code == 200
    assert c.get(f"/api/orders/{oid}").json()["status"] == "pending"
    assert post_event(c, "canceled", oid).status_code == 200
    assert c.get(f"/api/orders/{oid}").json()["status"] == "cancelled"
    # paying a cancelled order is acknowledged but changes nothing
    assert post_event(c, "succeeded", oid).status_code == 200
    assert c.get(f"/api/orders/{oid}").json()["status"] == "cancelled"


def test_webhook_crash_is_acked_and_redelivery_fulfills(
        admin_client, monkeypatch):
    from galatix.api import webhook

    c = admin_client
    oid = buy(c, (make_product(c), 1))["order_id"]
    event = MockPay(secret="").build_event("succeeded", "mock_x", oid, 7500)

    async def boom(*a, **kw):
        raise RuntimeError("worker died")

    real = webhook.fulfill_order
    monkeypatch.setattr(webhook, "fulfill_order", boom)
    r = post_event(c, None, oid, event=event)
    assert r.status_code == 200
    assert r.json() == {"received": True}
    assert c.get(f"/api/orders/{oid}").json()["status"] == "pending"

    # the same delivery again is processed, not dropped as a duplicate
    monkeypatch.setattr(webhook, "fulfill_order", real)
    assert post_event(c, None, oid, event=event).status_code == 200
    assert c.get(f"/api/orders/{oid}").json()["status"] == "paid"


def test_mockpay_emit_round_trip(admin_client):
    c = admin_client
    app = c.app
    # deliver the signed event back into this app instead of the network
    app.state.http = httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    )
    order = buy(c, (make_product(c), 1))
    r = c.post(f"/mockpay/{order['session_id']}/emit",
               json={"kind": "succeeded"})
    assert r.status_code == 200, r.text
    assert r.json()["redirect_url"] == (
        f"http://testserver/success?session_id={order['session_id']}"
    )
    assert c.get(f"/api/orders/{order['order_id']}").json()["status"] \
        == "paid"
    assert c.post("/mockpay/mock_missing/emit").status_code == 404


# ----------------------------
# admin: orders
# ----------------------------
def test_complete_and_check_received(admin_client):
    c = admin_client
    pid = make_product(c)
    card = buy(c, (pid, 1))["order_id"]
    check = buy(c, (pid, 3), payment_method="check")
    assert check["redirect_url"].endswith(
        f"/check-confirmation?order_id={check['order_id']}"
    )

    r = c.post(f"/api/admin/orders/{card}/check-received")
    assert r.status_code == 409

    r = c.post(f"/api/admin/orders/{card}/complete")
    assert r.status_code == 200
    assert r.json()["attendees_created"] == 1
    assert c.post(f"/api/admin/orders/{card}/complete").status_code == 409

    r = c.post(f"/api/admin/orders/{check['order_id']}/check-received")
    assert r.json()["attendees_created"] == 3

    listed = c.get("/api/admin/orders", params={"status": "paid"}).json()
    assert {o["id"] for o in listed} == {card, check["order_id"]}
    assert all(o["names_collected"] == 0 for o in listed)
    assert c.get("/api/admin/orders",
                 params={"status": "weird"}).status_code == 400


def test_cancel_refund_and_notes(admin_client):
    c = admin_client
    pid = make_product(c)
    oid = buy(c, (pid, 1))["order_id"]

    r = c.patch(f"/api/admin/orders/{oid}", json={"notes": "VIP"})
    assert r.status_code == 200
    assert c.patch(f"/api/admin/orders/{oid}", json={}).status_code == 400

    assert c.post(f"/api/admin/orders/{oid}/refund").status_code == 409
    c.post(f"/api/admin/orders/{oid}/complete")
    r = c.post(f"/api/admin/orders/{oid}/cancel")
    assert r.status_code == 409
    assert "refund" in r.json()["detail"]
    assert c.post(f"/api/admin/orders/{oid}/refund").json()["status"] \
        == "refunded"

    detail = c.get(f"/api/admin/orders/{oid}").json()
    assert detail["notes"] == "VIP"
    assert detail["status"] == "refunded"
    assert len(detail["attendees"]) == 1
    assert detail["items"][0]["product_name"] == "Gala ticket"

    assert c.get("/api/admin/orders/nope").status_code == 404


# ----------------------------
# admin: seating, reports
# ----------------------------
def test_seating_over_http(admin_client):
    c = admin_client
    oid = buy(c, (make_product(c), 3))["order_id"]
    c.post(f"/api/admin/orders/{oid}/complete")
    table = c.post("/api/admin/tables",
                   json={"name": "T1", "capacity": 2}).json()
    ids = [a["id"] for a in c.get("/api/admin/tables/unassigned").json()]
    assert len(ids) == 3

    r = c.post(f"/api/admin/tables/{table['id']}/assign",
               json={"attendee_ids": ids})
    assert r.status_code == 409
    r = c.post(f"/api/admin/tables/{table['id']}/assign",
               json={"attendee_ids": ids[:2]})
    assert r.status_code == 200

    assert c.delete(f"/api/admin/tables/{table['id']}").status_code == 409
    r = c.delete(f"/api/admin/tables/{table['id']}/attendees/{ids[0]}")
    assert r.status_code == 200
    assert c.get("/api/admin/tables").json()[0]["current_count"] == 1

    r = c.patch(f"/api/admin/tables/{table['id']}", json={"capacity": 0})
    assert r.status_code == 409
    assert c.get(f"/api/admin/tables/{table['id']}").json()["capacity"] == 2

    # the admin form sends an empty table id to unassign
    r = c.patch(f"/api/admin/attendees/{ids[1]}", json={"table_id": ""})
    assert r.status_code == 200
    assert r.json()["table_id"] is None

    r = c.patch(f"/api/admin/attendees/{ids[2]}", json={"name": "Zed"})
    assert r.json()["name"] == "Zed"
    assert c.post(f"/api/admin/attendees/{ids[2]}/checkin").json()[
        "checked_in"] is True


def test_reports_and_exports(admin_client):
    c = admin_client
    pid = make_product(c)
    raffle = make_product(c, name="Single, \"lucky\"", category="raffle",
                          price_cents=2500)
    oid = buy(c, (pid, 2), (raffle, 2), donation_cents=1000,
              customer_name="Pat")["order_id"]
    buy(c, (pid, 1))
    c.post(f"/api/admin/orders/{oid}/complete")

    s = c.get("/api/admin/reports/summary").json()
    assert s["orders"]["total"] == 2
    assert s["orders"]["paid"] == 1
    assert s["orders"]["pending"] == 1
    assert s["revenue"]["total_cents"] == 21000
    assert s["revenue"]["by_category"] == {
        "ticket": 15000, "sponsorship": 0, "raffle": 5000, "donation": 1000,
    }
    assert s["attendees"]["total"] == 2
    assert s["raffle_entries"] == 2

    r = c.get("/api/admin/reports/export/raffle")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert "raffle-entries.csv" in r.headers["content-disposition"]
    lines = r.text.split("\r\n")
    assert lines[0] == "Entry #,Raffle Type,Purchaser Name,Purchaser Email"
    assert lines[1] == '1,"Single, ""lucky""",Pat,buyer@example.org'

    for name in ("attendees", "orders", "donors"):
        assert c.get(f"/api/admin/reports/export/{name}").status_code == 200
    assert c.get("/api/admin/reports/export/secrets").status_code == 404

    kinds = {t["kind"] for t in c.get("/api/admin/timings").json()}
    assert "fulfillment" in kinds


# ----------------------------
# auth and roles
# ----------------------------
def test_admin_requires_login(client):
    assert client.get("/api/admin/orders").status_code == 401
    assert client.get("/api/auth/me").status_code == 401


def test_setup_login_logout(admin_client):
    c = admin_client
    assert c.get("/api/auth/me").json()["user"]["email"] \
        == "boss@example.org"
    r = c.post("/api/auth/setup",
               json={"email": "x@example.org", "password": "12345678"})
    assert r.status_code == 403

    c.post("/api/auth/logout")
    assert c.get("/api/auth/me").status_code == 401
    r = c.post("/api/auth/login",
               json={"email": "boss@example.org", "password": "wrong-pass"})
    assert r.status_code == 401
    login(c, "BOSS@example.org", "correct-horse")
    assert c.get("/api/auth/me").status_code == 200


def test_view_role_is_read_only(admin_client):
    c = admin_client
    pid = make_product(c)
    r = c.post("/api/admin/users", json={
        "email": "viewer@example.org", "password": "viewer-pass",
        "role": "view",
    })
    assert r.status_code == 200
    c.post("/api/auth/logout")
    login(c, "viewer@example.org", "viewer-pass")

    assert c.get("/api/admin/orders").status_code == 200
    assert c.get("/api/admin/reports/export/orders").status_code == 200
    assert c.patch(f"/api/admin/products/{pid}",
                   json={"price_cents": 1}).status_code == 403
    assert c.get("/api/admin/users").status_code == 403


def test_user_management(admin_client):
    c = admin_client
    me = c.get("/api/auth/me").json()["user"]
    other = c.post("/api/admin/users", json={
        "email": "Two@example.org", "password": "password2",
    }).json()
    assert other["role"] == "view"
    assert c.post("/api/admin/users", json={
        "email": "two@example.org", "password": "password2",
    }).status_code == 409
    assert c.post("/api/admin/users", json={
        "email": "three@example.org", "password": "short",
    }).status_code == 400

    r = c.patch(f"/api/admin/users/{other['id']}", json={"role": "edit"})
    assert r.json()["role"] == "edit"
    assert c.delete(f"/api/admin/users/{me['id']}").status_code == 400
    assert c.delete(f"/api/admin/users/{other['id']}").status_code == 200
    assert [u["email"] for u in c.get("/api/admin/users").json()] \
        == ["boss@example.org"]


def test_password_reset_flow(admin_client, settings):
    c = admin_client
    r = c.post("/api/auth/forgot", json={"email": "nobody@example.org"})
    assert r.status_code == 200
    r = c.post("/api/auth/forgot", json={"email": "boss@example.org"})
    assert r.status_code == 200

    token = _reset_token(c)
    assert c.post("/api/auth/reset", json={
        "token": token, "password": "short",
    }).status_code == 400
    assert c.post("/api/auth/reset", json={
        "token": "bogus", "password": "new-password",
    }).status_code == 400
    assert c.post("/api/auth/reset", json={
        "token": token, "password": "new-password",
    }).status_code == 200
    # single use
    assert c.post("/api/auth/reset", json={
        "token": token, "password": "other-password",
    }).status_code == 400

    c.post("/api/auth/logout")
    login(c, "boss@example.org", "new-password")


def _reset_token(client):
    from sqlalchemy import select
    from galatix.model.db import AdminUser

    async def read():
        async with client.app.state.sessions() as db:
            return (await db.execute(
                select(AdminUser.reset_token)
                .where(AdminUser.email == "boss@example.org")
            )).scalar_one()
    return client.portal.call(read)


@pytest.mark.parametrize("path", [
    "/api/admin/orders", "/api/admin/attendees", "/api/admin/tables",
    "/api/admin/products", "/api/admin/donors",
    "/api/admin/attendees/missing-names",
])
def test_admin_lists_respond(admin_client, path):
    r = admin_client.get(path)
    assert r.status_code == 200
    assert r.json() == []
