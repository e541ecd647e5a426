from conftest import SHIPPING

from bookstore.models.domain_event import DomainEvent
from bookstore.models.transaction import Refund

USER = {"X-User-Id": "42"}


def _paid_order(client, make_variant, mock_provider, price_cents=40000):
    vid = make_variant(stock=5, price_cents=price_cents)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    body = client.post("/api/cart/checkout", json={"shipping_address": SHIPPING}, headers=USER).json()
    mock_provider.set_status(body["transaction_ref"], "SUCCESS")
    headers, raw = mock_provider.build_webhook(body["transaction_ref"], "SUCCESS")
    client.post("/api/payments/webhook/mock", content=raw, headers=headers)
    return body


def test_list_and_get_transactions(client, make_variant, mock_provider):
    paid = _paid_order(client, make_variant, mock_provider)
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers={"X-User-Id": "7"})
    client.post("/api/cart/checkout", json={"shipping_address": SHIPPING}, headers={"X-User-Id": "7"})

    r = client.get("/api/transactions")
    assert r.status_code == 200
    assert r.json()["total"] == 2

    r = client.get("/api/transactions", params={"status": "SUCCESS"})
    items = r.json()["items"]
    assert [t["id"] for t in items] == [paid["transaction_id"]]
    assert items[0]["gateway_ref_id"] == paid["transaction_ref"]

    r = client.get("/api/transactions", params={"order_id": paid["order_id"], "size": 1})
    assert r.json()["total"] == 1

    r = client.get(f"/api/transactions/{paid['transaction_id']}")
    assert r.status_code == 200
    assert r.json()["status"] == "SUCCESS"
    assert r.json()["refunds"] == []

    r = client.get("/api/transactions/nope")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "TRANSACTION_NOT_FOUND"


def test_partial_then_full_refund(client, db, make_variant, mock_provider):
    paid = _paid_order(client, make_variant, mock_provider, price_cents=40000)
    url = f"/api/transactions/{paid['transaction_id']}/refund"

    r = client.post(url, json={"amount_cents": 15000, "reason": "damaged cover"})
    assert r.status_code == 200
    assert r.json()["amount_cents"] == 15000
    assert r.json()["refund_ref"].startswith("mock_rfnd_")

    r = client.post(url, json={"amount_cents": 30000})
    assert r.status_code == 409
    assert r.json()["detail"]["details"]["refundable"] == 25000

    # the balance by default
    r = client.post(url, json={})
    assert r.status_code == 200
    assert r.json()["amount_cents"] == 25000

    r = client.post(url, json={})
    assert r.status_code == 409

    refunds = client.get(f"/api/transactions/{paid['transaction_id']}").json()["refunds"]
    assert sorted(x["amount_cents"] for x in refunds) == [15000, 25000]
    assert db.query(DomainEvent).filter(DomainEvent.event_type == "payment.refunded").count() == 2


def test_refund_requires_a_successful_transaction(client, make_variant):
    vid = make_variant(stock=5)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 1}, headers=USER)
    body = client.post("/api/cart/checkout", json={"shipping_address": SHIPPING}, headers=USER).json()

    r = client.post(f"/api/transactions/{body['transaction_id']}/refund", json={})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "TRANSACTION_NOT_REFUNDABLE"

    r = client.post("/api/transactions/unknown/refund", json={})
    assert r.status_code == 404


def test_provider_refusal_is_recorded(client, db, make_variant, mock_provider):
    paid = _paid_order(client, make_variant, mock_provider)
    # gateway disagrees about the capture
    mock_provider.set_status(paid["transaction_ref"], "PENDING")

    r = client.post(f"/api/transactions/{paid['transaction_id']}/refund", json={"reason": "customer request"})
    assert r.status_code == 502
    assert r.json()["detail"]["code"] == "REFUND_FAILED"
    refund = db.query(Refund).one()
    assert refund.status == "FAILED"
