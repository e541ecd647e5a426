from prometheus_client import REGISTRY

from conftest import SHIPPING


def test_health_ok(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["db"] is True
    assert body["payment_providers"] == {"mock": True}


def test_health_degraded_when_a_provider_is_down(client, providers, monkeypatch):
    monkeypatch.setattr(providers["mock"], "health_check", lambda: False)
    body = client.get("/api/health").json()
    assert body["status"] == "degraded"
    assert body["payment_providers"] == {"mock": False}


def test_inventory_available(client, make_variant):
    vid = make_variant(stock=7)
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 3}, headers={"X-User-Id": "1"})
    r = client.get(f"/api/inventory/available/{vid}")
    assert r.json() == {"variant_id": vid, "available": 4}

    r = client.get("/api/inventory/available/999")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "VARIANT_NOT_FOUND"


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_metrics_follow_cart_checkout_and_webhook_activity(client, make_variant, mock_provider):
    vid = make_variant(stock=3)
    added = _sample("cart_operations_total", operation="add", status="success")
    rejected = _sample("cart_operations_total", operation="add", status="failed")
    reserved = _sample("stock_reservation_total", status="reserved")
    checkouts = _sample("checkout_requests_total", status="success")
    timed = _sample("checkout_duration_seconds_count")
    paid = _sample("payment_webhook_total", provider="mock", status="success")

    client.post("/api/cart/items", json={"variant_id": vid, "qty": 2}, headers={"X-User-Id": "1"})
    client.post("/api/cart/items", json={"variant_id": vid, "qty": 2}, headers={"X-User-Id": "2"})
    body = client.post(
        "/api/cart/checkout", json={"shipping_address": SHIPPING}, headers={"X-User-Id": "1"}
    ).json()
    headers, raw = mock_provider.build_webhook(body["transaction_ref"], "SUCCESS")
    client.post("/api/payments/webhook/mock", content=raw, headers=headers)

    assert _sample("cart_operations_total", operation="add", status="success") == added + 1
    assert _sample("cart_operations_total", operation="add", status="failed") == rejected + 1
    assert _sample("stock_reservation_total", status="reserved") == reserved + 1
    assert _sample("checkout_requests_total", status="success") == checkouts + 1
    assert _sample("checkout_duration_seconds_count") == timed + 1
    assert _sample("payment_webhook_total", provider="mock", status="success") == paid + 1

    r = client.get("/api/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert "checkout_requests_total" in r.text
