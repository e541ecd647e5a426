import os
import tempfile

# settings are read on first import of bookstore.config
_tmp = tempfile.mkdtemp(prefix="bookstore_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_tmp, 'test.db')}")
os.environ.setdefault("LOCK_DIR", os.path.join(_tmp, "locks"))
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["PAYMENT_MOCK_DELAY_MS"] = "0"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from bookstore.adapters.mock_payment import MockPaymentProvider  # noqa: E402
from bookstore.api.deps import get_payment_providers  # noqa: E402
from bookstore.config import settings  # noqa: E402
from bookstore.db import SessionLocal, init_db  # noqa: E402
from bookstore.main import app  # noqa: E402
from bookstore.models.variant import Variant  # noqa: E402

GUEST_SESSION = "3f1b2c4d-5e6f-4a7b-8c9d-0e1f2a3b4c5d"
OTHER_GUEST_SESSION = "9a8b7c6d-5e4f-4321-a0b1-c2d3e4f5a6b7"

SHIPPING = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "postal_code": "560001",
}


@pytest.fixture(autouse=True)
def fresh_db():
    init_db(reset=True)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def mock_provider():
    return MockPaymentProvider(webhook_secret=settings.MOCK_PAYMENT_WEBHOOK_SECRET)


@pytest.fixture
def providers(mock_provider):
    return {"mock": mock_provider}


@pytest.fixture
def client(providers):
    app.dependency_overrides[get_payment_providers] = lambda: providers
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_variant(db):
    counter = {"n": 0}

    def _make(stock=10, price_cents=49900, format="paperback", title=None):
        counter["n"] += 1
        v = Variant(
            sku=f"BK-{counter['n']:04d}",
            title=title or f"Test Book {counter['n']}",
            format=format,
            price_cents=price_cents,
            stock_quantity=stock,
            reserved_quantity=0,
        )
        db.add(v)
        db.commit()
        return v.id

    return _make


@pytest.fixture
def variant_state(db):
    """Fresh (stock, reserved) of a variant, bypassing the session cache."""

    def _state(variant_id):
        db.expire_all()
        v = db.get(Variant, variant_id)
        return v.stock_quantity, v.reserved_quantity

    return _state
