import functools

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

CART_OPERATIONS = Counter(
    "cart_operations_total",
    "Cart mutations by operation and outcome",
    ["operation", "status"],
)
CHECKOUT_REQUESTS = Counter(
    "checkout_requests_total",
    "Checkout attempts by outcome",
    ["status"],
)
CHECKOUT_DURATION = Histogram(
    "checkout_duration_seconds",
    "Time from checkout request to payment initiation",
)
PAYMENT_WEBHOOKS = Counter(
    "payment_webhook_total",
    "Payment webhooks by provider and handling result",
    ["provider", "status"],
)
STOCK_RESERVATIONS = Counter(
    "stock_reservation_total",
    "Stock hold changes by kind",
    ["status"],
)


def track_cart_operation(operation: str):
    """Count calls of a cart mutation as success or failed."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                result = fn(*args, **kwargs)
            except Exception:
                CART_OPERATIONS.labels(operation=operation, status="failed").inc()
                raise
            CART_OPERATIONS.labels(operation=operation, status="success").inc()
            return result

        return wrapper

    return decorator


def render_latest():
    return generate_latest(), CONTENT_TYPE_LATEST
