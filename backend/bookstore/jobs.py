import logging
import os
from typing import Dict, Mapping

from apscheduler.schedulers.background import BackgroundScheduler
from filelock import FileLock, Timeout

from bookstore.adapters.payment_provider import PaymentProvider
from bookstore.config import settings
from bookstore.db import SessionLocal
from bookstore.services.cart_archive_service import CartArchiveService
from bookstore.services.expiry_service import OrderTimeoutService, ReservationExpiryService
from bookstore.services.payment_reconciliation_service import PaymentReconciliationService

log = logging.getLogger(__name__)


def _job_lock(name: str) -> FileLock:
    os.makedirs(settings.LOCK_DIR, exist_ok=True)
    return FileLock(os.path.join(settings.LOCK_DIR, f"job_{name}.lock"))


def _run_exclusive(name: str, work):
    """
    Run ``work(db)`` with a fresh session unless another process on this
    host is already running the same job.
    """
    try:
        lock = _job_lock(name).acquire(timeout=0)
    except Timeout:
        log.info("job %s already running elsewhere, skipping", name)
        return None
    with lock:
        db = SessionLocal()
        try:
            return work(db)
        finally:
            db.close()


def run_reservation_expiry(now=None) -> Dict[str, int]:
    return _run_exclusive(
        "reservation_expiry",
        lambda db: ReservationExpiryService(db).expire_idle_reservations(now),
    )


def run_order_timeout(now=None) -> Dict[str, int]:
    return _run_exclusive(
        "order_timeout",
        lambda db: OrderTimeoutService(db).cancel_stale_orders(now),
    )


def run_payment_reconciliation(providers: Mapping[str, PaymentProvider], now=None) -> Dict[str, int]:
    return _run_exclusive(
        "payment_reconciliation",
        lambda db: PaymentReconciliationService(db, providers).reconcile_pending(now),
    )


def run_cart_archive(now=None) -> Dict[str, int]:
    return _run_exclusive(
        "cart_archive",
        lambda db: CartArchiveService(db).archive_closed_carts(now),
    )


def build_scheduler(providers: Mapping[str, PaymentProvider]) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    # a slow sweep is skipped rather than stacked behind itself
    job_defaults = {"max_instances": 1, "coalesce": True}

    scheduler.add_job(
        run_reservation_expiry,
        "interval",
        seconds=settings.RESERVATION_SWEEP_INTERVAL_SECONDS,
        id="expire_reservations",
        **job_defaults,
    )
    scheduler.add_job(
        run_order_timeout,
        "interval",
        seconds=settings.ORDER_TIMEOUT_SWEEP_INTERVAL_SECONDS,
        id="cancel_stale_orders",
        **job_defaults,
    )
    scheduler.add_job(
        run_payment_reconciliation,
        "interval",
        seconds=settings.RECONCILIATION_INTERVAL_SECONDS,
        id="reconcile_payments",
        args=[providers],
        **job_defaults,
    )
    scheduler.add_job(
        run_cart_archive,
        "interval",
        seconds=settings.CART_ARCHIVE_INTERVAL_SECONDS,
        id="archive_closed_carts",
        **job_defaults,
    )
    return scheduler
