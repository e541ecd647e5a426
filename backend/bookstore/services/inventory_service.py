import logging
import os
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator

from filelock import FileLock, Timeout
from sqlalchemy.orm import Session

from bookstore.config import settings
from bookstore.metrics import STOCK_RESERVATIONS
from bookstore.models.variant import Variant
from bookstore.repositories.variant_repo import VariantRepository
from bookstore.services.errors import (
    InsufficientStock,
    InvalidQuantity,
    ReservationLockTimeout,
    VariantNotFound,
)

log = logging.getLogger(__name__)


class InventoryService:
    """
    Reservation manager for the variant stock ledger.

    Two-phase: ``reserve`` provisionally holds units (reserved_quantity),
    ``commit`` consumes them on confirmed payment, ``release`` gives them back.

    Counter changes must happen while the caller holds :meth:`hold` for the
    variant and inside a single DB transaction (see ``unit_of_work``):

        with inventory.hold([variant_id]), unit_of_work(db):
            variant = inventory.lock_variant(variant_id)
            inventory.reserve(variant, 2)

    The file lock serialises writers across threads and processes on the
    host (SQLite ignores FOR UPDATE); on PostgreSQL the row lock from
    :meth:`lock_variant` does the same across hosts.
    """

    def __init__(self, db: Session):
        self.db = db
        self.variant_repo = VariantRepository(db)

    def _lock_path(self, variant_id: int) -> str:
        os.makedirs(settings.LOCK_DIR, exist_ok=True)
        return os.path.join(settings.LOCK_DIR, f"variant_{variant_id}.lock")

    @contextmanager
    def hold(self, variant_ids: Iterable[int]) -> Iterator[None]:
        """
        Acquire the file lock of every variant in ascending id order.
        Must be entered before the unit of work issues any DML.
        """
        with ExitStack() as stack:
            for variant_id in sorted(set(variant_ids)):
                lock = FileLock(self._lock_path(variant_id))
                try:
                    stack.enter_context(lock.acquire(timeout=settings.LOCK_TIMEOUT_SECONDS))
                except Timeout:
                    log.warning("reservation lock timeout for variant %s", variant_id)
                    raise ReservationLockTimeout(variant_id)
            yield

    def lock_variant(self, variant_id: int) -> Variant:
        variant = self.variant_repo.get_for_update(variant_id)
        if not variant:
            raise VariantNotFound(variant_id)
        return variant

    def available_quantity(self, variant_id: int) -> int:
        variant = self.variant_repo.get(variant_id)
        if not variant:
            raise VariantNotFound(variant_id)
        return max(0, variant.available_quantity)

    def reserve(self, variant: Variant, qty: int, transferable: int = 0) -> None:
        """
        Hold ``qty`` units of ``variant``.

        ``transferable`` counts units the caller already holds and is about to
        release in the same transaction (guest to user cart merge), so moving
        a hold never fails for lack of stock it is itself occupying.
        """
        if qty <= 0:
            raise InvalidQuantity(qty)
        if not variant.is_physical:
            return
        available = variant.stock_quantity - variant.reserved_quantity + transferable
        if available < qty:
            STOCK_RESERVATIONS.labels(status="failed").inc()
            raise InsufficientStock(variant.id, qty, max(0, available))
        variant.reserved_quantity += qty
        STOCK_RESERVATIONS.labels(status="reserved").inc()
        self.db.flush()
        log.info(
            "reserved variant=%s qty=%s reserved=%s stock=%s",
            variant.id,
            qty,
            variant.reserved_quantity,
            variant.stock_quantity,
        )

    def release(self, variant: Variant, qty: int) -> None:
        if qty <= 0 or not variant.is_physical:
            return
        # floor at zero so a double release can never drive the counter negative
        variant.reserved_quantity = max(0, variant.reserved_quantity - qty)
        STOCK_RESERVATIONS.labels(status="released").inc()
        self.db.flush()
        log.info(
            "released variant=%s qty=%s reserved=%s", variant.id, qty, variant.reserved_quantity
        )

    def commit(self, variant: Variant, qty: int) -> int:
        """
        Permanently consume ``qty`` held units. Returns the shortfall: units
        that could not be taken from stock because it was corrected below the
        held quantity in the meantime.
        """
        if qty <= 0 or not variant.is_physical:
            return 0
        shortfall = max(0, qty - variant.stock_quantity)
        variant.stock_quantity = max(0, variant.stock_quantity - qty)
        variant.reserved_quantity = max(0, variant.reserved_quantity - qty)
        STOCK_RESERVATIONS.labels(status="committed").inc()
        # a stock correction could leave more held than owned
        if variant.reserved_quantity > variant.stock_quantity:
            variant.reserved_quantity = variant.stock_quantity
        self.db.flush()
        log.info(
            "committed variant=%s qty=%s stock=%s reserved=%s",
            variant.id,
            qty,
            variant.stock_quantity,
            variant.reserved_quantity,
        )
        return shortfall

    def consume_available(self, variant: Variant, qty: int) -> int:
        """
        Consume stock for a payment confirmed after its reservation was given
        up (order timed out). Only unreserved units are taken; returns the
        shortfall when fewer than ``qty`` are available.
        """
        if qty <= 0 or not variant.is_physical:
            return 0
        available = variant.stock_quantity - variant.reserved_quantity
        if available < qty:
            log.warning(
                "late payment shortfall variant=%s requested=%s available=%s",
                variant.id,
                qty,
                available,
            )
            return qty - max(0, available)
        variant.stock_quantity -= qty
        self.db.flush()
        return 0
