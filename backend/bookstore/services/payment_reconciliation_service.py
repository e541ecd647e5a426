import logging
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from sqlalchemy.orm import Session

from bookstore.adapters.payment_provider import (
    PaymentProvider,
    PaymentProviderError,
    ProviderPaymentStatus,
    get_provider,
)
from bookstore.config import settings
from bookstore.metrics import PAYMENT_WEBHOOKS
from bookstore.models.cart import CartStatus
from bookstore.models.order import Order, PaymentStatus
from bookstore.models.transaction import Transaction, TransactionStatus
from bookstore.repositories.cart_repo import CartRepository
from bookstore.repositories.order_repo import OrderRepository
from bookstore.repositories.transaction_repo import TransactionRepository
from bookstore.services.errors import (
    RefundFailed,
    TransactionNotFound,
    TransactionNotRefundable,
    WebhookSignatureInvalid,
)
from bookstore.services.event_service import EventService
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import unit_of_work, utcnow

log = logging.getLogger(__name__)

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"
IGNORED = "ignored"
PENDING = "pending"


class PaymentReconciliationService:
    """
    Settles payment outcomes pushed by webhooks or pulled by the poller.

    Both paths end in :meth:`apply_outcome`, which runs in one DB
    transaction per payment and treats an already SUCCESS transaction as a
    no-op, so duplicate deliveries and webhook/poller races settle once.
    """

    def __init__(self, db: Session, providers: Mapping[str, PaymentProvider]):
        self.db = db
        self.providers = providers
        self.cart_repo = CartRepository(db)
        self.order_repo = OrderRepository(db)
        self.txn_repo = TransactionRepository(db)
        self.inventory = InventoryService(db)
        self.events = EventService(db)

    # --- push ---

    def handle_webhook(self, provider_name: str, headers: Mapping[str, str], raw_body: bytes) -> str:
        provider = get_provider(self.providers, provider_name)
        verification = provider.verify_webhook(headers, raw_body)
        if not verification.valid:
            log.warning(
                "rejected %s webhook with invalid signature (possible tampering), %s bytes",
                provider.name,
                len(raw_body),
            )
            PAYMENT_WEBHOOKS.labels(provider=provider.name, status="invalid_signature").inc()
            raise WebhookSignatureInvalid(provider.name)

        if not verification.transaction_ref:
            log.info("%s webhook without a payment outcome ignored", provider.name)
            PAYMENT_WEBHOOKS.labels(provider=provider.name, status="ignored").inc()
            return IGNORED
        if verification.status not in (ProviderPaymentStatus.SUCCESS, ProviderPaymentStatus.FAILED):
            log.info("%s webhook for %s still pending", provider.name, verification.transaction_ref)
            PAYMENT_WEBHOOKS.labels(provider=provider.name, status="pending").inc()
            return PENDING

        txn = self.txn_repo.find_by_reference(verification.transaction_ref)
        if txn is None or txn.provider != provider.name:
            log.warning(
                "%s webhook for unknown transaction %s ignored", provider.name, verification.transaction_ref
            )
            PAYMENT_WEBHOOKS.labels(provider=provider.name, status="ignored").inc()
            return IGNORED

        outcome = self.apply_outcome(txn.id, verification.status, verification.payload)
        PAYMENT_WEBHOOKS.labels(provider=provider.name, status=verification.status.value.lower()).inc()
        log.info(
            "%s webhook %s for transaction %s: %s",
            provider.name,
            verification.status.value,
            txn.id,
            outcome,
        )
        return outcome

    # --- state machine ---

    def _variant_ids(self, txn_id: str):
        txn = self.txn_repo.get(txn_id)
        if txn is None:
            raise TransactionNotFound(txn_id)
        ids = {it.variant_id for it in self.order_repo.get_items(txn.order_id)}
        order = self.order_repo.get(txn.order_id)
        if order is not None:
            ids.update(it.variant_id for it in self.cart_repo.get_items(order.cart_id))
        return ids

    def apply_outcome(
        self, transaction_id: str, status: ProviderPaymentStatus, payload: Optional[dict] = None
    ) -> str:
        status = ProviderPaymentStatus(status)
        if status == ProviderPaymentStatus.PENDING:
            return PENDING

        with self.inventory.hold(self._variant_ids(transaction_id)), unit_of_work(self.db):
            txn = self.txn_repo.get(transaction_id, lock=True)
            if txn.status == TransactionStatus.SUCCESS:
                return ALREADY_PROCESSED
            if txn.status == TransactionStatus.FAILED and status == ProviderPaymentStatus.FAILED:
                return ALREADY_PROCESSED

            order = self.order_repo.get(txn.order_id, lock=True)
            if payload:
                txn.callback_payload = payload
            if status == ProviderPaymentStatus.SUCCESS:
                self._settle_success(txn, order)
            else:
                self._settle_failure(txn, order, self._failure_reason(payload))
        return PROCESSED

    def _failure_reason(self, payload: Optional[dict]) -> str:
        if isinstance(payload, dict):
            for key in ("message", "error", "failure_reason"):
                if payload.get(key):
                    return str(payload[key])[:1024]
        return "Payment failed at provider"

    def _settle_success(self, txn: Transaction, order: Order):
        late = txn.status == TransactionStatus.FAILED
        order_failed = order.payment_status == PaymentStatus.FAILED
        txn.status = TransactionStatus.SUCCESS
        txn.failure_reason = None

        if order.payment_status == PaymentStatus.PAID:
            # another attempt already paid this order; money needs to go back
            log.warning("duplicate capture: order %s already paid, transaction %s", order.id, txn.id)
            self.events.emit(
                EventService.PAYMENT_DUPLICATE_CAPTURE,
                order.id,
                {"transaction_id": txn.id, "amount_cents": txn.amount_cents, "provider": txn.provider},
            )
            return

        cart = self.cart_repo.get(order.cart_id, lock=True)
        # the cart's holds belong to this order unless the shopper has since
        # checked the same cart out again under a newer order
        owns_cart = (
            cart is not None
            and cart.status in (CartStatus.ACTIVE, CartStatus.CHECKOUT)
            and not self.order_repo.has_other_pending_for_cart(cart.id, order.id)
        )
        cart_lines = self.cart_repo.get_items(cart.id, lock=True) if owns_cart else []
        held: Dict[int, int] = {}
        for ci in cart_lines:
            if ci.is_stock_reserved:
                held[ci.variant_id] = held.get(ci.variant_id, 0) + ci.qty

        shortfalls = []
        for item in self.order_repo.get_items(order.id):
            if not item.is_physical:
                continue
            variant = self.inventory.lock_variant(item.variant_id)
            take = min(item.quantity, held.get(item.variant_id, 0))
            short = self.inventory.commit(variant, take) if take else 0
            if take < item.quantity:
                # hold given up earlier (order timed out or cart released)
                short += self.inventory.consume_available(variant, item.quantity - take)
            if take:
                held[item.variant_id] -= take
            if short:
                shortfalls.append(
                    {"variant_id": item.variant_id, "requested": item.quantity, "shortfall": short}
                )

        if owns_cart:
            # lines added to the cart after this order was placed give their hold back
            for variant_id, qty in held.items():
                if qty > 0:
                    self.inventory.release(self.inventory.lock_variant(variant_id), qty)
            for ci in cart_lines:
                ci.is_stock_reserved = False
            cart.status = CartStatus.COMPLETED

        order.payment_status = PaymentStatus.PAID
        if shortfalls:
            log.error("order %s paid with stock shortfall: %s", order.order_number, shortfalls)
            self.events.emit(
                EventService.ORDER_STOCK_SHORTFALL,
                order.id,
                {"order_number": order.order_number, "transaction_id": txn.id, "items": shortfalls},
            )
        self.events.emit(
            EventService.ORDER_PAID,
            order.id,
            {
                "order_number": order.order_number,
                "transaction_id": txn.id,
                "total_cents": order.total_cents,
                "currency": order.currency,
                "late": late or order_failed or not owns_cart,
            },
        )
        log.info("order %s PAID via transaction %s", order.order_number, txn.id)

    def _release_cart(self, cart_id: int):
        for ci in self.cart_repo.get_items(cart_id, lock=True):
            if ci.is_stock_reserved:
                self.inventory.release(self.inventory.lock_variant(ci.variant_id), ci.qty)
                ci.is_stock_reserved = False

    def _settle_failure(self, txn: Transaction, order: Order, reason: str):
        txn.status = TransactionStatus.FAILED
        txn.failure_reason = reason

        if order.payment_status != PaymentStatus.PENDING:
            return
        if self.txn_repo.has_other_pending(order.id, txn.id):
            log.info("order %s keeps waiting on another payment attempt", order.order_number)
            return

        order.payment_status = PaymentStatus.FAILED
        cart = self.cart_repo.get(order.cart_id, lock=True)
        if cart is not None and cart.status == CartStatus.CHECKOUT:
            if self.cart_repo.find_active(cart.user_id, cart.session_id):
                # the shopper already started a new cart; this one cannot come back
                self._release_cart(cart.id)
                cart.status = CartStatus.ABANDONED
            else:
                cart.status = CartStatus.ACTIVE
                cart.checkout_started_at = None
                # fresh idle window for the retry; the reservation is kept
                self.cart_repo.touch(cart)
                if settings.RELEASE_RESERVATION_ON_PAYMENT_FAILURE:
                    self._release_cart(cart.id)
        self.events.emit(
            EventService.PAYMENT_FAILED,
            order.id,
            {"order_number": order.order_number, "transaction_id": txn.id, "reason": reason},
        )
        log.info("order %s FAILED (transaction %s): %s", order.order_number, txn.id, reason)

    # --- pull ---

    def reconcile_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Ask providers about PENDING transactions older than the grace window."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=settings.RECONCILIATION_GRACE_SECONDS)
        summary = {"checked": 0, "settled": 0, "pending": 0, "skipped": 0, "errors": 0}

        candidates = [
            (t.id, t.provider, t.gateway_ref_id, t.amount_cents)
            for t in self.txn_repo.list_pending_older_than(cutoff, settings.SWEEP_BATCH_SIZE)
        ]
        for txn_id, provider_name, ref, amount_cents in candidates:
            summary["checked"] += 1
            provider = self.providers.get(provider_name)
            if provider is None or not ref:
                # never reached the gateway (or provider disabled); the order timeout cleans it up
                summary["skipped"] += 1
                continue
            try:
                result = provider.get_status(ref)
                if result.status == ProviderPaymentStatus.PENDING:
                    summary["pending"] += 1
                    continue
                if (
                    result.status == ProviderPaymentStatus.SUCCESS
                    and result.amount_cents is not None
                    and result.amount_cents != amount_cents
                ):
                    log.warning(
                        "amount mismatch for transaction %s: expected %s, provider reports %s",
                        txn_id,
                        amount_cents,
                        result.amount_cents,
                    )
                    summary["skipped"] += 1
                    continue
                if self.apply_outcome(txn_id, result.status, result.raw) == PROCESSED:
                    summary["settled"] += 1
            except Exception:
                log.exception("reconciliation failed for transaction %s", txn_id)
                self.db.rollback()
                summary["errors"] += 1

        if summary["checked"]:
            log.info("payment reconciliation: %s", summary)
        return summary

    # --- refunds ---

    def refund_transaction(
        self, transaction_id: str, amount_cents: Optional[int] = None, reason: Optional[str] = None
    ) -> Dict:
        txn = self.txn_repo.get(transaction_id)
        if txn is None:
            raise TransactionNotFound(transaction_id)
        if txn.status != TransactionStatus.SUCCESS:
            raise TransactionNotRefundable(txn.id, txn.status.value)

        refunded = sum(
            r.amount_cents for r in self.txn_repo.list_refunds(txn.id) if r.status != "FAILED"
        )
        remaining = txn.amount_cents - refunded
        amount = amount_cents if amount_cents is not None else remaining
        if amount <= 0 or amount > remaining:
            raise TransactionNotRefundable(
                txn.id,
                txn.status.value,
                message="Refund amount exceeds the refundable balance",
                requested=amount,
                refundable=remaining,
            )

        provider = get_provider(self.providers, txn.provider)
        try:
            result = provider.refund(txn.gateway_ref_id or txn.id, amount, reason or "")
        except PaymentProviderError as e:
            log.exception("refund of transaction %s failed at %s", txn.id, txn.provider)
            with unit_of_work(self.db):
                self.txn_repo.add_refund(txn.id, amount, reason, None, "FAILED", {"error": str(e)})
            raise RefundFailed(txn.id, str(e))

        with unit_of_work(self.db):
            refund = self.txn_repo.add_refund(
                txn.id, amount, reason, result.refund_ref, result.status, result.raw
            )
            self.events.emit(
                EventService.PAYMENT_REFUNDED,
                txn.order_id,
                {"transaction_id": txn.id, "refund_ref": result.refund_ref, "amount_cents": amount},
            )
        log.info("refund %s of %s cents for transaction %s", result.refund_ref, amount, txn.id)
        return {
            "refund_id": refund.id,
            "transaction_id": txn.id,
            "refund_ref": result.refund_ref,
            "amount_cents": amount,
            "status": result.status,
        }
