import logging
from typing import Dict, Mapping, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookstore.adapters.payment_provider import PaymentProvider, PaymentRequest, get_provider
from bookstore.config import settings
from bookstore.metrics import CHECKOUT_DURATION, CHECKOUT_REQUESTS
from bookstore.models.cart import CartStatus
from bookstore.models.order import Order, PaymentStatus
from bookstore.models.transaction import Transaction, TransactionStatus
from bookstore.repositories.cart_repo import CartRepository
from bookstore.repositories.order_repo import OrderRepository
from bookstore.repositories.transaction_repo import TransactionRepository
from bookstore.services.cart_service import CartIdentity
from bookstore.services.errors import (
    CartEmpty,
    CartNotFound,
    IdempotencyKeyReused,
    InsufficientStock,
    OrderNotFound,
    OrderNotPayable,
    PaymentInitiationFailed,
)
from bookstore.services.inventory_service import InventoryService
from bookstore.utils.transactions import unit_of_work, utcnow

log = logging.getLogger(__name__)


class CheckoutService:
    """
    Checkout saga: cart -> order -> payment initiation.

    The order and its reservations are committed before the gateway is
    called; the gateway call runs outside any DB transaction. A gateway
    failure leaves the order PENDING so payment can be retried.
    """

    def __init__(self, db: Session, providers: Mapping[str, PaymentProvider]):
        self.db = db
        self.providers = providers
        self.cart_repo = CartRepository(db)
        self.order_repo = OrderRepository(db)
        self.txn_repo = TransactionRepository(db)
        self.inventory = InventoryService(db)

    def checkout(
        self,
        identity: CartIdentity,
        provider_name: Optional[str] = None,
        shipping_address: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        try:
            with CHECKOUT_DURATION.time():
                response = self._checkout(identity, provider_name, shipping_address, idempotency_key)
        except Exception:
            CHECKOUT_REQUESTS.labels(status="failed").inc()
            raise
        CHECKOUT_REQUESTS.labels(status="success").inc()
        return response

    def _checkout(
        self,
        identity: CartIdentity,
        provider_name: Optional[str],
        shipping_address: Optional[dict],
        idempotency_key: Optional[str],
    ) -> Dict:
        provider = get_provider(self.providers, provider_name or settings.DEFAULT_PAYMENT_PROVIDER)

        if idempotency_key:
            replay = self._replay(identity, idempotency_key)
            if replay is not None:
                return replay

        try:
            order, txn = self._materialize_order(identity, shipping_address, provider, idempotency_key)
        except (CartNotFound, IntegrityError):
            # a concurrent request with the same key took the cart; its order
            # and transaction were committed together
            if idempotency_key:
                replay = self._replay(identity, idempotency_key)
                if replay is not None:
                    return replay
            raise
        log.info(
            "checkout %s: order %s created (%s cents), initiating %s payment",
            identity,
            order.order_number,
            order.total_cents,
            provider.name,
        )
        return self._initiate(order, txn, provider)

    def retry_payment(
        self,
        identity: CartIdentity,
        order_id: int,
        provider_name: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        """New payment attempt against an order that is still PENDING."""
        provider = get_provider(self.providers, provider_name or settings.DEFAULT_PAYMENT_PROVIDER)
        if idempotency_key:
            replay = self._replay(identity, idempotency_key)
            if replay is not None:
                return replay

        order = self.order_repo.get(order_id)
        if not order or not identity.owns(order):
            raise OrderNotFound(order_id)
        if order.payment_status != PaymentStatus.PENDING:
            raise OrderNotPayable(order.id, order.payment_status.value)
        log.info("retrying payment for order %s via %s", order.order_number, provider.name)
        return self._start_payment(order, provider, idempotency_key)

    def get_order(self, identity: CartIdentity, order_id: int) -> Dict:
        order = self.order_repo.get(order_id)
        if not order or not identity.owns(order):
            raise OrderNotFound(order_id)
        items = self.order_repo.get_items(order.id)
        txns = self.txn_repo.list_for_order(order.id)
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_status": order.payment_status.value,
            "total_cents": order.total_cents,
            "currency": order.currency,
            "shipping_address": order.shipping_address,
            "created_at": order.created_at.isoformat() if order.created_at else None,
            "items": [
                {
                    "variant_id": it.variant_id,
                    "title": it.title,
                    "quantity": it.quantity,
                    "unit_price_cents": it.unit_price_cents,
                    "is_physical": it.is_physical,
                }
                for it in items
            ],
            "transactions": [
                {"id": t.id, "provider": t.provider, "status": t.status.value} for t in txns
            ],
        }

    # --- saga steps ---

    def _replay(self, identity: CartIdentity, key: str) -> Optional[Dict]:
        txn = self.txn_repo.get_by_idempotency_key(key)
        if txn is None:
            return None
        order = self.order_repo.get(txn.order_id)
        if order is None or not identity.owns(order):
            raise IdempotencyKeyReused(key)
        if txn.raw_response:
            log.info("idempotency hit for key %s (transaction %s)", key, txn.id)
            return txn.raw_response
        if txn.status == TransactionStatus.PENDING and order.payment_status == PaymentStatus.PENDING:
            # the first attempt never got a gateway response; drive it again
            log.info("re-driving payment initiation for transaction %s", txn.id)
            return self._initiate(order, txn, get_provider(self.providers, txn.provider))
        raise IdempotencyKeyReused(key)

    def _materialize_order(
        self,
        identity: CartIdentity,
        shipping_address: Optional[dict],
        provider: PaymentProvider,
        idempotency_key: Optional[str],
    ) -> Tuple[Order, Transaction]:
        while True:
            cart = self.cart_repo.find_active(identity.user_id, identity.session_id)
            if not cart:
                raise CartNotFound()
            items = self.cart_repo.get_items(cart.id)
            if not items:
                raise CartEmpty(cart.id)
            held = {it.variant_id for it in items}

            with self.inventory.hold(held), unit_of_work(self.db):
                cart = self.cart_repo.get(cart.id, lock=True)
                if cart is None or cart.status != CartStatus.ACTIVE:
                    raise CartNotFound()
                items = self.cart_repo.get_items(cart.id, lock=True)
                if not items:
                    raise CartEmpty(cart.id)
                if not {it.variant_id for it in items} <= held:
                    # an item was added after the variants were picked; nothing written yet
                    continue

                total = 0
                lines = []
                for item in items:
                    variant = self.inventory.lock_variant(item.variant_id)
                    if variant.is_physical:
                        if not item.is_stock_reserved:
                            # reservation lapsed while the cart sat idle
                            self.inventory.reserve(variant, item.qty)
                            item.is_stock_reserved = True
                            log.info("JIT re-reservation cart=%s variant=%s qty=%s", cart.id, variant.id, item.qty)
                        elif variant.stock_quantity < item.qty:
                            # stock was corrected below what this cart holds
                            raise InsufficientStock(variant.id, item.qty, variant.stock_quantity)
                    total += item.qty * item.unit_price_cents
                    lines.append(
                        {
                            "variant_id": item.variant_id,
                            "title": item.title,
                            "is_physical": variant.is_physical,
                            "quantity": item.qty,
                            "unit_price_cents": item.unit_price_cents,
                        }
                    )

                order = self.order_repo.create(
                    cart_id=cart.id,
                    user_id=cart.user_id,
                    session_id=cart.session_id,
                    total_cents=total,
                    currency=settings.CURRENCY,
                    shipping_address=shipping_address,
                    lines=lines,
                )
                cart.status = CartStatus.CHECKOUT
                cart.checkout_started_at = utcnow()
                # the idempotency key is claimed in the same commit as the order
                txn = self.txn_repo.add(
                    order_id=order.id,
                    provider=provider.name,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    idempotency_key=idempotency_key,
                )
            return order, txn

    def _start_payment(
        self, order: Order, provider: PaymentProvider, idempotency_key: Optional[str]
    ) -> Dict:
        txn, created = self.txn_repo.create(
            order_id=order.id,
            provider=provider.name,
            amount_cents=order.total_cents,
            currency=order.currency,
            idempotency_key=idempotency_key,
        )
        if not created:
            if txn.order_id == order.id and txn.raw_response:
                return txn.raw_response
            raise IdempotencyKeyReused(idempotency_key)
        return self._initiate(order, txn, provider)

    def _initiate(self, order: Order, txn: Transaction, provider: PaymentProvider) -> Dict:
        request = PaymentRequest(
            order_ref=txn.id,
            amount_cents=order.total_cents,
            currency=order.currency,
            callback_url=f"{settings.APP_URL}/api/payments/webhook/{provider.name}",
            redirect_url=f"{settings.FRONTEND_URL}/payment/return?orderId={order.id}",
            customer_phone=(order.shipping_address or {}).get("phone"),
            metadata={"user_id": order.user_id, "cart_id": order.cart_id, "transaction_id": txn.id},
        )
        try:
            initiation = provider.initiate_payment(request)
        except Exception as e:
            log.exception("payment initiation failed for order %s (transaction %s)", order.id, txn.id)
            with unit_of_work(self.db):
                txn.failure_reason = str(e)[:1024]
            raise PaymentInitiationFailed(order.id, txn.id, str(e))

        response = {
            "order_id": order.id,
            "order_number": order.order_number,
            "transaction_id": txn.id,
            "transaction_ref": initiation.transaction_ref,
            "provider": provider.name,
            "payment_url": initiation.payment_url,
            "qr_code": initiation.qr_code,
            "action_type": initiation.action_type.value,
            "expires_at": initiation.expires_at.isoformat() if initiation.expires_at else None,
            "amount_cents": order.total_cents,
            "currency": order.currency,
        }
        with unit_of_work(self.db):
            txn.gateway_ref_id = initiation.transaction_ref
            txn.raw_response = response
            txn.failure_reason = None
        log.info("transaction %s initiated at %s (ref %s)", txn.id, provider.name, initiation.transaction_ref)
        return response
