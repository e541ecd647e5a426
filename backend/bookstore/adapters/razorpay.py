import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping

import requests

from bookstore.adapters.payment_provider import (
    PaymentActionType,
    PaymentInitiation,
    PaymentProvider,
    PaymentProviderError,
    PaymentRequest,
    PaymentStatusResult,
    ProviderPaymentStatus,
    RefundResult,
    WebhookVerification,
    lower_headers,
)
from bookstore.utils.retry import http_retry

log = logging.getLogger(__name__)

WEBHOOK_EVENTS = {
    "payment.captured": ProviderPaymentStatus.SUCCESS,
    "payment.failed": ProviderPaymentStatus.FAILED,
}


class RazorpayProvider(PaymentProvider):
    """
    Razorpay Orders API over REST (basic auth with the key pair).

    The Razorpay order id is the gateway reference; the browser completes the
    payment in Razorpay's checkout modal, so no redirect URL is returned.
    """

    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        session_ttl_seconds: int = 900,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session_ttl_seconds = session_ttl_seconds
        if not key_id or not key_secret:
            log.warning("Razorpay configuration missing (key id or key secret)")

    def _request(self, method: str, path: str, **kwargs) -> dict:
        resp = requests.request(
            method,
            f"{self.base_url}{path}",
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            **kwargs,
        )
        resp.raise_for_status()
        return resp.json()

    def initiate_payment(self, request: PaymentRequest) -> PaymentInitiation:
        log.info("Razorpay create order for %s", request.order_ref)
        body = {
            "amount": request.amount_cents,
            "currency": request.currency,
            "receipt": request.order_ref,
            "notes": {**{k: str(v) for k, v in request.metadata.items()}, "order_ref": request.order_ref},
        }
        try:
            order = self._request("POST", "/orders", json=body)
        except requests.RequestException as e:
            log.exception("Razorpay order creation failed for %s", request.order_ref)
            raise PaymentProviderError(f"Razorpay initiation failed: {e}") from e
        return PaymentInitiation(
            transaction_ref=order["id"],
            action_type=PaymentActionType.SDK,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=self.session_ttl_seconds),
            raw={"razorpay_order_id": order["id"], "key_id": self.key_id},
        )

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookVerification:
        signature = lower_headers(headers).get("x-razorpay-signature")
        if not signature:
            return WebhookVerification(valid=False)
        expected = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            return WebhookVerification(valid=False)

        try:
            payload = json.loads(raw_body)
            status = WEBHOOK_EVENTS.get(payload.get("event"))
            if status is None:
                # signed but not a payment outcome we act on
                return WebhookVerification(valid=True, payload=payload)
            entity = payload["payload"]["payment"]["entity"]
            transaction_ref = entity.get("order_id")
        except (ValueError, KeyError, TypeError, AttributeError):
            log.warning("Razorpay webhook with valid signature but unreadable body")
            return WebhookVerification(valid=True)
        return WebhookVerification(
            valid=True,
            transaction_ref=transaction_ref,
            status=status,
            payload=payload,
        )

    @http_retry()
    def _fetch_order(self, order_id: str) -> dict:
        return self._request("GET", f"/orders/{order_id}")

    def get_status(self, transaction_ref: str) -> PaymentStatusResult:
        try:
            order = self._fetch_order(transaction_ref)
        except requests.RequestException as e:
            raise PaymentProviderError(f"Razorpay status check failed: {e}") from e
        # 'attempted' stays PENDING until captured, failed or timed out
        status = ProviderPaymentStatus.SUCCESS if order.get("status") == "paid" else ProviderPaymentStatus.PENDING
        return PaymentStatusResult(status=status, amount_cents=order.get("amount"), raw=order)

    def refund(self, transaction_ref: str, amount_cents: int, reason: str) -> RefundResult:
        try:
            payments = self._request("GET", f"/orders/{transaction_ref}/payments")
            captured = next(
                (p for p in payments.get("items", []) if p.get("status") == "captured"), None
            )
            if captured is None:
                raise PaymentProviderError(f"no captured payment for Razorpay order {transaction_ref}")
            refund = self._request(
                "POST",
                f"/payments/{captured['id']}/refund",
                json={"amount": amount_cents, "notes": {"reason": reason or "", "order_ref": transaction_ref}},
            )
        except requests.RequestException as e:
            log.exception("Razorpay refund failed for %s", transaction_ref)
            raise PaymentProviderError(f"Razorpay refund failed: {e}") from e
        log.info("Razorpay refund %s for payment %s", refund.get("id"), captured["id"])
        return RefundResult(refund_ref=refund.get("id"), status="PENDING", raw=refund)

    def health_check(self) -> bool:
        return bool(self.key_id and self.key_secret)
