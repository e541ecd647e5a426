import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional, Tuple
from uuid import uuid4

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

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Mock-Signature"


class MockPaymentProvider(PaymentProvider):
    """
    In-process gateway for development and tests.

    Payments stay PENDING until :meth:`set_status` decides them; webhooks
    are HMAC-SHA256 signed over the raw body like a real gateway's, and
    :meth:`build_webhook` produces one ready to post to the webhook route.
    """

    name = "mock"

    def __init__(
        self,
        webhook_secret: str = "mock-webhook-secret",
        delay_ms: int = 0,
        session_ttl_seconds: int = 900,
        base_url: str = "http://127.0.0.1:8000",
    ):
        self.webhook_secret = webhook_secret
        # Convert delay from milliseconds to seconds for time.sleep
        self.delay_seconds = delay_ms / 1000.0
        self.session_ttl_seconds = session_ttl_seconds
        self.base_url = base_url.rstrip("/")
        self.fail_initiation = False
        self.failure_reason = "Simulated gateway outage"
        self.payments: Dict[str, dict] = {}
        self.calls: list = []

    def configure(self, fail_initiation: bool, failure_reason: str = "Simulated gateway outage"):
        """Make the next initiations fail (or succeed again)."""
        self.fail_initiation = fail_initiation
        self.failure_reason = failure_reason

    def _lookup(self, ref: str) -> Tuple[str, dict]:
        if ref in self.payments:
            return ref, self.payments[ref]
        for gateway_ref, p in self.payments.items():
            if p["order_ref"] == ref:
                return gateway_ref, p
        raise PaymentProviderError(f"unknown mock payment {ref}")

    def initiate_payment(self, request: PaymentRequest) -> PaymentInitiation:
        self.calls.append({"method": "initiate_payment", "order_ref": request.order_ref})
        time.sleep(self.delay_seconds)
        if self.fail_initiation:
            raise PaymentProviderError(self.failure_reason)

        gateway_ref = f"mock_{uuid4().hex[:12]}"
        self.payments[gateway_ref] = {
            "order_ref": request.order_ref,
            "amount_cents": request.amount_cents,
            "currency": request.currency,
            "status": ProviderPaymentStatus.PENDING,
        }
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.session_ttl_seconds)
        return PaymentInitiation(
            transaction_ref=gateway_ref,
            payment_url=f"{self.base_url}/mock-pay/{gateway_ref}",
            expires_at=expires_at,
            action_type=PaymentActionType.REDIRECT,
            raw={"gateway_ref": gateway_ref, "redirect_url": request.redirect_url},
        )

    def set_status(self, ref: str, status: ProviderPaymentStatus, amount_cents: Optional[int] = None):
        """Decide a payment, by our reference or the gateway's."""
        _, p = self._lookup(ref)
        p["status"] = ProviderPaymentStatus(status)
        if amount_cents is not None:
            p["amount_cents"] = amount_cents

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()

    def build_webhook(self, ref: str, status: ProviderPaymentStatus) -> Tuple[dict, bytes]:
        """Return (headers, raw_body) of a signed webhook for ``ref``."""
        try:
            gateway_ref, p = self._lookup(ref)
        except PaymentProviderError:
            gateway_ref, p = ref, {}
        body = json.dumps(
            {
                "transaction_ref": gateway_ref,
                "status": ProviderPaymentStatus(status).value,
                "amount_cents": p.get("amount_cents"),
            }
        ).encode()
        return {SIGNATURE_HEADER: self.sign(body), "Content-Type": "application/json"}, body

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookVerification:
        signature = lower_headers(headers).get(SIGNATURE_HEADER.lower())
        if not signature or not hmac.compare_digest(signature.encode(), self.sign(raw_body).encode()):
            return WebhookVerification(valid=False)
        try:
            payload = json.loads(raw_body)
            status = ProviderPaymentStatus(str(payload.get("status", "")).upper())
        except (ValueError, AttributeError):
            log.warning("mock webhook with valid signature but unreadable body")
            return WebhookVerification(valid=True)
        return WebhookVerification(
            valid=True,
            transaction_ref=payload.get("transaction_ref"),
            status=status,
            payload=payload,
        )

    def get_status(self, transaction_ref: str) -> PaymentStatusResult:
        self.calls.append({"method": "get_status", "ref": transaction_ref})
        time.sleep(self.delay_seconds)
        gateway_ref, p = self._lookup(transaction_ref)
        return PaymentStatusResult(
            status=p["status"],
            amount_cents=p["amount_cents"],
            raw={"transaction_ref": gateway_ref, "status": p["status"].value},
        )

    def refund(self, transaction_ref: str, amount_cents: int, reason: str) -> RefundResult:
        self.calls.append(
            {"method": "refund", "ref": transaction_ref, "amount_cents": amount_cents, "reason": reason}
        )
        time.sleep(self.delay_seconds)
        _, p = self._lookup(transaction_ref)
        if p["status"] != ProviderPaymentStatus.SUCCESS:
            raise PaymentProviderError("payment was not captured")
        refund_ref = f"mock_rfnd_{uuid4().hex[:12]}"
        return RefundResult(refund_ref=refund_ref, status="SUCCESS", raw={"refund_ref": refund_ref})
