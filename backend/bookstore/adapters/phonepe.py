import base64
import hashlib
import hmac
import json
import logging
import time
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

PAY_ENDPOINT = "/pg/v1/pay"
REFUND_ENDPOINT = "/pg/v1/refund"


def _status_from_code(code: str) -> ProviderPaymentStatus:
    if code == "PAYMENT_SUCCESS":
        return ProviderPaymentStatus.SUCCESS
    if code == "PAYMENT_ERROR":
        return ProviderPaymentStatus.FAILED
    return ProviderPaymentStatus.PENDING


class PhonePeProvider(PaymentProvider):
    """
    PhonePe PG (pay page flow).

    Requests carry a base64 JSON payload and an X-VERIFY checksum
    ``sha256(payload + endpoint + salt_key) + "###" + salt_index``.
    Amounts are sent in paise, which is what ``amount_cents`` holds for INR.
    """

    name = "phonepe"

    def __init__(
        self,
        merchant_id: str,
        salt_key: str,
        salt_index: str = "1",
        base_url: str = "https://api-preprod.phonepe.com/apis/pg-sandbox",
        timeout: float = 10.0,
    ):
        self.merchant_id = merchant_id
        self.salt_key = salt_key
        self.salt_index = salt_index
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        if not merchant_id or not salt_key:
            log.warning("PhonePe configuration missing (merchant id or salt key)")

    def checksum(self, payload: str, endpoint: str = "") -> str:
        digest = hashlib.sha256((payload + endpoint + self.salt_key).encode()).hexdigest()
        return f"{digest}###{self.salt_index}"

    def _post(self, endpoint: str, payload: dict) -> dict:
        encoded = base64.b64encode(json.dumps(payload).encode()).decode()
        url = f"{self.base_url}{endpoint}"
        log.info("PhonePe POST %s", url)
        try:
            resp = requests.post(
                url,
                json={"request": encoded},
                headers={"Content-Type": "application/json", "X-VERIFY": self.checksum(encoded, endpoint)},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except requests.RequestException as e:
            log.exception("PhonePe request to %s failed", endpoint)
            raise PaymentProviderError(f"PhonePe request failed: {e}") from e

    def initiate_payment(self, request: PaymentRequest) -> PaymentInitiation:
        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": request.order_ref,
            "merchantUserId": str(request.metadata.get("user_id") or "GUEST"),
            "amount": request.amount_cents,
            "redirectUrl": request.redirect_url or request.callback_url,
            "redirectMode": "REDIRECT",
            "callbackUrl": request.callback_url,
            "mobileNumber": request.customer_phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        data = self._post(PAY_ENDPOINT, payload)
        if not data.get("success"):
            raise PaymentProviderError(f"PhonePe API error: {data.get('message')}")
        redirect = data["data"]["instrumentResponse"]["redirectInfo"]["url"]
        return PaymentInitiation(
            # PhonePe identifies the payment by our merchantTransactionId
            transaction_ref=request.order_ref,
            payment_url=redirect,
            action_type=PaymentActionType.REDIRECT,
            raw={"code": data.get("code")},
        )

    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookVerification:
        x_verify = lower_headers(headers).get("x-verify")
        if not x_verify:
            return WebhookVerification(valid=False)
        # bytes that are not UTF-8 cannot carry a matching checksum
        body = raw_body.decode("utf-8", errors="replace")
        if not hmac.compare_digest(self.checksum(body).encode(), x_verify.encode()):
            return WebhookVerification(valid=False)

        try:
            parsed = json.loads(body)
            if "response" in parsed:
                data = json.loads(base64.b64decode(parsed["response"], validate=True).decode("utf-8"))
            else:
                data = parsed
            transaction_ref = (data.get("data") or {}).get("merchantTransactionId")
        except (ValueError, TypeError, AttributeError):
            log.warning("PhonePe webhook with valid checksum but unreadable body")
            return WebhookVerification(valid=True)
        return WebhookVerification(
            valid=True,
            transaction_ref=transaction_ref,
            status=_status_from_code(data.get("code")),
            payload=data,
        )

    @http_retry()
    def _fetch_status(self, transaction_ref: str) -> dict:
        endpoint = f"/pg/v1/status/{self.merchant_id}/{transaction_ref}"
        resp = requests.get(
            f"{self.base_url}{endpoint}",
            headers={
                "Content-Type": "application/json",
                "X-VERIFY": self.checksum(endpoint),
                "X-MERCHANT-ID": self.merchant_id,
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()

    def get_status(self, transaction_ref: str) -> PaymentStatusResult:
        try:
            data = self._fetch_status(transaction_ref)
        except requests.RequestException as e:
            raise PaymentProviderError(f"PhonePe status check failed: {e}") from e
        if not data.get("success"):
            return PaymentStatusResult(status=ProviderPaymentStatus.FAILED, amount_cents=0, raw=data)
        return PaymentStatusResult(
            status=_status_from_code(data.get("code")),
            amount_cents=(data.get("data") or {}).get("amount"),
            raw=data,
        )

    def refund(self, transaction_ref: str, amount_cents: int, reason: str) -> RefundResult:
        refund_ref = f"REFUND_{transaction_ref}_{int(time.time() * 1000)}"
        payload = {
            "merchantId": self.merchant_id,
            "merchantUserId": self.merchant_id,
            "originalTransactionId": transaction_ref,
            "merchantTransactionId": refund_ref,
            "amount": amount_cents,
        }
        data = self._post(REFUND_ENDPOINT, payload)
        if not data.get("success"):
            log.error("PhonePe refund failed: %s", data.get("message"))
            raise PaymentProviderError(f"PhonePe refund rejected: {data.get('message')}")
        return RefundResult(
            refund_ref=(data.get("data") or {}).get("merchantTransactionId", refund_ref),
            status="PENDING",
            raw=data,
        )

    def health_check(self) -> bool:
        return bool(self.merchant_id and self.salt_key)
