"""Payment provider port.

Every gateway adapter implements :class:`PaymentProvider`; checkout, the
webhook handler and the reconciliation poller only talk to this interface.
The set of enabled providers is built from configuration at startup.
"""

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from bookstore.services.errors import UnknownPaymentProvider

log = logging.getLogger(__name__)


class ProviderPaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class PaymentActionType(str, enum.Enum):
    REDIRECT = "REDIRECT"
    QR = "QR"
    SDK = "SDK"


class PaymentProviderError(Exception):
    """The gateway refused the request or could not be reached."""


@dataclass(frozen=True)
class PaymentRequest:
    order_ref: str  # our transaction id, unique per payment attempt
    amount_cents: int
    currency: str
    callback_url: str
    redirect_url: str
    customer_phone: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentInitiation:
    transaction_ref: str  # provider's id for the attempt
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    action_type: PaymentActionType = PaymentActionType.REDIRECT
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookVerification:
    valid: bool
    transaction_ref: Optional[str] = None
    status: Optional[ProviderPaymentStatus] = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentStatusResult:
    status: ProviderPaymentStatus
    amount_cents: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundResult:
    refund_ref: Optional[str]
    status: str  # SUCCESS, PENDING, FAILED
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    name: str = ""

    @abstractmethod
    def initiate_payment(self, request: PaymentRequest) -> PaymentInitiation:
        """Create the payment at the gateway and return where to send the customer."""
        ...

    @abstractmethod
    def verify_webhook(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookVerification:
        """Check the signature over the raw body, then parse the outcome."""
        ...

    @abstractmethod
    def get_status(self, transaction_ref: str) -> PaymentStatusResult:
        ...

    @abstractmethod
    def refund(self, transaction_ref: str, amount_cents: int, reason: str) -> RefundResult:
        ...

    def health_check(self) -> bool:
        return True


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def build_payment_providers(settings) -> Dict[str, PaymentProvider]:
    """Instantiate the providers named in ``settings.PAYMENT_PROVIDERS``."""
    from bookstore.adapters.mock_payment import MockPaymentProvider
    from bookstore.adapters.phonepe import PhonePeProvider
    from bookstore.adapters.razorpay import RazorpayProvider

    factories = {
        "mock": lambda: MockPaymentProvider(
            webhook_secret=settings.MOCK_PAYMENT_WEBHOOK_SECRET,
            delay_ms=settings.PAYMENT_MOCK_DELAY_MS,
            session_ttl_seconds=settings.PAYMENT_SESSION_TTL_SECONDS,
            base_url=settings.APP_URL,
        ),
        "phonepe": lambda: PhonePeProvider(
            merchant_id=settings.PHONEPE_MERCHANT_ID,
            salt_key=settings.PHONEPE_SALT_KEY,
            salt_index=settings.PHONEPE_SALT_INDEX,
            base_url=settings.PHONEPE_API_BASE_URL,
            timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
        ),
        "razorpay": lambda: RazorpayProvider(
            key_id=settings.RAZORPAY_KEY_ID,
            key_secret=settings.RAZORPAY_KEY_SECRET,
            webhook_secret=settings.RAZORPAY_WEBHOOK_SECRET,
            base_url=settings.RAZORPAY_API_BASE_URL,
            timeout=settings.PAYMENT_HTTP_TIMEOUT_SECONDS,
            session_ttl_seconds=settings.PAYMENT_SESSION_TTL_SECONDS,
        ),
    }
    providers = {}
    for name in settings.PAYMENT_PROVIDERS:
        key = name.strip().lower()
        if key not in factories:
            raise UnknownPaymentProvider(name)
        providers[key] = factories[key]()
    log.info("payment providers enabled: %s", ", ".join(sorted(providers)))
    return providers


def get_provider(providers: Mapping[str, PaymentProvider], name: str) -> PaymentProvider:
    provider = providers.get((name or "").lower())
    if provider is None:
        raise UnknownPaymentProvider(name)
    return provider
