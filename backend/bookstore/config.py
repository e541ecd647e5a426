import os
import tempfile
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dev.db"
    RESET_DB: bool = False
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    APP_URL: str = "http://127.0.0.1:8000"
    FRONTEND_URL: str = "http://localhost:3000"
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"
    CURRENCY: str = "INR"

    # reservation / order lifetimes
    RESERVATION_TTL_SECONDS: int = 900
    ORDER_TIMEOUT_SECONDS: int = 900
    RECONCILIATION_GRACE_SECONDS: int = 300
    SWEEP_BATCH_SIZE: int = 50
    RELEASE_RESERVATION_ON_PAYMENT_FAILURE: bool = False
    CART_ARCHIVE_AFTER_SECONDS: int = 3600

    # scheduler
    SCHEDULER_ENABLED: bool = True
    RESERVATION_SWEEP_INTERVAL_SECONDS: int = 60
    ORDER_TIMEOUT_SWEEP_INTERVAL_SECONDS: int = 300
    RECONCILIATION_INTERVAL_SECONDS: int = 60
    CART_ARCHIVE_INTERVAL_SECONDS: int = 300

    # file locks (per variant and per scheduled job)
    LOCK_DIR: str = os.path.join(tempfile.gettempdir(), "bookstore_locks")
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # payment providers
    PAYMENT_PROVIDERS: List[str] = ["mock"]
    DEFAULT_PAYMENT_PROVIDER: str = "mock"
    PAYMENT_HTTP_TIMEOUT_SECONDS: float = 10.0
    PAYMENT_SESSION_TTL_SECONDS: int = 900
    MOCK_PAYMENT_WEBHOOK_SECRET: str = "mock-webhook-secret"
    PAYMENT_MOCK_DELAY_MS: int = 0

    PHONEPE_MERCHANT_ID: str = ""
    PHONEPE_SALT_KEY: str = ""
    PHONEPE_SALT_INDEX: str = "1"
    PHONEPE_API_BASE_URL: str = "https://api-preprod.phonepe.com/apis/pg-sandbox"

    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    RAZORPAY_API_BASE_URL: str = "https://api.razorpay.com/v1"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
