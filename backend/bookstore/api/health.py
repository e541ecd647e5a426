import logging
from typing import Dict

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text

from bookstore.adapters.payment_provider import PaymentProvider
from bookstore.api.deps import get_payment_providers
from bookstore.db import engine
from bookstore.metrics import render_latest

log = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", tags=["health"])
def health(providers: Dict[str, PaymentProvider] = Depends(get_payment_providers)):
    db_ok = False
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            db_ok = True
    except Exception:
        log.exception("health check: database unreachable")
        db_ok = False

    provider_status = {}
    for name, provider in providers.items():
        try:
            provider_status[name] = bool(provider.health_check())
        except Exception:
            log.exception("health check: provider %s failed", name)
            provider_status[name] = False

    return {
        "status": "ok" if db_ok and all(provider_status.values()) else "degraded",
        "db": db_ok,
        "payment_providers": provider_status,
    }


@router.get("/metrics", tags=["health"], include_in_schema=False)
def metrics():
    body, content_type = render_latest()
    return Response(content=body, media_type=content_type)
