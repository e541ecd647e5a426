import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from bookstore.adapters.payment_provider import PaymentProvider
from bookstore.api.deps import get_payment_providers
from bookstore.api.errors import http_error
from bookstore.db import get_db
from bookstore.services.errors import ServiceException, UnknownPaymentProvider
from bookstore.services.payment_reconciliation_service import PaymentReconciliationService

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/webhook/{provider}", summary="Payment provider callback")
async def payment_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    providers: Dict[str, PaymentProvider] = Depends(get_payment_providers),
):
    """
    Acknowledges every business outcome with 200 {status}. Only a bad
    signature (400) or an unknown provider (404) is refused; internal
    errors return 500 so the provider redelivers.
    """
    # signatures are computed over the exact bytes received
    raw_body = await request.body()
    svc = PaymentReconciliationService(db, providers)
    try:
        # settlement is blocking DB work; keep it off the event loop
        outcome = await run_in_threadpool(svc.handle_webhook, provider, dict(request.headers), raw_body)
    except UnknownPaymentProvider as e:
        raise http_error(e, status_code=404)
    except ServiceException as e:
        raise http_error(e)
    except Exception:
        log.exception("webhook processing failed for provider %s", provider)
        raise HTTPException(status_code=500, detail={"code": "WEBHOOK_PROCESSING_FAILED"})
    return {"status": outcome}
