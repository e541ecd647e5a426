import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bookstore.adapters.payment_provider import build_payment_providers
from bookstore.api.health import router as health_router
from bookstore.api.routes_cart import router as cart_router
from bookstore.api.routes_checkout import router as checkout_router
from bookstore.api.routes_guest_cart import router as guest_cart_router
from bookstore.api.routes_inventory import router as inventory_router
from bookstore.api.routes_transactions import router as transactions_router
from bookstore.api.routes_webhook import router as webhook_router
from bookstore.config import settings
from bookstore.db import init_db
from bookstore.jobs import build_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()

    if getattr(app.state, "payment_providers", None) is None:
        app.state.payment_providers = build_payment_providers(settings)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler(app.state.payment_providers)
        scheduler.start()

    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(title="Bookstore Checkout - Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api", tags=["health"])

app.include_router(checkout_router)

app.include_router(cart_router)

app.include_router(guest_cart_router)

app.include_router(webhook_router)

app.include_router(transactions_router)

app.include_router(inventory_router)


def run():
    uvicorn.run(app, host=settings.APP_HOST, port=settings.APP_PORT)


if __name__ == "__main__":
    run()
