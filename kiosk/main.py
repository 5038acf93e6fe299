import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from urllib.parse import urlencode

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from kiosk import order_store
from kiosk.assistant import router as assistant_router
from kiosk.config import (
    LOG_FORMAT,
    LOG_LEVEL,
    MENU_SEED_PATH,
    MP_HTTP_TIMEOUT,
    PAYMENTS_MOCK_MODE,
    PUBLIC_BASE_URL,
    SCHEDULER_ENABLED,
)
from kiosk.database import Base, engine as db_engine
from kiosk.gateway import MercadoPagoClient
from kiosk.gateway_mock import MockGateway
from kiosk.logging_config import setup_logging
from kiosk.reconciliation import ReconciliationEngine
from kiosk.registry import PaymentIntentRegistry
from kiosk.routes import router as payment_router
from kiosk.scheduler import build_scheduler
from kiosk.shop_routes import router as shop_router
from kiosk.webhooks import router as webhook_router

setup_logging(LOG_LEVEL, LOG_FORMAT)
logger = logging.getLogger(__name__)


def notification_url(store_id: str):
    if not PUBLIC_BASE_URL:
        return None
    return f"{PUBLIC_BASE_URL}/notifications/payment-events?{urlencode({'store_id': store_id})}"


def mercadopago_factory(http: httpx.AsyncClient):
    def factory(store):
        return MercadoPagoClient(store.access_token, http, notification_url=notification_url(store.id))
    return factory


def mock_factory(gateway: MockGateway):
    def factory(store):
        return gateway
    return factory


def seed_menu(path: str) -> None:
    seed = Path(path)
    if not seed.exists():
        return
    inserted = order_store.seed_products(json.loads(seed.read_text(encoding="utf-8")))
    if inserted:
        logger.info("Menu seeded with %d products from %s", inserted, seed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=db_engine)
    seed_menu(MENU_SEED_PATH)

    http = httpx.AsyncClient(timeout=MP_HTTP_TIMEOUT)
    if PAYMENTS_MOCK_MODE:
        logger.warning("PAYMENTS_MOCK_MODE is on: no real charges are created")
        app.state.gateway_factory = mock_factory(MockGateway())
    else:
        app.state.gateway_factory = mercadopago_factory(http)

    app.state.registry = PaymentIntentRegistry()
    app.state.engine = ReconciliationEngine(app.state.registry, app.state.gateway_factory)

    scheduler = build_scheduler(app.state.engine) if SCHEDULER_ENABLED else None
    if scheduler:
        scheduler.start()

    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
        await app.state.engine.drain()
        app.state.registry.clear()
        await http.aclose()


app = FastAPI(title="Kiosk POS Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "PUT", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


app.include_router(payment_router)
app.include_router(webhook_router)
app.include_router(shop_router)
app.include_router(assistant_router)


@app.get("/health")
def health():
    return {"status": "ok"}
