import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_kiosk_app.db")
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["PAYMENTS_MOCK_MODE"] = "0"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["MENU_SEED_PATH"] = "./does-not-exist.json"
os.environ.pop("MP_WEBHOOK_SECRET", None)
os.environ.pop("OPENAI_API_KEY", None)

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from kiosk.config import RetryPolicy
from kiosk.database import Base
from kiosk.gateway import MercadoPagoClient
from kiosk.main import app as fastapi_app
from kiosk.models import Product, Store
from kiosk.reconciliation import ReconciliationEngine
from kiosk.registry import PaymentIntentRegistry
from kiosk.routes import get_engine, get_gateway_factory
from kiosk.store_resolver import StoreConfig

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    monkeypatch.setattr("kiosk.order_store.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("kiosk.store_resolver.SessionLocal", TestingSessionLocal)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    db.add_all([
        Store(id="loja-1", name="Pastelaria", mp_access_token="APP_USR-test", mp_device_id="DEVICE-1"),
        Store(id="pix-only", name="Quiosque PIX", mp_access_token="APP_USR-pix"),
        Store(id="no-creds", name="Sem credenciais"),
        Product(id="pastel-carne", name="Pastel de Carne", price=12.75, category="pastel", stock=5),
        Product(id="caldo", name="Caldo de Cana", price=8.00, category="bebida", stock=None),
    ])
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store():
    return StoreConfig(id="loja-1", name="Pastelaria", access_token="APP_USR-test", device_id="DEVICE-1")


@pytest.fixture
def gateway():
    fake = AsyncMock(spec=MercadoPagoClient)
    fake.list_intents.return_value = []
    fake.search_payments.return_value = []
    return fake


@pytest.fixture
def registry():
    return PaymentIntentRegistry()


@pytest.fixture
def engine_under_test(registry, gateway):
    return ReconciliationEngine(registry, lambda store: gateway, delete_retry=RetryPolicy(2, 0))


@pytest.fixture
def client(engine_under_test, gateway):
    fastapi_app.dependency_overrides[get_engine] = lambda: engine_under_test
    fastapi_app.dependency_overrides[get_gateway_factory] = lambda: (lambda store: gateway)
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def session_factory():
    return TestingSessionLocal
