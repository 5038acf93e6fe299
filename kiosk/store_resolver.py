import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException

from kiosk.config import DEFAULT_STORE_ID
from kiosk.database import SessionLocal
from kiosk.errors import CredentialsMissing
from kiosk.models import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreConfig:
    id: str
    name: str
    access_token: Optional[str]
    device_id: Optional[str]

    def require_token(self) -> "StoreConfig":
        if not self.access_token:
            raise CredentialsMissing(f"Mercado Pago credentials not configured for store {self.name or self.id}")
        return self

    def require_device(self) -> "StoreConfig":
        self.require_token()
        if not self.device_id:
            raise CredentialsMissing(f"No Point device configured for store {self.name or self.id}")
        return self


def load_store(store_id: str) -> Optional[StoreConfig]:
    db = SessionLocal()
    try:
        store = db.get(Store, store_id)
        if not store:
            return None
        return StoreConfig(
            id=store.id,
            name=store.name,
            access_token=store.mp_access_token,
            device_id=store.mp_device_id,
        )
    finally:
        db.close()


def upsert_store(store_id: str, name: str, access_token=None, device_id=None) -> bool:
    """Insert or update a store row. Returns True when the store was created."""
    db = SessionLocal()
    try:
        store = db.get(Store, store_id)
        created = store is None
        if created:
            store = Store(id=store_id)
            db.add(store)
        store.name = name
        store.mp_access_token = access_token
        store.mp_device_id = device_id
        db.commit()
        return created
    finally:
        db.close()


def resolve_store(x_store_id: Optional[str] = Header(None)) -> StoreConfig:
    """FastAPI dependency: map the ``x-store-id`` header to the tenant's credentials."""
    store_id = x_store_id or DEFAULT_STORE_ID
    if not x_store_id:
        logger.debug("x-store-id header missing, using %s", store_id)

    store = load_store(store_id)
    if store is None:
        logger.warning("Unknown store %s", store_id)
        raise HTTPException(status_code=404, detail=f"Store not found: {store_id}")
    return store
