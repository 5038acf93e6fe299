import logging
import re
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from kiosk import order_store
from kiosk.auth import verify_operator

logger = logging.getLogger(__name__)

router = APIRouter()


class OrderItem(BaseModel):
    productId: str
    quantity: int
    unitPrice: Decimal
    name: Optional[str] = None


class OrderRequest(BaseModel):
    userId: Optional[str] = None
    userName: str = ""
    items: Optional[List[OrderItem]] = None
    total: Optional[Decimal] = None


class UserRequest(BaseModel):
    cpf: Optional[str] = None
    name: str = ""
    email: str = ""
    id: Optional[str] = None


@router.get("/menu")
def menu():
    return order_store.list_products()


@router.get("/users")
def users():
    return order_store.list_users()


@router.post("/users", status_code=201)
def create_user(request: UserRequest):
    cpf = re.sub(r"\D", "", request.cpf or "")
    if not cpf:
        raise HTTPException(status_code=400, detail="CPF is required")

    user = order_store.create_user(cpf, name=request.name, email=request.email, user_id=request.id)
    if user is None:
        raise HTTPException(status_code=409, detail="CPF already registered")
    return user


@router.get("/orders")
def active_orders():
    return order_store.list_active_orders()


@router.get("/user-orders")
def user_orders(userId: Optional[str] = None):
    return order_store.list_user_orders(userId)


@router.post("/orders", status_code=201)
def create_order(request: OrderRequest):
    if not request.userId or request.items is None:
        raise HTTPException(status_code=400, detail="userId and items are required")

    items = [
        {
            "productId": item.productId,
            "name": item.name,
            "quantity": item.quantity,
            "unitPrice": float(item.unitPrice),
        }
        for item in request.items
    ]
    try:
        return order_store.create_order(request.userId, items, user_name=request.userName, total=request.total)
    except SQLAlchemyError as exc:
        logger.error("Could not save order for %s: %s", request.userId, exc)
        raise HTTPException(status_code=500, detail="Failed to save order")


@router.delete("/orders/{order_id}")
def complete_order(order_id: str, auth=Depends(verify_operator)):
    if not order_store.complete_order(order_id):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"ok": True}
