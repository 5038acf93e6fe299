"""Persistence helpers for orders, products and users.

The only non-trivial operation is :func:`mark_paid`: the ``pending -> paid``
transition is a conditional UPDATE, so whichever caller (poll, webhook,
operator) wins the row performs the stock decrement and everybody else gets
``False``.
"""
import logging
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import case, func, update

from kiosk.database import SessionLocal
from kiosk.models import Order, Product, Store, User

logger = logging.getLogger(__name__)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "userId": order.user_id,
        "userName": order.user_name,
        "items": order.items or [],
        "total": float(order.total),
        "status": order.status,
        "paymentStatus": order.payment_status,
        "paymentId": order.payment_id,
        "paymentKind": order.payment_kind,
        "timestamp": order.timestamp,
        "completedAt": order.completed_at,
    }


def product_to_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "description": product.description,
        "price": float(product.price),
        "category": product.category,
        "videoUrl": product.video_url,
        "popular": bool(product.popular),
        "stock": product.stock,
    }


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "cpf": user.cpf,
        "historico": user.history or [],
        "pontos": user.points or 0,
    }


# --- orders -----------------------------------------------------------------

def create_order(user_id: str, items: list, user_name: str = "", total=None) -> dict:
    """Insert an active order and append it to the user's history in one transaction."""
    if total is None:
        total = sum(Decimal(str(it["unitPrice"])) * int(it["quantity"]) for it in items)

    order = Order(
        id=f"order_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
        user_id=user_id,
        user_name=user_name,
        items=items,
        total=Decimal(str(total)),
        status="active",
        payment_status="pending",
        timestamp=_now_iso(),
    )

    db = SessionLocal()
    try:
        db.add(order)
        user = db.get(User, user_id)
        if user:
            user.history = list(user.history or []) + [{
                "id": order.id,
                "items": items,
                "total": float(order.total),
                "timestamp": order.timestamp,
            }]
        db.commit()
        db.refresh(order)
        return order_to_dict(order)
    finally:
        db.close()


def get_order(order_id: str):
    db = SessionLocal()
    try:
        order = db.get(Order, order_id)
        return order_to_dict(order) if order else None
    finally:
        db.close()


def find_order_by_payment(payment_id: str):
    db = SessionLocal()
    try:
        order = db.query(Order).filter_by(payment_id=str(payment_id)).first()
        return order_to_dict(order) if order else None
    finally:
        db.close()


def list_active_orders() -> list:
    db = SessionLocal()
    try:
        rows = db.query(Order).filter_by(status="active").order_by(Order.timestamp.asc()).all()
        return [order_to_dict(o) for o in rows]
    finally:
        db.close()


def list_user_orders(user_id=None) -> list:
    db = SessionLocal()
    try:
        query = db.query(Order)
        if user_id:
            query = query.filter_by(user_id=user_id)
        return [order_to_dict(o) for o in query.order_by(Order.timestamp.desc()).all()]
    finally:
        db.close()


def attach_payment(order_id: str, payment_id: str, kind: str) -> bool:
    """Remember which gateway object pays for the order; ignored once it is paid."""
    db = SessionLocal()
    try:
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == "pending")
            .values(payment_id=str(payment_id), payment_kind=kind)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1
    finally:
        db.close()


def complete_order(order_id: str) -> bool:
    db = SessionLocal()
    try:
        result = db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(status="completed", completed_at=_now_iso())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1
    finally:
        db.close()


def mark_paid(order_id: str, payment_id=None) -> bool:
    """Flip ``payment_status`` to paid and decrement stock, at most once per order.

    Returns True only for the call that performed the transition.
    """
    db = SessionLocal()
    try:
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == "pending")
            .values(
                payment_status="paid",
                payment_id=func.coalesce(Order.payment_id, str(payment_id) if payment_id else None),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            return False

        order = db.get(Order, order_id)
        for item in order.items or []:
            product_id = item.get("productId")
            quantity = int(item.get("quantity") or 0)
            if not product_id or quantity <= 0:
                continue
            db.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock.isnot(None))
                .values(stock=case((Product.stock > quantity, Product.stock - quantity), else_=0))
                .execution_options(synchronize_session=False)
            )

        db.commit()
        logger.info("Order %s paid (payment %s)", order_id, payment_id)
        return True
    finally:
        db.close()


# --- catalog and users ------------------------------------------------------

def list_products() -> list:
    db = SessionLocal()
    try:
        return [product_to_dict(p) for p in db.query(Product).order_by(Product.id).all()]
    finally:
        db.close()


def seed_products(products: list) -> int:
    """Load the initial menu when the catalog is empty. Returns rows inserted."""
    db = SessionLocal()
    try:
        if db.query(Product).count():
            return 0
        for raw in products:
            db.add(Product(
                id=str(raw["id"]),
                name=raw["name"],
                description=raw.get("description"),
                price=Decimal(str(raw["price"])),
                category=raw["category"],
                video_url=raw.get("videoUrl"),
                popular=bool(raw.get("popular", False)),
                stock=raw.get("stock"),
            ))
        db.commit()
        return len(products)
    finally:
        db.close()


def list_users() -> list:
    db = SessionLocal()
    try:
        return [user_to_dict(u) for u in db.query(User).all()]
    finally:
        db.close()


def create_user(cpf: str, name: str = "", email: str = "", user_id=None):
    """Create a user keyed by CPF digits. Returns None when the CPF already exists."""
    db = SessionLocal()
    try:
        if db.query(User).filter_by(cpf=cpf).first():
            return None
        user = User(
            id=user_id or f"user_{int(time.time() * 1000)}",
            name=name or "Sem Nome",
            email=email or "",
            cpf=cpf,
            history=[],
            points=0,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user_to_dict(user)
    finally:
        db.close()


def list_terminal_stores() -> list:
    """Stores that own a Point terminal; the queue sweep walks these."""
    db = SessionLocal()
    try:
        rows = db.query(Store).filter(Store.mp_device_id.isnot(None), Store.mp_access_token.isnot(None)).all()
        return [s.id for s in rows]
    finally:
        db.close()
