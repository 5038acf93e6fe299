from sqlalchemy import Boolean, Column, Integer, JSON, Numeric, String, Text
from kiosk.database import Base


class Store(Base):
    __tablename__ = "stores"

    id = Column(String, primary_key=True)          # value of the x-store-id header
    name = Column(String, nullable=False)
    mp_access_token = Column(String)
    mp_device_id = Column(String)                  # Point terminal, None for PIX-only stores


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Column(Numeric(8, 2), nullable=False)
    category = Column(String, nullable=False)
    video_url = Column(String)
    popular = Column(Boolean, default=False)
    stock = Column(Integer, nullable=True)         # None = unlimited


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String)
    cpf = Column(String, unique=True, index=True)
    history = Column(JSON, default=list)
    points = Column(Integer, default=0)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    user_id = Column(String, index=True)
    user_name = Column(String)
    items = Column(JSON, nullable=False)           # [{productId, quantity, unitPrice}]
    total = Column(Numeric(10, 2), nullable=False)
    status = Column(String, default="active")              # active | completed
    payment_status = Column(String, default="pending")     # pending | paid
    payment_id = Column(String, index=True)
    payment_kind = Column(String)                          # intent | payment
    timestamp = Column(String, nullable=False)
    completed_at = Column(String)
