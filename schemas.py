"""
Database Schemas for the marketplace

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class CartItem -> collection "cartitem"

Cross-collection references (user_id, store_id, product_id, order_id) are stored as strings.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    USER = "USER"
    STORE_OWNER = "STORE_OWNER"
    ADMIN = "ADMIN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# Statuses from which an owner may no longer cancel
NON_CANCELLABLE = {OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Core domain models

class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    name: str
    email: EmailStr
    hashed_password: str
    role: Role = Role.USER
    phone: Optional[str] = None
    city: Optional[str] = None


class Store(BaseModel):
    owner_id: str
    name: str
    location: Optional[str] = None
    description: Optional[str] = None


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None
    category: Optional[str] = None
    stock: int = Field(0, ge=0)
    is_active: bool = True
    store_id: str


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    user_id: str
    total_price: float = Field(..., ge=0)
    shipping_address: str
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
