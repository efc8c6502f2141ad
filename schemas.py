"""
Database Schemas

Each Pydantic model represents a MongoDB collection. The collection name is
the lowercase of the class name:
- User -> "user"
- Product -> "product"
- "cart" and "cartitem" are written directly by cart.py upserts:
  cart {user_id}, cartitem {cart_id, product_id, quantity > 0}
- Order -> "order" (OrderItem rows are embedded in the order document)
- PinVerification -> "pinverification"

References between collections are stored as ObjectId values.
"""

from datetime import datetime
from typing import List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")

PaymentMethod = Literal["credit_card", "debit_card", "pix", "boleto"]

Role = Literal["user", "admin"]


class _Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class User(_Document):
    """
    Users collection schema
    Collection name: "user"
    """
    email: EmailStr = Field(..., description="Email address, unique")
    name: str = Field(..., description="Display name")
    role: Role = Field("user", description="Role: user | admin")


class Product(_Document):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units in stock")
    category: str = Field(..., min_length=1, description="Product category")
    image: Optional[str] = Field(None, description="Image URL")


class OrderItem(_Document):
    id: ObjectId = Field(default_factory=ObjectId, serialization_alias="_id")
    product_id: ObjectId
    name: str = Field(..., description="Snapshot of product name at order time")
    quantity: int = Field(..., gt=0)
    unit_price: float = Field(..., ge=0, description="Snapshot of product price at order time")


class Order(_Document):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: ObjectId
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    shipping_address: str
    payment_method: PaymentMethod
    status: OrderStatus = "pending"

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)


class PinVerification(_Document):
    """
    One-time PINs; only a hash of the code is stored
    Collection name: "pinverification"
    """
    email: EmailStr
    pin_hash: str
    expires_at: datetime
    used: bool = False
