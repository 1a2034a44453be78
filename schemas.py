"""
Storage Schemas

Pydantic models for the rows kept by the storage layer. Each model maps to
one table (SQLite) or bucket (key/value backend):

- User -> "users"
- CartItem -> "cart_items"
- FavoriteItem -> "favorites"
- Order -> "orders" (items come from "order_items")
- OrderItem -> "order_items"

Product is the catalog's shape; it is never stored, only snapshotted into
order items at checkout.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")


class User(BaseModel):
    """Users table schema"""
    id: str
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Lowercased, trimmed email address")
    password: str = Field(..., description="SHA-256 hex digest, or plaintext for legacy rows")
    profile_image: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    created_at: str = Field(..., description="ISO-8601 creation timestamp")


class Product(BaseModel):
    """Catalog product as handed over by the catalog collaborator"""
    id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price in dollars")
    image: str = Field("", description="Image URL")


class CartItem(BaseModel):
    id: str
    user_id: str
    product_id: str
    quantity: int = Field(..., gt=0)
    added_at: str


class FavoriteItem(BaseModel):
    id: str
    user_id: str
    product_id: str
    added_at: str


class ShippingInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = ""


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    name: str = Field(..., description="Snapshot of product name at purchase time")
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    quantity: int = Field(..., gt=0)
    image: str = Field("", description="Snapshot of product image URL")


class CartLine(BaseModel):
    """A product and quantity headed for checkout"""
    product: Product
    quantity: int = Field(..., gt=0)


class Order(BaseModel):
    id: str
    user_id: str
    date: str
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    shipping_info: ShippingInfo
    payment_method: str


class Stats(BaseModel):
    total_orders: int
    total_favorites: int
    cart_items_count: int
    total_spent: float
