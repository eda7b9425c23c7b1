"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Product -> "product").
References between documents are stored as hex id strings.
"""
import random
import string
from datetime import datetime, timezone
from typing import Optional, List, Literal

from pydantic import BaseModel, Field, EmailStr

ORDER_STATUSES = ("Pending", "Shipped", "Delivered", "Canceled", "Returned")
OrderStatus = Literal["Pending", "Shipped", "Delivered", "Canceled", "Returned"]

REFERRAL_REWARD_PERCENT = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Address(BaseModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str


class PaymentMethod(BaseModel):
    type: Literal["card", "telebirr", "mpesa"]
    last4: Optional[str] = None
    phone: Optional[str] = None


class StatusEntry(BaseModel):
    status: str
    updated_at: datetime = Field(default_factory=_now)


class TrackingEvent(BaseModel):
    status: str
    location: str
    timestamp: datetime = Field(default_factory=_now)


class User(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., description="bcrypt hash")
    role: Literal["user", "admin"] = "user"
    referral_code: str
    referred_users: List[str] = []
    referral_discount: float = 0
    created_at: datetime = Field(default_factory=_now)


class Category(BaseModel):
    name: str
    description: Optional[str] = None


class Review(BaseModel):
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    pending: bool = True
    created_at: datetime = Field(default_factory=_now)


class Product(BaseModel):
    name: str
    description: str = ""
    price: float = Field(..., ge=0)
    image: str = ""
    category: str
    stock: int = Field(..., ge=0)
    low_stock_threshold: int = 5
    reviews: List[Review] = []


class ProductUpdate(BaseModel):
    """Admin edit of a product; only the fields sent are written."""
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    image: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class Bundle(BaseModel):
    name: str
    description: str
    products: List[str]
    discount: float = Field(..., ge=0, le=100, description="Percentage off each contained product")
    price: float = Field(..., description="Sum of product prices after the discount")
    created_at: datetime = Field(default_factory=_now)


class Discount(BaseModel):
    code: str
    percentage: float = Field(..., ge=0, le=100)
    active: bool = True
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_now)


class Referral(BaseModel):
    referrer_id: str
    referee_id: str
    referral_code: str
    status: Literal["Pending", "Completed"] = "Pending"
    created_at: datetime = Field(default_factory=_now)


class OrderItem(BaseModel):
    product_id: str
    quantity: int
    bundle_id: Optional[str] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total: float
    status: OrderStatus = "Pending"
    status_history: List[StatusEntry] = []
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    tracking_events: List[TrackingEvent] = []
    referral_code: Optional[str] = None
    pnr: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class Notification(BaseModel):
    user_id: str
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=_now)


class Activity(BaseModel):
    user_id: str
    action: str
    details: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    updated_at: datetime = Field(default_factory=_now)


class Wishlist(BaseModel):
    user_id: str
    product_id: str
    created_at: datetime = Field(default_factory=_now)


class ReturnRequest(BaseModel):
    order_id: str
    user_id: str
    reason: str
    status: Literal["Pending", "Approved", "Rejected"] = "Pending"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Support(BaseModel):
    user_id: str
    subject: str
    message: str
    created_at: datetime = Field(default_factory=_now)


class Feedback(BaseModel):
    user_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


# ---------------------- Factories ----------------------

def generate_referral_code(name: str) -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"{name[:3].upper()}{suffix}"


def new_user(name: str, email: str, password: str, role: str = "user",
             referral_code: Optional[str] = None) -> User:
    """
    Build a User that is valid before it ever reaches the database.

    A password hash is required and every user gets a referral code.
    """
    if not password:
        raise ValueError("password is required")
    return User(
        name=name,
        email=email,
        password=password,
        role=role,
        referral_code=referral_code or generate_referral_code(name),
    )
