"""
Database Schemas for BookCourier

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., Book -> "book"). References to other
documents are stored as ObjectIds so they can be joined with $lookup.

The *Create / *Update models further down validate request bodies.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class Role(str, Enum):
    user = "user"
    librarian = "librarian"
    admin = "admin"


class BookStatus(str, Enum):
    published = "published"
    unpublished = "unpublished"


class OrderStatus(str, Enum):
    pending = "pending"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"


class BookSort(str, Enum):
    newest = "newest"
    price_asc = "price_asc"
    price_desc = "price_desc"
    name_asc = "name_asc"
    name_desc = "name_desc"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, use_enum_values=True, validate_default=True)


# Collections

class User(Document):
    uid: Optional[str] = Field(None, description="Identity provider subject")
    name: str = Field(..., description="Display name")
    email: str = Field(..., description="Email address, unique")
    photo_url: Optional[str] = None
    role: Role = Field(Role.user, description="Role: user, librarian or admin")
    has_password: bool = False
    password_required: bool = False


class Book(Document):
    title: str
    author: str
    image: Optional[str] = None
    price: float = Field(..., gt=0)
    category: str = "General"
    description: str = ""
    status: BookStatus = BookStatus.published
    librarian_id: ObjectId = Field(..., description="Owning librarian")


class Order(Document):
    user_id: ObjectId = Field(..., description="Buyer")
    book_id: ObjectId
    librarian_id: ObjectId = Field(..., description="Book owner when the order was placed")
    book_title: str
    user_name: str
    user_email: str
    phone_number: str
    address: str
    total_amount: float = Field(..., gt=0, description="Book price captured at order time")
    order_status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.unpaid
    order_date: datetime = Field(default_factory=utcnow)


class Payment(Document):
    order_id: ObjectId
    user_id: ObjectId
    amount: float = Field(..., gt=0)
    payment_method: str
    transaction_id: str = Field(..., description="External transaction identifier, unique")
    payment_date: datetime = Field(default_factory=utcnow)


class Wishlist(Document):
    user_id: ObjectId
    book_id: ObjectId
    added_at: datetime = Field(default_factory=utcnow)


class Review(Document):
    user_id: ObjectId
    book_id: ObjectId
    order_id: ObjectId = Field(..., description="Delivered order that allows the review")
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


# Request payloads

class Payload(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("Invalid ID format")
    return value


class BookCreate(Payload):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    image: Optional[str] = None
    price: float = Field(..., gt=0)
    category: str = Field("General", min_length=1)
    description: str = ""
    status: BookStatus = BookStatus.published


class BookUpdate(Payload):
    title: Optional[str] = Field(None, min_length=1)
    author: Optional[str] = Field(None, min_length=1)
    image: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    category: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None


class BookStatusUpdate(Payload):
    status: BookStatus


class OrderCreate(Payload):
    user_name: str = Field(..., min_length=1)
    user_email: EmailStr
    phone_number: str = Field(..., min_length=10, description="At least 10 characters")
    address: str = Field(..., min_length=1)
    book_id: str

    @field_validator("book_id")
    @classmethod
    def check_book_id(cls, value: str) -> str:
        return _check_object_id(value)


class OrderStatusUpdate(Payload):
    status: OrderStatus


class PaymentCreate(Payload):
    order_id: str
    amount: float = Field(..., gt=0)
    payment_method: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)

    @field_validator("order_id")
    @classmethod
    def check_order_id(cls, value: str) -> str:
        return _check_object_id(value)


class WishlistCreate(Payload):
    book_id: str

    @field_validator("book_id")
    @classmethod
    def check_book_id(cls, value: str) -> str:
        return _check_object_id(value)


class ReviewCreate(Payload):
    book_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""

    @field_validator("book_id")
    @classmethod
    def check_book_id(cls, value: str) -> str:
        return _check_object_id(value)


class ProfileUpdate(Payload):
    name: Optional[str] = Field(None, min_length=1)
    photo_url: Optional[str] = None


class RoleUpdate(Payload):
    role: Role
