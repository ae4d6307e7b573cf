"""
Database Schemas for the storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
References between collections are stored as hex string ids.
"""
import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

import config

Currency = Literal["USD", "BDT"]
Role = Literal["user", "admin"]
OrderStatus = Literal["PENDING", "CONFIRMED", "CANCELLED", "SHIPPED", "DELIVERED"]

ORDER_STATUSES = ("PENDING", "CONFIRMED", "CANCELLED", "SHIPPED", "DELIVERED")
CANCELABLE_STATUSES = ("PENDING", "CONFIRMED")

BD_DIVISIONS = (
    "Dhaka",
    "Chittagong",
    "Khulna",
    "Rajshahi",
    "Barisal",
    "Sylhet",
    "Rangpur",
    "Mymensingh",
)
BD_PHONE_RE = re.compile(r"^(?:\+88|88)?(01[3-9]\d{8})$")
BD_POSTAL_CODE_RE = re.compile(r"^\d{4}$")


def _bd_policy() -> bool:
    return config.ADDRESS_POLICY == "bd"


class Address(BaseModel):
    """Embedded in user (saved default) and order (copied snapshot)"""
    full_name: Optional[str] = None
    phone: Optional[str] = None
    division: Optional[str] = None
    district: Optional[str] = None
    thana: Optional[str] = None
    postal_code: Optional[str] = None
    street_address: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def strip_blank(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        if v and _bd_policy() and not BD_PHONE_RE.match(v):
            raise ValueError("Invalid Bangladeshi phone number")
        return v

    @field_validator("division")
    @classmethod
    def check_division(cls, v):
        if v and _bd_policy() and v not in BD_DIVISIONS:
            raise ValueError(f"division must be one of: {', '.join(BD_DIVISIONS)}")
        return v

    @field_validator("postal_code")
    @classmethod
    def check_postal_code(cls, v):
        if v and _bd_policy() and not BD_POSTAL_CODE_RE.match(v):
            raise ValueError("postal_code must be 4 digits")
        return v


class User(BaseModel):
    full_name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="bcrypt hash")
    role: Role = "user"
    is_email_verified: bool = False
    shipping_address: Optional[Address] = None


class Price(BaseModel):
    amount: float = Field(..., ge=0)
    currency: Currency = "BDT"


class ProductImage(BaseModel):
    url: str
    thumbnail: str = ""
    id: str = Field("", description="Image host file id")


class Review(BaseModel):
    id: str
    user_id: str
    user_name: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: datetime


class Product(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    specification: dict = {}
    price: Price
    category: str = ""
    stock: int = Field(0, ge=0)
    sold: int = Field(0, ge=0)
    images: List[ProductImage] = Field(default_factory=list, max_length=config.MAX_PRODUCT_IMAGES)
    reviews: List[Review] = []
    average_rating: float = 0
    review_count: int = 0


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class OrderItem(BaseModel):
    product_id: str
    title: str = ""
    quantity: int = Field(..., ge=1)
    unit_price: Price
    price: Price = Field(..., description="unit price x quantity at order time")


class Payment(BaseModel):
    method: Literal["COD"] = "COD"
    status: Literal["PENDING", "COLLECTED"] = "PENDING"
    collected_at: Optional[datetime] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_price: Price
    shipping_address: Address
    status: OrderStatus = "PENDING"
    payment: Payment = Field(default_factory=Payment)
    order_code: str
