"""
Data Schemas for MarketHub

Each entity model is stored in its own in-memory repository (see database.py).
Repository name is the plural snake_case of the class name. Payload models
describe request bodies accepted by the API.
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

OrderStatus = Literal["pending", "processing", "shipped", "completed", "cancelled"]


# Users
class User(BaseModel):
    id: int = 0
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str
    first_name: str
    last_name: str
    is_admin: bool = False
    referral_code: Optional[str] = None
    referred_by: Optional[int] = None
    profile_picture: Optional[str] = None
    created_at: Optional[datetime] = None


# Catalog
class Category(BaseModel):
    id: int = 0
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None


class Product(BaseModel):
    id: int = 0
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[int] = None
    stock: int = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    rating: float = 0.0
    num_reviews: int = 0
    is_featured: bool = False
    is_on_sale: bool = False
    sku: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_visible: bool = True
    scheduled_launch: Optional[datetime] = None
    created_at: Optional[datetime] = None


# Orders
class ShippingAddress(BaseModel):
    full_name: str
    phone: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    postal_code: Optional[str] = None


class Order(BaseModel):
    id: int = 0
    user_id: int
    status: OrderStatus = "pending"
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_method: str
    payment_status: str = "pending"
    created_at: Optional[datetime] = None


class OrderItem(BaseModel):
    id: int = 0
    order_id: int
    product_id: int
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class CartItem(BaseModel):
    id: int = 0
    user_id: int
    product_id: int
    quantity: int = Field(..., ge=1)


class Review(BaseModel):
    id: int = 0
    user_id: int
    product_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: Optional[datetime] = None


# Referral vouchers
class Voucher(BaseModel):
    id: int = 0
    user_id: int
    code: str
    discount: float = Field(..., ge=0)
    is_used: bool = False
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# Admin configurable options; type is a tag only
class Setting(BaseModel):
    id: int = 0
    key: str
    value: str
    type: Literal["number", "boolean", "string"] = "string"


# Request payloads
class RegisterPayload(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: str
    last_name: str
    profile_picture: Optional[str] = None
    referral_code: Optional[str] = None


class LoginPayload(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class UserUpdatePayload(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture: Optional[str] = None
    is_admin: Optional[bool] = None


class CategoryPayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None


class CategoryUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image: Optional[str] = None


class ProductPayload(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[int] = None
    stock: int = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    is_featured: bool = False
    is_on_sale: bool = False
    sku: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_visible: bool = True
    scheduled_launch: Optional[datetime] = None


class ProductUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    category_id: Optional[int] = None
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    is_featured: Optional[bool] = None
    is_on_sale: Optional[bool] = None
    sku: Optional[str] = None
    tags: Optional[List[str]] = None
    is_visible: Optional[bool] = None
    scheduled_launch: Optional[datetime] = None


class CartAddPayload(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)


class CartUpdatePayload(BaseModel):
    quantity: int = Field(..., ge=1)


class OrderLine(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class CreateOrderPayload(BaseModel):
    items: List[OrderLine] = Field(default_factory=list)
    shipping_address: ShippingAddress
    payment_method: str = Field(..., min_length=1)
    voucher_code: Optional[str] = None


class OrderStatusPayload(BaseModel):
    status: OrderStatus


class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class VoucherValidatePayload(BaseModel):
    code: Optional[str] = None


class SettingUpdatePayload(BaseModel):
    value: Optional[str] = None
