"""
Database Schemas for the Marketplace

Each Pydantic model represents a collection in MongoDB.
Class name lowercased = collection name (e.g., Shop -> "shop",
OrderItem -> "order_item").
"""
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

class Profile(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Literal["buyer", "seller"] = "buyer"
    is_verified: bool = False
    phone: Optional[str] = None
    avatar_url: Optional[str] = None

class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime

class Shop(BaseModel):
    owner_id: str
    name: str
    description: str
    location: str
    phone_number: str
    email: str
    logo_url: Optional[str] = None
    banner_url: Optional[str] = None
    verification_status: Literal["not_submitted", "pending", "verified", "rejected"] = "not_submitted"

class ShopVerification(BaseModel):
    shop_id: str
    user_id: str
    national_id_url: str
    selfie_url: str
    business_type: Optional[str] = None
    has_physical_store: bool = False
    physical_address: str = ""
    additional_info: Optional[str] = None
    status: Literal["pending", "verified", "rejected"] = "pending"
    rejection_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None

class Category(BaseModel):
    name: str

class Product(BaseModel):
    shop_id: str
    name: str
    description: str
    price: float = Field(..., gt=0)
    category: str
    stock_quantity: int = Field(0, ge=0)
    is_on_order: bool = False
    lead_time_days: Optional[int] = None
    images: List[str] = Field(default_factory=list, max_length=5)
    is_on_sale: bool = False
    original_price: Optional[float] = None
    discount_percentage: Optional[float] = None
    delivery_fee_local: Optional[float] = None
    delivery_fee_uptown: Optional[float] = None
    delivery_fee_outoftown: Optional[float] = None
    delivery_fee_countrywide: Optional[float] = None
    free_delivery_threshold: Optional[float] = None

class OrderItem(BaseModel):
    order_id: str
    product_id: str
    product_name: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price snapshot at purchase time")
    quantity: int = Field(..., ge=1)

class Order(BaseModel):
    shop_id: str
    buyer_id: str
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"] = "pending"
    payment_status: Literal["pending", "paid", "refunded"] = "pending"
    payment_method: str = "cash_on_delivery"
    total_amount: float = Field(..., ge=0)
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    expected_delivery_date: Optional[datetime] = None
    delivery_date: Optional[datetime] = None

class SellerStats(BaseModel):
    shop_id: str
    followers_count: int = 0
    total_products: int = 0

class Notification(BaseModel):
    shop_id: str
    user_id: str
    order_id: Optional[str] = None
    type: str = "new_order"
    message: str
    read: bool = False

class Conversation(BaseModel):
    participant1_id: str
    participant2_id: str
    unread_count: int = 0
    last_message_text: Optional[str] = None
    last_message_time: Optional[datetime] = None
    last_sender_id: Optional[str] = None

class PrivateMessage(BaseModel):
    conversation_id: str
    sender_id: str
    recipient_id: str
    content: str
    is_read: bool = False

class ProductReview(BaseModel):
    product_id: str
    shop_id: str
    buyer_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

class StorageObject(BaseModel):
    bucket: str
    path: str
    content_type: str = "application/octet-stream"
    size: int = 0

class ShopFollow(BaseModel):
    shop_id: str
    user_id: str

class ShopRating(BaseModel):
    shop_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

class ProductLike(BaseModel):
    product_id: str
    user_id: str
