"""
Database Schemas for the local delivery marketplace

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercased class name (e.g., PersonalShopper -> "personalshopper").
Request bodies for the API live at the bottom of this module.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr, model_validator

from order_states import OrderStatus

MONEY_TOLERANCE = 0.01

# Shared value objects

class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

class DeliveryAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: Optional[str] = None
    coordinates: Coordinates
    instructions: Optional[str] = None
    contact_name: Optional[str] = Field(None, description="Defaults to the customer's name")
    contact_phone: Optional[str] = Field(None, description="Defaults to the customer's phone")

class OrderItem(BaseModel):
    item_id: str = Field(..., description="Stable id of the line inside the order")
    product_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    notes: Optional[str] = None
    # revision overlay; the original price and quantity above are never touched
    is_available: Optional[bool] = None
    revised_quantity: Optional[int] = None
    revised_price: Optional[float] = None
    revision_notes: Optional[str] = None

class OrderValue(BaseModel):
    subtotal: float = 0
    delivery_fee: float = 0
    service_fee: float = 0
    taxes: float = 0
    discount: float = 0
    total: float = 0

    @model_validator(mode="after")
    def _total_matches_parts(self):
        expected = self.subtotal + self.delivery_fee + self.taxes - self.discount
        if abs(self.total - expected) > MONEY_TOLERANCE:
            raise ValueError(
                f"total {self.total} does not equal subtotal + delivery_fee + taxes - discount ({expected})"
            )
        return self

class TimelineEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Literal["customer", "shopper", "admin"]
    pricing_details: Optional[dict] = None

class BillInfo(BaseModel):
    amount: Optional[float] = None
    photo: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

class CancellationInfo(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Literal["customer", "shopper", "admin"]
    cancelled_at: datetime

class Rating(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None
    rated_at: datetime

class PaymentInfo(BaseModel):
    method: Literal["cash", "online", "card", "upi"] = "cash"
    status: Literal["pending", "awaiting_payment", "paid", "refunded"] = "pending"
    transaction_id: Optional[str] = None
    upi_id: Optional[str] = None
    amount_due: Optional[float] = None
    paid_at: Optional[datetime] = None

# Collections

class Order(BaseModel):
    id: Optional[str] = None
    order_number: str
    customer_id: str
    personal_shopper_id: Optional[str] = None
    shop_id: str
    items: List[OrderItem]
    order_value: OrderValue
    revised_order_value: Optional[OrderValue] = None
    shopper_commission: float = 0
    status: OrderStatus = OrderStatus.PENDING_SHOPPER
    timeline: List[TimelineEntry] = []
    delivery_address: DeliveryAddress
    special_instructions: Optional[str] = None
    delivery_otp: Optional[str] = None
    bill: BillInfo = BillInfo()
    cancellation: Optional[CancellationInfo] = None
    rating: Optional[Rating] = None
    payment: PaymentInfo = PaymentInfo()
    revision_notes: Optional[str] = None
    revision_rejection_reason: Optional[str] = None
    actual_delivery_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def authoritative_value(self) -> OrderValue:
        return self.revised_order_value or self.order_value

class Shop(BaseModel):
    id: Optional[str] = None
    name: str
    coordinates: Optional[Coordinates] = None
    delivery_fee_mode: Literal["fixed", "distance"] = "fixed"
    delivery_fee: Optional[float] = Field(None, ge=0, description="Flat fee in fixed mode")
    fee_per_segment: Optional[float] = Field(None, ge=0, description="Fee per 500m in distance mode")
    min_order_value: float = Field(0, ge=0)
    is_active: bool = True
    # display only; order pricing uses the flat project-wide rate
    has_tax: bool = False
    tax_rate: float = 0

class ShopperRating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)

class ShopperLocation(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None
    updated_at: Optional[datetime] = None

class PersonalShopper(BaseModel):
    id: Optional[str] = None
    name: str
    email: Optional[EmailStr] = None
    phone: str
    is_online: bool = False
    current_location: Optional[ShopperLocation] = None
    rating: ShopperRating = ShopperRating()
    total_orders: int = 0
    completed_orders: int = 0
    earnings: float = 0
    upi_id: Optional[str] = None

class User(BaseModel):
    id: Optional[str] = None
    name: str
    email: EmailStr
    phone: str = Field(..., min_length=7, max_length=15)
    total_orders: int = 0
    total_spent: float = 0

class DeliveryDiscount(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    discount_type: Literal["percentage", "fixed", "free"]
    discount_value: float = Field(0, ge=0)
    min_order_value: float = Field(0, ge=0)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    shop_id: Optional[str] = Field(None, description="None applies to all shops")
    description: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self

# Request bodies

class OrderItemIn(BaseModel):
    product_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    notes: Optional[str] = None

class PlaceOrderRequest(BaseModel):
    shop_id: str
    items: List[OrderItemIn] = Field(..., min_length=1)
    delivery_address: DeliveryAddress
    special_instructions: Optional[str] = None
    payment_method: Literal["cash", "online", "card", "upi"] = "cash"

class QuoteRequest(BaseModel):
    shop_id: str
    items: List[OrderItemIn] = Field(..., min_length=1)
    delivery_address: DeliveryAddress

class RevisedItemIn(BaseModel):
    item_id: str
    is_available: bool
    revised_quantity: Optional[int] = None
    revised_price: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None

class TransitionRequest(BaseModel):
    status: str
    note: Optional[str] = None
    reason: Optional[str] = None
    bill_amount: Optional[float] = None
    otp: Optional[str] = None
    items: Optional[List[RevisedItemIn]] = None
    notes: Optional[str] = None
    shopper_id: Optional[str] = Field(None, description="Admin only: shopper to assign")

class ReviseRequest(BaseModel):
    items: List[RevisedItemIn]
    notes: Optional[str] = None

class ReasonRequest(BaseModel):
    reason: Optional[str] = None

class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None

class AcceptRequest(BaseModel):
    order_id: str

class OnlineRequest(BaseModel):
    is_online: bool

class PaymentRequest(BaseModel):
    upi_id: str = Field(..., min_length=3)

class LocationPing(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None

class ActiveFlag(BaseModel):
    is_active: bool
