from pydantic import BaseModel, Field
from typing import Optional, List, Any
from decimal import Decimal
from datetime import datetime

class CheckoutRequest(BaseModel):
    shipping_address: Optional[str] = None
    phone: Optional[str] = None
    payment_method: str = "COD"
    notes: Optional[str] = ""

class StatusUpdate(BaseModel):
    status: str

class PaymentStatusUpdate(BaseModel):
    payment_status: str

class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

class OrderItemRead(BaseModel):
    id: int
    product_id: int
    product_name: str
    product_price: Decimal
    quantity: int
    discount_percentage: Decimal
    subtotal: Decimal
    class Config: from_attributes = True

class OrderRead(BaseModel):
    id: int
    order_number: str
    customer_id: int
    status: str
    payment_status: str
    payment_method: str
    subtotal: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    shipping_address: str
    shipping_phone: str
    notes: Optional[str] = ""
    cancellation_reason: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    items: List[OrderItemRead] = []
    class Config: from_attributes = True

class OrderPage(BaseModel):
    items: List[OrderRead]
    total: int
    page: int
    limit: int
    total_pages: int

class CartIssue(BaseModel):
    product_id: int
    message: str
    available: Optional[int] = None
    requested: Optional[int] = None

class CartValidation(BaseModel):
    valid: bool
    issues: List[CartIssue] = []

class CreatePayment(BaseModel):
    order_id: int
    order_info: Optional[str] = None
    locale: Optional[str] = None

class PaymentTargetRead(BaseModel):
    payment_id: int
    provider: str
    amount: Decimal
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    qr_image_url: Optional[str] = None
    details: dict = {}

class PaymentRead(BaseModel):
    id: int
    order_id: int
    provider: str
    amount: Decimal
    status: str
    transaction_id: Optional[str] = None
    provider_response: Optional[Any] = None
    created_at: Optional[datetime] = None
    class Config: from_attributes = True

class CheckPayment(BaseModel):
    order_id: int

class MockCallback(BaseModel):
    order_number: str
    succeed: Optional[bool] = None
    transaction_id: Optional[str] = None
    reason: Optional[str] = None
    signature: str

class SettlementRead(BaseModel):
    settled: bool
    applied: bool = False
    order_id: Optional[int] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    payment: Optional[PaymentRead] = None
