from pydantic import AliasChoices, BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from bookstore.db.models import OrderStatus, PayoutFrequency
from bookstore.services.cart_sync import CartLine
from bookstore.services.payments import PaymentSession

PHONE_PATTERN = r"^(254\d{9}|0\d{9})$"

class ItemIn(BaseModel):
    book_id: str = Field(min_length=1, validation_alias=AliasChoices("book_id", "bookId"))
    quantity: int = Field(ge=1)

class OrderCreate(BaseModel):
    # an empty list is a business-rule rejection (400), not a schema error
    items: List[ItemIn] = []

class OrderItemRead(BaseModel):
    book_id: str
    title: str
    author: str
    quantity: int
    price_at_purchase: int
    cover_image: str
    download_url: Optional[str] = None
    class Config: from_attributes = True

class OrderRead(BaseModel):
    id: int
    custom_id: str
    user_id: str
    items: List[OrderItemRead] = []
    total_amount: int
    currency: str
    status: OrderStatus
    payment_provider: Optional[str] = None
    provider_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    class Config: from_attributes = True

class OrderStatusUpdate(BaseModel):
    status: str

class CheckoutRead(BaseModel):
    order: OrderRead
    payment: PaymentSession

class PaymentStatusRead(BaseModel):
    reference: str
    status: OrderStatus

class WebhookAck(BaseModel):
    received: bool = True
    applied: bool
    status: OrderStatus

class CartUpdate(BaseModel):
    items: List[ItemIn] = []

class CartRead(BaseModel):
    items: List[CartLine] = []

class CartMergeRead(CartRead):
    guest_cleared: bool

class DownloadRequest(BaseModel):
    order_id: int = Field(validation_alias=AliasChoices("order_id", "orderId"))
    book_id: str = Field(min_length=1, validation_alias=AliasChoices("book_id", "bookId"))

class PayoutConfigCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    phone: str = Field(pattern=PHONE_PATTERN, validation_alias=AliasChoices("phone", "destination"))
    payout_percentage: float = Field(ge=0, le=100, validation_alias=AliasChoices("payout_percentage", "payoutPercentage"))
    payout_frequency: PayoutFrequency = Field(validation_alias=AliasChoices("payout_frequency", "frequency", "payoutFrequency"))
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))

class PayoutConfigUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    payout_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    payout_frequency: Optional[PayoutFrequency] = None
    is_active: Optional[bool] = None

    @field_validator("name", "phone", "payout_percentage", "payout_frequency", "is_active")
    @classmethod
    def not_null(cls, value):
        # fields may be omitted from a patch but never cleared
        if value is None:
            raise ValueError("may not be null")
        return value

class PayoutConfigRead(BaseModel):
    id: int
    name: str
    phone: str
    payout_percentage: float
    payout_frequency: PayoutFrequency
    is_active: bool
    last_payout_date: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    class Config: from_attributes = True

class PayoutRunSummary(BaseModel):
    processed: int
    skipped: int
    failed: int
    not_due: int

class WalletRead(BaseModel):
    channel_id: int
    balance: float
    service_balance: float

class TopupRequest(BaseModel):
    amount: int = Field(ge=1)
    phone: str = Field(pattern=PHONE_PATTERN, validation_alias=AliasChoices("phone", "phone_number", "phoneNumber"))
