from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, DateTime, ForeignKey, BigInteger, Boolean, Float, JSON, Text
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from bookstore.db.session import Base


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class PayoutFrequency(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AttemptStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    FAILED = "failed"
    # the provider timed out; the withdrawal may or may not have happened
    UNKNOWN = "unknown"


class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    custom_id: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), default=OrderStatus.PENDING.value, index=True)
    total_amount: Mapped[int] = mapped_column(BigInteger)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    payment_provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position", lazy="selectin"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"))
    position: Mapped[int] = mapped_column(Integer)
    book_id: Mapped[str] = mapped_column(String(64))
    title: Mapped[str] = mapped_column(String(255))
    author: Mapped[str] = mapped_column(String(255), default="")
    quantity: Mapped[int] = mapped_column(Integer)
    price_at_purchase: Mapped[int] = mapped_column(BigInteger)
    cover_image: Mapped[str] = mapped_column(String(1024), default="")
    download_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")


class OrderSequence(Base):
    """One counter row per calendar month, bumped by a single atomic upsert."""
    __tablename__ = "order_sequences"
    month_key: Mapped[str] = mapped_column(String(6), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)


class PayoutConfig(Base):
    __tablename__ = "payout_configs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120))
    phone: Mapped[str] = mapped_column(String(16))
    payout_percentage: Mapped[float] = mapped_column(Float)
    payout_frequency: Mapped[str] = mapped_column(String(16), default=PayoutFrequency.MONTHLY.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    last_payout_date: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)


class PayoutAttempt(Base):
    __tablename__ = "payout_attempts"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    config_id: Mapped[int] = mapped_column(Integer, index=True)
    external_reference: Mapped[str] = mapped_column(String(128), unique=True)
    amount: Mapped[int] = mapped_column(BigInteger)
    fee: Mapped[int] = mapped_column(BigInteger)
    balance_before: Mapped[float] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(16), default=AttemptStatus.PENDING.value)
    provider_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=now_utc)
