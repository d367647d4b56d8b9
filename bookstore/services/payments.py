"""Checkout handoff to the payment provider and settlement of its outcomes.

Only two things may move an order out of Pending on the payment path: a
webhook that carries a valid HMAC signature from an allow-listed sender, or
a server-side status query against the provider. A message from the
customer's browser is at most a hint to run that query.
"""

import hashlib
import hmac
from typing import Iterable, Optional, Tuple

import structlog
from pydantic import AliasChoices, BaseModel, Field
from redis import RedisError
from sqlalchemy.orm import Session

from bookstore.core.auth import Identity
from bookstore.core.config import settings
from bookstore.core.errors import ExternalServiceError, NotFound
from bookstore.db.models import Order, OrderStatus
from bookstore.services import ledger, payhero
from bookstore.services.ledger import TransitionResult
from bookstore.store import cart_store

logger = structlog.get_logger(__name__)

PROVIDER = "payhero"
SUCCESS_STATUSES = {"SUCCESS", "COMPLETED"}
FAILURE_STATUSES = {"FAILED", "CANCELLED"}


class PaymentSession(BaseModel):
    reference: str
    amount: int
    currency: str
    channel_id: int
    payment_url: str
    callback_url: str


class PaymentOutcome(BaseModel):
    # PayHero callbacks put our reference in ``user_reference`` and their own in ``reference``.
    reference: str = Field(validation_alias=AliasChoices("user_reference", "reference"))
    success: bool = Field(validation_alias=AliasChoices("success", "paymentSuccess"))
    provider_reference: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("provider_reference", "providerReference")
    )
    provider: Optional[str] = None


def initialize_payment(order: Order) -> PaymentSession:
    if not settings.PAYHERO_CHANNEL_ID or not settings.PAYHERO_PAYMENT_URL:
        raise ExternalServiceError(payhero.SERVICE, "checkout channel is not configured")
    return PaymentSession(
        reference=order.custom_id,
        amount=order.total_amount,
        currency=order.currency,
        channel_id=settings.PAYHERO_CHANNEL_ID,
        payment_url=settings.PAYHERO_PAYMENT_URL,
        callback_url=f"{settings.PUBLIC_BASE_URL.rstrip('/')}/payments/webhook",
    )


def checkout(db: Session, identity: Identity, items: Iterable) -> Tuple[Order, PaymentSession]:
    order = ledger.create_order(db, identity.user_id, items)
    try:
        session = initialize_payment(order)
    except ExternalServiceError:
        # never leave an order Pending when no payment can ever arrive for it
        ledger.transition_status(db, order.id, OrderStatus.CANCELLED)
        raise
    logger.info("payment_initialised", custom_id=order.custom_id, amount=order.total_amount)
    return order, session


def verify_signature(body: bytes, signature: Optional[str]) -> bool:
    secret = settings.PAYMENT_WEBHOOK_SECRET
    if not secret:
        logger.error("webhook_secret_missing")
        return False
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))


def is_trusted_sender(host: Optional[str]) -> bool:
    allowed = settings.PAYMENT_WEBHOOK_ALLOWED_IPS
    if not allowed:
        return True
    return host in allowed


def _after_purchase(order: Order) -> None:
    try:
        cart_store.clear_cart(order.user_id)
    except RedisError as exc:
        # the payment is settled either way; a stale cart is only cosmetic
        logger.error("cart_clear_failed", custom_id=order.custom_id, user_id=order.user_id, error=str(exc))


def handle_outcome(db: Session, outcome: PaymentOutcome) -> TransitionResult:
    order = ledger.find_by_reference(db, outcome.reference)
    if order is None:
        logger.error("payment_outcome_unknown_order", reference=outcome.reference)
        raise NotFound("Order not found")

    target = OrderStatus.COMPLETED if outcome.success else OrderStatus.CANCELLED
    result = ledger.transition_status(
        db,
        order.id,
        target,
        provider=outcome.provider or PROVIDER,
        provider_reference=outcome.provider_reference,
    )
    if result.applied and target is OrderStatus.COMPLETED:
        _after_purchase(result.order)
    return result


def reconcile(db: Session, identity: Identity, reference: str) -> Order:
    """Ask the provider where a Pending payment stands and settle it if it is final."""
    order = ledger.get_order_by_reference(db, reference, identity)
    if order.status != OrderStatus.PENDING.value:
        return order

    status = payhero.transaction_status(reference)
    logger.info("payment_status_polled", reference=reference, provider_status=status)
    if status in SUCCESS_STATUSES:
        return handle_outcome(db, PaymentOutcome(reference=reference, success=True)).order
    if status in FAILURE_STATUSES:
        return handle_outcome(db, PaymentOutcome(reference=reference, success=False)).order
    return order
