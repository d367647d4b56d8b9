"""Order creation, lookup and the Pending -> Completed/Cancelled state machine."""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookstore.core.auth import Identity
from bookstore.core.config import settings
from bookstore.core.errors import Conflict, Forbidden, NotFound, ValidationError
from bookstore.db.models import Order, OrderItem, OrderStatus, now_utc
from bookstore.kafka import producer
from bookstore.services import catalog, sequencer

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


@dataclass
class TransitionResult:
    order: Order
    applied: bool


def _quantities(items: Iterable) -> Dict[str, int]:
    """Collapse ``[{book_id, quantity}]`` lines into one quantity per book, keeping first-seen order."""
    quantities: Dict[str, int] = {}
    for item in items:
        book_id = item["book_id"] if isinstance(item, dict) else item.book_id
        quantity = item["quantity"] if isinstance(item, dict) else item.quantity
        if not book_id:
            raise ValidationError("Every item needs a book_id")
        if quantity is None or int(quantity) < 1:
            raise ValidationError(f"Quantity for book {book_id} must be at least 1")
        quantities[book_id] = quantities.get(book_id, 0) + int(quantity)
    return quantities


def create_order(db: Session, user_id: str, items: Iterable, now: Optional[datetime] = None) -> Order:
    quantities = _quantities(items)
    if not quantities:
        raise ValidationError("Order must contain at least one item")

    # Prices always come from the catalogue, whatever the client sent.
    books = catalog.fetch_books(quantities)
    missing = [book_id for book_id in quantities if book_id not in books]
    if missing:
        raise NotFound(f"One or more books in the order are invalid: {', '.join(missing)}")

    total = sum(books[book_id].price * qty for book_id, qty in quantities.items())

    for attempt in range(1, settings.ORDER_ID_MAX_ATTEMPTS + 1):
        custom_id = sequencer.allocate_custom_id(db, now)
        order = Order(
            custom_id=custom_id,
            user_id=user_id,
            status=OrderStatus.PENDING.value,
            total_amount=total,
            currency=settings.CURRENCY,
        )
        for position, (book_id, qty) in enumerate(quantities.items()):
            book = books[book_id]
            order.items.append(OrderItem(
                position=position,
                book_id=book_id,
                title=book.title,
                author=book.author,
                quantity=qty,
                price_at_purchase=book.price,
                cover_image=book.cover_image,
            ))
        db.add(order)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.warning("order_reference_conflict", custom_id=custom_id, attempt=attempt)
            if attempt == settings.ORDER_ID_MAX_ATTEMPTS:
                raise Conflict("Could not allocate a unique order reference, please retry.") from exc
            time.sleep(settings.ORDER_ID_RETRY_BACKOFF_SECONDS * 2 ** (attempt - 1))
            continue
        break

    logger.info("order_created", order_id=order.id, custom_id=order.custom_id, user_id=user_id, total=total)
    producer.publish_order_event("order.created", order)
    return order


def list_orders(db: Session, identity: Identity) -> List[Order]:
    stmt = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if not identity.is_admin:
        stmt = stmt.where(Order.user_id == identity.user_id)
    return list(db.scalars(stmt).all())


def _check_access(order: Order, identity: Identity) -> Order:
    if order.user_id != identity.user_id and not identity.is_admin:
        raise Forbidden()
    return order


def get_order(db: Session, order_id: int, identity: Identity) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    return _check_access(order, identity)


def find_by_reference(db: Session, custom_id: str) -> Optional[Order]:
    return db.scalars(select(Order).where(Order.custom_id == custom_id)).first()


def get_order_by_reference(db: Session, custom_id: str, identity: Identity) -> Order:
    order = find_by_reference(db, custom_id)
    if order is None:
        raise NotFound("Order not found")
    return _check_access(order, identity)


def transition_status(
    db: Session,
    order_id: int,
    new_status,
    provider: Optional[str] = None,
    provider_reference: Optional[str] = None,
) -> TransitionResult:
    """Move a Pending order to a terminal status.

    The update is conditional on the row still being Pending, so exactly one
    caller ever sees ``applied=True`` for a given order. Everyone else, a
    replayed webhook included, gets the current order back unchanged.
    """
    try:
        target = OrderStatus(new_status)
    except ValueError:
        raise ValidationError(f"Invalid status provided: {new_status!r}")
    if target not in TERMINAL_STATUSES:
        raise ValidationError("Orders can only move to Completed or Cancelled")

    values = {"status": target.value, "updated_at": now_utc()}
    if provider:
        values["payment_provider"] = provider
    if provider_reference:
        values["provider_reference"] = provider_reference

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == OrderStatus.PENDING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    applied = result.rowcount == 1

    order = db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFound("Order not found")

    if applied:
        logger.info("order_transitioned", order_id=order.id, custom_id=order.custom_id, status=order.status)
        producer.publish_order_event(f"order.{target.value.lower()}", order)
    else:
        logger.info(
            "order_transition_ignored",
            order_id=order.id, custom_id=order.custom_id, status=order.status, requested=target.value,
        )
    return TransitionResult(order=order, applied=applied)
