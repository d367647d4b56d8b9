"""Persisted carts and the guest-cart merge performed at sign-in."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Mapping, Protocol, Union

import structlog
from pydantic import BaseModel, Field
from redis import RedisError
from typing_extensions import Annotated

from bookstore.core.errors import ExternalServiceError, ValidationError
from bookstore.services import catalog
from bookstore.store import cart_store

logger = structlog.get_logger(__name__)

SERVICE = "cart store"


class BookRefLine(BaseModel):
    """A cart line whose book the catalogue could not resolve."""
    kind: Literal["ref"] = "ref"
    book_id: str
    quantity: int


class ResolvedCartLine(BaseModel):
    kind: Literal["resolved"] = "resolved"
    book_id: str
    title: str
    author: str
    price: int
    cover_image: str
    quantity: int


CartLine = Annotated[Union[ResolvedCartLine, BookRefLine], Field(discriminator="kind")]


class GuestCart(Protocol):
    def load(self) -> Mapping[str, int]: ...

    def clear(self) -> None: ...


@dataclass
class SubmittedGuestCart:
    """Guest cart shipped up in the sign-in request; the client clears its copy when told to."""
    items: Dict[str, int]
    cleared: bool = field(default=False)

    def load(self) -> Mapping[str, int]:
        return dict(self.items)

    def clear(self) -> None:
        self.items = {}
        self.cleared = True


@dataclass
class MergeOutcome:
    items: Dict[str, int]
    merged: bool
    guest_cleared: bool


def to_quantity_map(items: Iterable) -> Dict[str, int]:
    quantities: Dict[str, int] = {}
    for item in items:
        if item.quantity < 1:
            raise ValidationError(f"Quantity for book {item.book_id} must be at least 1")
        quantities[item.book_id] = quantities.get(item.book_id, 0) + item.quantity
    return quantities


def merge_carts(guest: Mapping[str, int], persisted: Mapping[str, int]) -> Dict[str, int]:
    merged = dict(persisted)
    for book_id, quantity in guest.items():
        merged[book_id] = merged.get(book_id, 0) + quantity
    return merged


def load_cart(user_id: str) -> Dict[str, int]:
    try:
        return cart_store.get_cart(user_id)
    except RedisError as exc:
        raise ExternalServiceError(SERVICE, str(exc)) from exc


def save_cart(user_id: str, items: Mapping[str, int]) -> None:
    try:
        cart_store.replace_cart(user_id, items)
    except RedisError as exc:
        logger.error("cart_persist_failed", user_id=user_id, error=str(exc))
        raise ExternalServiceError(SERVICE, str(exc)) from exc


def synchronize(user_id: str, guest: GuestCart) -> MergeOutcome:
    """Fold the guest cart into the user's persisted cart.

    The guest cart is cleared only after the merged cart is safely written;
    if the write fails the guest still has everything they picked. An empty
    guest cart is a no-op, which makes retries harmless.
    """
    guest_items = guest.load()
    if not guest_items:
        return MergeOutcome(items=load_cart(user_id), merged=False, guest_cleared=False)

    merged = merge_carts(guest_items, load_cart(user_id))
    save_cart(user_id, merged)
    guest.clear()
    logger.info("guest_cart_merged", user_id=user_id, lines=len(merged))
    return MergeOutcome(items=merged, merged=True, guest_cleared=True)


def resolve_lines(items: Mapping[str, int]) -> List[Union[ResolvedCartLine, BookRefLine]]:
    """Attach catalogue details to each line.

    Runs after the cart is already persisted, so a catalogue outage degrades
    every line to a bare reference instead of failing the request.
    """
    try:
        books = catalog.fetch_books(items)
    except ExternalServiceError as exc:
        logger.warning("cart_catalog_unavailable", lines=len(items), detail=exc.detail)
        books = {}
    lines: List[Union[ResolvedCartLine, BookRefLine]] = []
    for book_id, quantity in items.items():
        book = books.get(book_id)
        if book is None:
            lines.append(BookRefLine(book_id=book_id, quantity=quantity))
            continue
        lines.append(ResolvedCartLine(
            book_id=book_id,
            title=book.title,
            author=book.author,
            price=book.price,
            cover_image=book.cover_image,
            quantity=quantity,
        ))
    return lines
