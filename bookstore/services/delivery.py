import re

import structlog
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bookstore.core.auth import Identity
from bookstore.core.config import settings
from bookstore.core.errors import Forbidden, NotFound
from bookstore.db.models import Order, OrderStatus
from bookstore.services import catalog, storage

logger = structlog.get_logger(__name__)

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._ -]+")


class DownloadLink(BaseModel):
    url: str
    expires_in_seconds: int


def download_filename(title: str) -> str:
    stem = _UNSAFE_FILENAME.sub("", title or "").strip()
    return f"{stem or 'book'}.pdf"


def issue_download(db: Session, identity: Identity, order_id: int, book_id: str) -> DownloadLink:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    if order.user_id != identity.user_id and not identity.is_admin:
        raise Forbidden("Order not found or access denied.")

    # Forbidden rather than NotFound: do not confirm whether the book exists.
    item = next((it for it in order.items if it.book_id == book_id), None)
    if item is None:
        raise Forbidden("This book is not part of the specified order.")
    if order.status != OrderStatus.COMPLETED.value:
        raise Forbidden("This order has not been paid for.")

    book = catalog.fetch_book(book_id)
    if book is None or not book.file_object_key:
        raise NotFound("Book file not found.")

    ttl = settings.DOWNLOAD_URL_TTL_SECONDS
    url = storage.presigned_download(book.file_object_key, download_filename(item.title), ttl)
    logger.info("download_issued", order_id=order.id, book_id=book_id, user_id=identity.user_id, ttl=ttl)
    return DownloadLink(url=url, expires_in_seconds=ttl)
