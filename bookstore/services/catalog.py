"""Read-only client for the book catalogue service."""

from typing import Dict, Iterable, Optional
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from bookstore.core.config import settings
from bookstore.core.errors import ExternalServiceError, ExternalServiceTimeout
from bookstore.core.resources import LazyResource

logger = structlog.get_logger(__name__)

catalog_http = LazyResource(
    lambda: httpx.Client(base_url=settings.CATALOG_BASE, timeout=settings.HTTP_TIMEOUT_SECONDS),
    "catalog-http",
)


class Book(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    author: str = ""
    price: int = Field(ge=0)
    cover_image: str = ""
    file_object_key: Optional[str] = None


def fetch_book(book_id: str) -> Optional[Book]:
    """Return the current catalogue record, or ``None`` if the book does not exist."""
    try:
        resp = catalog_http.get().get(f"/catalog/v1/books/{quote(book_id, safe='')}")
    except httpx.TimeoutException as exc:
        raise ExternalServiceTimeout("catalog", f"timeout fetching book {book_id}: {exc}") from exc
    except httpx.RequestError as exc:
        raise ExternalServiceError("catalog", f"error fetching book {book_id}: {exc}") from exc
    if resp.status_code == 404:
        return None
    if resp.status_code != 200:
        raise ExternalServiceError("catalog", f"{resp.status_code}: {resp.text}")
    return Book.model_validate(resp.json())


def fetch_books(book_ids: Iterable[str]) -> Dict[str, Book]:
    books = {}
    for book_id in dict.fromkeys(book_ids):
        book = fetch_book(book_id)
        if book is not None:
            books[book_id] = book
        else:
            logger.info("catalog_book_missing", book_id=book_id)
    return books
