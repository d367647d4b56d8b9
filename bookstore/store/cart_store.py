from typing import Dict, Mapping

from bookstore.store.client import get_client


def cart_key(user_id: str) -> str:
    return f"cart:{user_id}"


def get_cart(user_id: str) -> Dict[str, int]:
    r = get_client()
    raw = r.hgetall(cart_key(user_id))  # {book_id: quantity}
    parsed = {}
    for book_id, qty in raw.items():
        try:
            quantity = int(qty)
        except ValueError:
            continue
        if quantity > 0:
            parsed[book_id] = quantity
    return parsed


def replace_cart(user_id: str, items: Mapping[str, int]) -> None:
    """Swap the whole cart in one MULTI/EXEC so readers never see a half-written cart."""
    r = get_client()
    key = cart_key(user_id)
    pipe = r.pipeline(transaction=True)
    pipe.delete(key)
    if items:
        pipe.hset(key, mapping={book_id: int(qty) for book_id, qty in items.items()})
    pipe.execute()


def clear_cart(user_id: str) -> bool:
    r = get_client()
    return bool(r.delete(cart_key(user_id)))
