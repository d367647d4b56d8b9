from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from redis import Redis, RedisError
from redis.exceptions import LockError

from bookstore.core.config import settings
from bookstore.core.errors import Conflict, ExternalServiceError
from bookstore.core.resources import LazyResource

logger = structlog.get_logger(__name__)

redis_client = LazyResource(lambda: Redis.from_url(settings.REDIS_URL, decode_responses=True), "redis")


def get_client() -> Redis:
    return redis_client.get()


@contextmanager
def single_flight(name: str, timeout: int, blocking_timeout: Optional[float] = None) -> Iterator[None]:
    """Hold a Redis lock for the duration of the block.

    With no ``blocking_timeout`` the lock is tried once and a busy lock raises
    ``Conflict`` straight away; otherwise we wait up to that many seconds.
    """
    lock = get_client().lock(name, timeout=timeout)
    try:
        acquired = lock.acquire(blocking=blocking_timeout is not None, blocking_timeout=blocking_timeout)
    except RedisError as exc:
        raise ExternalServiceError("lock service", str(exc)) from exc
    if not acquired:
        raise Conflict("Another operation is already in progress, try again shortly.")
    try:
        yield
    finally:
        try:
            lock.release()
        except LockError:
            # expired while we held it; the next holder already owns it
            logger.warning("lock_release_failed", lock=name)
