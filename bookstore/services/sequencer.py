"""Human-readable order references of the form ``ORD-YYYYMM-NNNN``.

Each calendar month owns a counter row in ``order_sequences``. A reference is
allocated with one ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING`` so two
concurrent checkouts can never read the same "last" value. The allocation is
committed on its own; a failed order leaves a gap, never a duplicate.
"""

import re
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from bookstore.core.errors import ValidationError
from bookstore.db.models import OrderSequence, now_utc

PREFIX = "ORD"
CUSTOM_ID_RE = re.compile(r"^ORD-(\d{6})-(\d{4,})$")

_UPSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def month_key(now: datetime) -> str:
    return now.strftime("%Y%m")


def format_custom_id(key: str, sequence: int) -> str:
    return f"{PREFIX}-{key}-{sequence:04d}"


def parse_custom_id(custom_id: str) -> Tuple[str, int]:
    match = CUSTOM_ID_RE.match(custom_id or "")
    if not match:
        raise ValidationError(f"Malformed order reference: {custom_id!r}")
    return match.group(1), int(match.group(2))


def next_sequence(db: Session, key: str) -> int:
    dialect = db.get_bind().dialect.name
    insert = _UPSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"order sequences need an upsert-capable database, got {dialect}")
    stmt = insert(OrderSequence).values(month_key=key, last_value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[OrderSequence.month_key],
        set_={"last_value": OrderSequence.last_value + 1},
    ).returning(OrderSequence.last_value)
    return db.execute(stmt).scalar_one()


def allocate_custom_id(db: Session, now: Optional[datetime] = None) -> str:
    key = month_key(now or now_utc())
    sequence = next_sequence(db, key)
    db.commit()
    return format_custom_id(key, sequence)
