"""Percentage payouts from the provider settlement wallet.

Withdrawals against the wallet are single-flight: a Redis lock per wallet
channel is held for the whole balance-check-then-withdraw sequence, so two
runs can never both spend a balance that only exists once. Config changes go
through their own lock so the 100% ceiling cannot be raced past.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bookstore.core.config import settings
from bookstore.core.errors import (
    Conflict, ExternalServiceError, ExternalServiceTimeout, InsufficientFunds, NotFound, ValidationError,
)
from bookstore.db.models import AttemptStatus, PayoutAttempt, PayoutConfig, PayoutFrequency, now_utc
from bookstore.kafka import producer
from bookstore.services import payhero
from bookstore.store.client import single_flight

logger = structlog.get_logger(__name__)

CONFIG_LOCK = "payout-config-lock"
MAX_TOTAL_PERCENTAGE = 100

# (upper bound of the amount band, flat withdrawal fee)
FEE_SCHEDULE = (
    (49, 0),
    (499, 6),
    (999, 10),
    (1499, 15),
    (2499, 20),
    (3499, 25),
    (4999, 30),
    (7499, 40),
    (9999, 45),
    (14999, 50),
    (19999, 55),
    (34999, 80),
)
TOP_FEE = 105

FeeSchedule = Callable[[int], int]


def fee_for(amount: int) -> int:
    for upper, fee in FEE_SCHEDULE:
        if amount <= upper:
            return fee
    return TOP_FEE


@dataclass(frozen=True)
class PayoutQuote:
    balance: float
    payout_amount: int
    fee: int

    @property
    def required(self) -> int:
        return self.payout_amount + self.fee


def quote_payout(balance: float, percentage: float, fee_schedule: FeeSchedule = fee_for) -> PayoutQuote:
    share = Decimal(str(balance)) * Decimal(str(percentage)) / Decimal(100)
    payout_amount = int(share.to_integral_value(rounding=ROUND_FLOOR))
    return PayoutQuote(balance=balance, payout_amount=payout_amount, fee=fee_schedule(payout_amount))


class WithdrawalResult(BaseModel):
    config_id: int
    external_reference: str
    amount: int
    fee: int
    balance_before: float
    status: str
    provider_response: Optional[dict] = None
    replayed: bool = False


def _result(attempt: PayoutAttempt, replayed: bool = False) -> WithdrawalResult:
    return WithdrawalResult(
        config_id=attempt.config_id,
        external_reference=attempt.external_reference,
        amount=attempt.amount,
        fee=attempt.fee,
        balance_before=attempt.balance_before,
        status=attempt.status,
        provider_response=attempt.provider_response,
        replayed=replayed,
    )


def wallet_lock_name() -> str:
    return f"payout-lock:{settings.PAYHERO_WALLET_CHANNEL_ID}"


def _wallet_lock():
    return single_flight(wallet_lock_name(), timeout=settings.PAYOUT_LOCK_TIMEOUT_SECONDS)


def manual_reference(config_id: int, now: Optional[datetime] = None) -> str:
    moment = now or datetime.now()
    return f"payout_{config_id}_{int(moment.timestamp() * 1000)}"


def scheduled_reference(config_id: int, day: date) -> str:
    return f"payout_{config_id}_{day:%Y%m%d}"


def _find_attempt(db: Session, reference: str) -> Optional[PayoutAttempt]:
    return db.scalars(select(PayoutAttempt).where(PayoutAttempt.external_reference == reference)).first()


def _execute(
    db: Session,
    config: PayoutConfig,
    reference: str,
    balance: Optional[float],
    fee_schedule: FeeSchedule,
    now: datetime,
) -> WithdrawalResult:
    """Balance check and withdrawal. Caller must hold the wallet lock."""
    existing = _find_attempt(db, reference)
    if existing is not None:
        if existing.status == AttemptStatus.SUBMITTED.value:
            logger.info("payout_replayed", config_id=config.id, reference=reference)
            return _result(existing, replayed=True)
        if existing.status in (AttemptStatus.PENDING.value, AttemptStatus.UNKNOWN.value):
            # the provider may or may not hold this withdrawal; resubmitting could pay twice
            raise Conflict("A withdrawal with this reference is still unresolved.")

    if balance is None:
        balance = payhero.wallet_balance()
    quote = quote_payout(balance, config.payout_percentage, fee_schedule)
    logger.info(
        "payout_quoted",
        config_id=config.id, balance=balance, amount=quote.payout_amount, fee=quote.fee,
    )
    if quote.payout_amount <= 0 or balance < quote.required:
        raise InsufficientFunds(required=quote.required, available=balance)

    attempt = existing or PayoutAttempt(config_id=config.id, external_reference=reference)
    attempt.amount = quote.payout_amount
    attempt.fee = quote.fee
    attempt.balance_before = balance
    attempt.status = AttemptStatus.PENDING.value
    attempt.error = None
    attempt.updated_at = now_utc()
    db.add(attempt)
    db.commit()

    try:
        response = payhero.withdraw(reference, quote.payout_amount, config.phone)
    except ExternalServiceError as exc:
        timed_out = isinstance(exc, ExternalServiceTimeout)
        attempt.status = (AttemptStatus.UNKNOWN if timed_out else AttemptStatus.FAILED).value
        attempt.error = exc.detail
        attempt.updated_at = now_utc()
        db.commit()
        raise

    attempt.status = AttemptStatus.SUBMITTED.value
    attempt.provider_response = response
    attempt.updated_at = now_utc()
    config.last_payout_date = now
    config.updated_at = now_utc()
    db.commit()

    logger.info("payout_submitted", config_id=config.id, name=config.name, amount=quote.payout_amount, reference=reference)
    producer.publish_payout_event("payout.submitted", attempt)
    return _result(attempt)


def process_payout(
    db: Session,
    config: PayoutConfig,
    now: Optional[datetime] = None,
    balance: Optional[float] = None,
    reference: Optional[str] = None,
    fee_schedule: FeeSchedule = fee_for,
) -> WithdrawalResult:
    """Pay ``config`` its share of the current wallet balance.

    Passing the ``reference`` of an earlier attempt retries it: a submitted
    attempt is returned as-is, a failed one is re-checked against the live
    balance before anything is sent again.
    An attempt whose outcome is unknown because the provider timed out is
    never resubmitted.
    """
    now = now or now_utc()
    reference = reference or manual_reference(config.id, now)
    with _wallet_lock():
        return _execute(db, config, reference, balance, fee_schedule, now)


def is_due(config: PayoutConfig, today: date) -> bool:
    if config.last_payout_date is not None and config.last_payout_date.date() == today:
        return False
    if config.payout_frequency == PayoutFrequency.WEEKLY.value:
        return today.weekday() == 6  # Sunday
    if config.payout_frequency == PayoutFrequency.MONTHLY.value:
        return today.day == 1
    return False


def process_due_payouts(db: Session, now: Optional[datetime] = None, fee_schedule: FeeSchedule = fee_for) -> Dict[str, int]:
    now = now or now_utc()
    today = now.date()
    summary = {"processed": 0, "skipped": 0, "failed": 0, "not_due": 0}
    with _wallet_lock():
        configs = list(db.scalars(select(PayoutConfig).where(PayoutConfig.is_active.is_(True)).order_by(PayoutConfig.id)))
        due = [c for c in configs if is_due(c, today)]
        summary["not_due"] = len(configs) - len(due)
        if not due:
            return summary

        balance = payhero.wallet_balance()
        logger.info("payout_run_started", balance=balance, due=len(due))
        for config in due:
            try:
                result = _execute(db, config, scheduled_reference(config.id, today), balance, fee_schedule, now)
            except InsufficientFunds as exc:
                logger.info("payout_skipped", config_id=config.id, required=exc.required, available=exc.available)
                summary["skipped"] += 1
                continue
            except ExternalServiceTimeout as exc:
                logger.error("payout_outcome_unknown", config_id=config.id, detail=exc.detail)
                summary["failed"] += 1
                # treat the withdrawal as spent until someone reconciles it
                attempt = _find_attempt(db, scheduled_reference(config.id, today))
                if attempt is not None:
                    balance -= attempt.amount + attempt.fee
                continue
            except (ExternalServiceError, Conflict) as exc:
                logger.error("payout_failed", config_id=config.id, error=exc.message, detail=exc.detail)
                summary["failed"] += 1
                continue
            summary["processed"] += 1
            if not result.replayed:
                balance -= result.amount + result.fee
    logger.info("payout_run_finished", **summary)
    return summary


# --- configuration -----------------------------------------------------------

def _active_total(db: Session, exclude_id: Optional[int] = None) -> float:
    stmt = select(func.coalesce(func.sum(PayoutConfig.payout_percentage), 0)).where(PayoutConfig.is_active.is_(True))
    if exclude_id is not None:
        stmt = stmt.where(PayoutConfig.id != exclude_id)
    return float(db.execute(stmt).scalar_one())


def _check_ceiling(db: Session, percentage: float, exclude_id: Optional[int] = None) -> None:
    total = _active_total(db, exclude_id)
    if round(total + percentage, 6) > MAX_TOTAL_PERCENTAGE:
        raise ValidationError(
            f"Adding this payee would exceed {MAX_TOTAL_PERCENTAGE}%. Current total is {total:g}%."
        )


def _config_lock():
    return single_flight(CONFIG_LOCK, timeout=30, blocking_timeout=5)


def list_configs(db: Session) -> List[PayoutConfig]:
    return list(db.scalars(select(PayoutConfig).order_by(PayoutConfig.created_at.desc(), PayoutConfig.id.desc())))


def get_config(db: Session, config_id: int) -> PayoutConfig:
    config = db.get(PayoutConfig, config_id)
    if config is None:
        raise NotFound("Payout configuration not found.")
    return config


def create_config(db: Session, data: dict) -> PayoutConfig:
    with _config_lock():
        if data.get("is_active", True):
            _check_ceiling(db, data["payout_percentage"])
        config = PayoutConfig(**data)
        db.add(config)
        db.commit()
    logger.info("payout_config_created", config_id=config.id, percentage=config.payout_percentage)
    return config


def update_config(db: Session, config_id: int, changes: dict) -> PayoutConfig:
    with _config_lock():
        config = get_config(db, config_id)
        is_active = changes.get("is_active", config.is_active)
        percentage = changes.get("payout_percentage", config.payout_percentage)
        if is_active:
            _check_ceiling(db, percentage, exclude_id=config.id)
        for key, value in changes.items():
            setattr(config, key, value)
        config.updated_at = now_utc()
        db.commit()
    logger.info("payout_config_updated", config_id=config.id, fields=sorted(changes))
    return config


def delete_config(db: Session, config_id: int) -> None:
    with _config_lock():
        config = get_config(db, config_id)
        db.delete(config)
        db.commit()
    logger.info("payout_config_deleted", config_id=config_id)
