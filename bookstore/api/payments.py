from fastapi import APIRouter, Depends, Header, Request
from typing import Optional
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
import structlog

from bookstore.api.deps import get_db
from bookstore.core.auth import Identity, get_current_identity
from bookstore.core.errors import Unauthorized, ValidationError
from bookstore.schemas import PaymentStatusRead, WebhookAck
from bookstore.services import payments

router = APIRouter()
logger = structlog.get_logger(__name__)

@router.post("/payments/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(default=None, alias="X-Webhook-Signature"),
    db: Session = Depends(get_db),
):
    sender = request.client.host if request.client else None
    body = await request.body()

    if not payments.is_trusted_sender(sender):
        logger.warning("webhook_rejected", reason="sender_not_allowed", sender=sender)
        raise Unauthorized("Untrusted sender")
    if not payments.verify_signature(body, x_webhook_signature):
        logger.warning("webhook_rejected", reason="bad_signature", sender=sender)
        raise Unauthorized("Invalid signature")

    try:
        outcome = payments.PaymentOutcome.model_validate_json(body)
    except SchemaError as exc:
        raise ValidationError("Malformed payment notification", detail=str(exc))

    logger.info("webhook_received", reference=outcome.reference, success=outcome.success, sender=sender)
    result = await run_in_threadpool(payments.handle_outcome, db, outcome)
    return WebhookAck(applied=result.applied, status=result.order.status)

@router.post("/payments/{reference}/poll", response_model=PaymentStatusRead)
def poll_payment(reference: str, identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = payments.reconcile(db, identity, reference)
    return PaymentStatusRead(reference=order.custom_id, status=order.status)
