from kafka import KafkaProducer
from kafka.errors import KafkaError
import json
import structlog
from bookstore.core.config import settings
from bookstore.core.resources import LazyResource

logger = structlog.get_logger(__name__)

kafka_producer = LazyResource(
    lambda: KafkaProducer(
        bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
        value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
        linger_ms=5,
        retries=3,
    ),
    "kafka-producer",
)

def send(topic: str, key: str, value: dict):
    # State is already committed when we publish; a broker outage must not undo it.
    try:
        p = kafka_producer.get()
        p.send(topic, key=key, value=value)
        p.flush(5)
    except KafkaError as exc:
        logger.error("event_publish_failed", topic=topic, key=key, event=value.get("type"), error=str(exc))

def publish_order_event(event_type: str, order) -> None:
    send(settings.TOPIC_ORDER_EVENTS, key=order.custom_id, value={
        "type": event_type,
        "order_id": order.id,
        "custom_id": order.custom_id,
        "user_id": order.user_id,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "items": [
            {"book_id": it.book_id, "quantity": it.quantity, "price_at_purchase": it.price_at_purchase}
            for it in order.items
        ],
    })

def publish_payout_event(event_type: str, attempt) -> None:
    send(settings.TOPIC_PAYOUT_EVENTS, key=attempt.external_reference, value={
        "type": event_type,
        "config_id": attempt.config_id,
        "external_reference": attempt.external_reference,
        "amount": attempt.amount,
        "fee": attempt.fee,
        "status": attempt.status,
    })
