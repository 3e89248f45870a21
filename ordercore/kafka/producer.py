import json
import structlog
from kafka import KafkaProducer
from kafka.errors import KafkaError
from ordercore.core.config import settings

logger = structlog.get_logger(__name__)

SEND_TIMEOUT = 5

_producer = None

def _encode(value: dict) -> bytes:
    # Decimal amounts and timestamps go out as strings
    return json.dumps(value, default=str).encode("utf-8")

def get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=_encode,
            key_serializer=lambda k: k.encode("utf-8") if isinstance(k, str) else k,
            acks="all",
            retries=3,
        )
    return _producer

def send(topic: str | None, key: str | None, value: dict) -> None:
    """Publish one event and wait for the broker ack; defaults to the order events topic."""
    topic = topic or settings.TOPIC_ORDER_EVENTS
    try:
        get_producer().send(topic, key=key, value=value).get(timeout=SEND_TIMEOUT)
    except KafkaError:
        logger.warning("Kafka publish failed", topic=topic, key=key, event_type=value.get("type"))
        raise
    logger.debug("Event published", topic=topic, key=key, event_type=value.get("type"))

def close() -> None:
    global _producer
    if _producer is not None:
        _producer.close(timeout=SEND_TIMEOUT)
        _producer = None
