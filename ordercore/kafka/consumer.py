import threading, json
from decimal import Decimal
import structlog
from kafka import KafkaConsumer
from sqlalchemy.orm import Session
from ordercore.core.config import settings
from ordercore.core.errors import DomainError
from ordercore.db.session import SessionLocal
from ordercore.payments.gateway import ReconciliationGateway, latest_payment
from ordercore.payments.port import SettlementOutcome
from ordercore.services.checkout import load_order

logger = structlog.get_logger(__name__)

EXTERNAL_PROVIDER = "external"

_stop_event = threading.Event()
_thread = None

def event_amount(ev: dict) -> Decimal | None:
    if ev.get("amount_cents") is not None:
        return Decimal(int(ev["amount_cents"])) / 100
    if ev.get("amount") is not None:
        return Decimal(str(ev["amount"]))
    return None

def event_transaction_id(ev: dict) -> str:
    # the payment service mints pay_<order_id> and does not always echo it on the event
    return str(ev.get("transaction_id") or ev.get("payment_id") or f"pay_{ev.get('order_id')}")

def to_outcome(ev: dict) -> SettlementOutcome | None:
    t = ev.get("type")
    ref = str(ev.get("order_id"))
    if t == "payment.succeeded":
        return SettlementOutcome.succeeded(ref, event_transaction_id(ev), payload=ev, amount=event_amount(ev))
    if t == "payment.failed":
        return SettlementOutcome.failed(ref, ev.get("reason") or "Payment failed", payload=ev)
    return None

def process_event(ev: dict, db: Session, gateway: ReconciliationGateway):
    outcome = to_outcome(ev)
    if outcome is None or not ev.get("order_id"):
        return None
    order = load_order(db, int(ev["order_id"]))
    if not order:
        logger.warning("Payment event for unknown order", order_id=ev.get("order_id"))
        return None
    if latest_payment(db, order.id) is None:
        # payment taken outside this service: open the record it settles against
        try:
            gateway.record_attempt(db, order, EXTERNAL_PROVIDER, order.total_amount)
            db.commit()
        except Exception:
            db.rollback()
            raise
    try:
        return gateway.settle(db, order.id, outcome)
    except DomainError as exc:
        logger.warning("Payment event rejected", order_id=order.id, error=exc.code, detail=exc.message)
        return None

def run_loop(gateway: ReconciliationGateway):
    consumer = KafkaConsumer(
        settings.TOPIC_PAYMENT_EVENTS,
        bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
        group_id="order-core",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
        enable_auto_commit=True,
        auto_offset_reset="earliest",
    )
    try:
        for msg in consumer:
            if _stop_event.is_set(): break
            db = SessionLocal()
            try:
                process_event(msg.value, db, gateway)
            except Exception:
                logger.exception("Payment event processing failed", event=msg.value)
            finally:
                db.close()
    finally:
        consumer.close()

def start(gateway: ReconciliationGateway):
    global _thread
    if _thread and _thread.is_alive(): return
    _stop_event.clear()
    _thread = threading.Thread(target=run_loop, args=(gateway,), daemon=True)
    _thread.start()

def stop():
    _stop_event.set()
