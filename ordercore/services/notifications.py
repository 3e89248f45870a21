import smtplib
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
import structlog
from ordercore.core.config import settings
from ordercore.db.models import Order
from ordercore.kafka import producer

logger = structlog.get_logger(__name__)

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status_changed"
PAYMENT_SUCCEEDED = "payment.succeeded"

def order_event(event_type: str, order: Order, email: str | None) -> dict:
    return {
        "type": event_type,
        "order_id": order.id,
        "order_number": order.order_number,
        "user_email": email,
        "status": order.status,
        "payment_status": order.payment_status,
        "total_amount": str(order.total_amount),
        "items": [
            {
                "product_id": it.product_id,
                "product_name": it.product_name,
                "quantity": it.quantity,
                "subtotal": str(it.subtotal),
            }
            for it in order.items
        ],
    }

class Notifier(ABC):
    @abstractmethod
    def send(self, event: dict) -> None:
        ...

class KafkaNotifier(Notifier):
    def __init__(self, topic: str | None = None, send_fn=None):
        self.topic = topic or settings.TOPIC_ORDER_EVENTS
        self._send = send_fn or producer.send

    def send(self, event: dict) -> None:
        self._send(self.topic, key=str(event.get("order_id", "")), value=event)

class SmtpNotifier(Notifier):
    SUBJECTS = {
        ORDER_CREATED: "Order received",
        PAYMENT_SUCCEEDED: "Payment received",
        ORDER_STATUS_CHANGED: "Order update",
    }

    def __init__(self, host: str | None = None, port: int | None = None, from_email: str | None = None):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.from_email = from_email or settings.FROM_EMAIL

    def render(self, event: dict) -> tuple[str, str]:
        number = event["order_number"]
        subject = f"{self.SUBJECTS.get(event['type'], 'Order update')} - {number}"
        if event["type"] == ORDER_CREATED:
            lines = "\n".join(
                f"  {it['product_name']} x{it['quantity']}: {it['subtotal']}" for it in event["items"]
            )
            body = f"We received your order {number}.\n\n{lines}\n\nTotal: {event['total_amount']}"
        elif event["type"] == PAYMENT_SUCCEEDED:
            body = f"Payment for order {number} succeeded. Total paid: {event['total_amount']}"
        else:
            body = f"Your order {number} is now {event['status']}."
        return subject, body

    def send(self, event: dict) -> None:
        to = event.get("user_email")
        if not to:
            return
        subject, body = self.render(event)
        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to
        with smtplib.SMTP(self.host, self.port) as s:
            s.sendmail(self.from_email, [to], msg.as_string())

class NullNotifier(Notifier):
    def send(self, event: dict) -> None:
        logger.debug("Notification dropped", event_type=event.get("type"), order_id=event.get("order_id"))

def build_notifier(kind: str | None = None) -> Notifier:
    kind = (kind or settings.NOTIFIER).lower()
    if kind == "kafka":
        return KafkaNotifier()
    if kind == "smtp":
        return SmtpNotifier()
    return NullNotifier()

def notify_safely(notifier: Notifier | None, event_type: str, order: Order, email: str | None) -> bool:
    # fire-and-forget: a broken broker or relay never fails the caller
    if notifier is None:
        return False
    try:
        notifier.send(order_event(event_type, order, email))
        return True
    except Exception:
        logger.warning(
            "Notification failed",
            event_type=event_type,
            order_number=order.order_number,
            exc_info=True,
        )
        return False
