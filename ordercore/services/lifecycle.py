import structlog
from sqlalchemy.orm import Session
from ordercore.core.errors import IllegalTransitionError, InvalidStatusError, NotFoundError
from ordercore.db.models import Order, OrderStatus, PaymentStatus, now_utc
from ordercore.services.checkout import load_order
from ordercore.services.notifications import ORDER_STATUS_CHANGED, Notifier, notify_safely
from ordercore.store import catalog_store

logger = structlog.get_logger(__name__)

# delivered and cancelled are terminal; a shipped order is cancelled through support
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}

def _parse(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidStatusError(value, [s.value for s in enum_cls]) from None

def parse_status(value) -> OrderStatus:
    return _parse(OrderStatus, value)

def parse_payment_status(value) -> PaymentStatus:
    return _parse(PaymentStatus, value)

def check_transition(current: OrderStatus, requested: OrderStatus) -> None:
    if requested in ORDER_TRANSITIONS[current]:
        return
    if current == OrderStatus.SHIPPED and requested == OrderStatus.CANCELLED:
        raise IllegalTransitionError(
            current.value,
            requested.value,
            "Shipped orders cannot be cancelled. Please contact customer support",
        )
    if current == OrderStatus.DELIVERED:
        raise IllegalTransitionError(current.value, requested.value, "Cannot change status of delivered order")
    if current == OrderStatus.CANCELLED:
        raise IllegalTransitionError(current.value, requested.value, "Cannot update status of cancelled order")
    raise IllegalTransitionError(current.value, requested.value)

def check_payment_transition(current: PaymentStatus, requested: PaymentStatus) -> None:
    if requested not in PAYMENT_TRANSITIONS[current]:
        raise IllegalTransitionError(
            current.value,
            requested.value,
            f"Cannot change payment status from '{current.value}' to '{requested.value}'",
        )

def _restock(db: Session, order: Order) -> None:
    for item in sorted(order.items, key=lambda it: it.product_id):
        product = catalog_store.restock(db, item.product_id, item.quantity)
        if product is None:
            logger.warning(
                "Restock skipped, product no longer exists",
                order_number=order.order_number,
                product_id=item.product_id,
            )

def transition_status(db: Session, order: Order, status, reason: str | None = None) -> Order:
    """Apply a status change to a locked order. Does not commit."""
    requested = parse_status(status)
    current = OrderStatus(order.status)
    check_transition(current, requested)

    order.status = requested.value
    if requested == OrderStatus.SHIPPED and order.shipped_at is None:
        order.shipped_at = now_utc()
    if requested == OrderStatus.DELIVERED and order.delivered_at is None:
        order.delivered_at = now_utc()
    if requested == OrderStatus.CANCELLED:
        order.cancellation_reason = reason
        _restock(db, order)

    logger.info(
        "Order status changed",
        order_number=order.order_number,
        from_status=current.value,
        to_status=requested.value,
    )
    return order

def transition_payment_status(db: Session, order: Order, payment_status) -> Order:
    """Apply a payment-status change to a locked order. Does not commit."""
    requested = parse_payment_status(payment_status)
    current = PaymentStatus(order.payment_status)
    check_payment_transition(current, requested)
    order.payment_status = requested.value
    logger.info(
        "Order payment status changed",
        order_number=order.order_number,
        from_status=current.value,
        to_status=requested.value,
    )
    return order

def lock_order(db: Session, order_id: int) -> Order:
    order = load_order(db, order_id, lock=True)
    if order is None:
        raise NotFoundError("Order not found")
    return order

def _customer_email(db: Session, order: Order) -> str | None:
    customer = catalog_store.get_customer(db, order.customer_id)
    return customer.user_email if customer else None

def update_status(
    db: Session,
    order_id: int,
    status,
    *,
    reason: str | None = None,
    notifier: Notifier | None = None,
) -> Order:
    # validate before touching the database
    parse_status(status)
    try:
        order = lock_order(db, order_id)
        transition_status(db, order, status, reason=reason)
        db.commit()
    except Exception:
        db.rollback()
        raise
    order = load_order(db, order_id)
    notify_safely(notifier, ORDER_STATUS_CHANGED, order, _customer_email(db, order))
    return order

def cancel_order(db: Session, order_id: int, *, reason: str | None = None, notifier: Notifier | None = None) -> Order:
    return update_status(db, order_id, OrderStatus.CANCELLED, reason=reason, notifier=notifier)

def update_payment_status(db: Session, order_id: int, payment_status) -> Order:
    parse_payment_status(payment_status)
    try:
        order = lock_order(db, order_id)
        transition_payment_status(db, order, payment_status)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return load_order(db, order_id)
