from decimal import Decimal
from typing import Callable, List
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from ordercore.core.config import settings
from ordercore.core.errors import (
    ConflictError,
    EmptyCartError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from ordercore.db.models import Order, OrderItem, OrderStatus, PaymentStatus
from ordercore.services import pricing
from ordercore.services.notifications import ORDER_CREATED, Notifier, notify_safely
from ordercore.store import cart_store, catalog_store

logger = structlog.get_logger(__name__)

ORDER_NUMBER_ATTEMPTS = 5

def load_order(db: Session, order_id: int, lock: bool = False) -> Order | None:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.items))
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update(of=Order)
    return db.execute(stmt).scalar_one_or_none()

def _insert_order(db: Session, order: Order, number_factory: Callable[[], str]) -> None:
    db.flush()
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order.order_number = number_factory()
        try:
            with db.begin_nested():
                db.add(order)
                db.flush()
            return
        except IntegrityError as exc:
            if "order_number" not in str(exc.orig):
                raise
            logger.warning("Order number collision", order_number=order.order_number, attempt=attempt)
    raise ConflictError("Could not allocate a unique order number")

def checkout(
    db: Session,
    email: str,
    *,
    shipping_address: str | None,
    phone: str | None,
    payment_method: str | None = "COD",
    notes: str | None = "",
    notifier: Notifier | None = None,
    number_factory: Callable[[], str] = pricing.generate_order_number,
) -> Order:
    """Turn the cart into an order in one transaction: lock, reserve stock, insert, empty the cart.

    Products are locked in ascending id order. Any error rolls everything back.
    """
    if not (shipping_address or "").strip():
        raise ValidationError("Shipping address is required")
    if not (phone or "").strip():
        raise ValidationError("Shipping phone is required")

    try:
        customer = catalog_store.find_customer_by_email(db, email)
        if customer is None:
            raise NotFoundError("Customer profile not found")

        lines = cart_store.get_lines(db, email, lock=True)
        if not lines:
            raise EmptyCartError()

        items: List[OrderItem] = []
        reserved = []
        subtotal = Decimal("0.00")
        for line in sorted(lines, key=lambda ln: ln.product_id):
            product = catalog_store.lock_product(db, line.product_id)
            if product is None:
                raise NotFoundError(f"Product {line.product_id} not found")
            available = product.stock_quantity or 0
            if available < line.quantity:
                raise InsufficientStockError(product.id, product.name, line.quantity, available)

            discount = Decimal(str(product.discount_percentage or 0))
            item_subtotal = pricing.line_subtotal(product.price, discount, line.quantity)
            items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    product_price=pricing.money(product.price),
                    quantity=line.quantity,
                    discount_percentage=discount,
                    subtotal=item_subtotal,
                )
            )
            reserved.append((product, line.quantity))
            subtotal += item_subtotal

        shipping_cost = pricing.money(settings.SHIPPING_COST)
        discount_amount = pricing.money(0)
        order = Order(
            customer_id=customer.id,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_method=payment_method or "COD",
            subtotal=pricing.money(subtotal),
            discount_amount=discount_amount,
            shipping_cost=shipping_cost,
            total_amount=pricing.order_total(subtotal, shipping_cost, discount_amount),
            shipping_address=shipping_address.strip(),
            shipping_phone=phone.strip(),
            notes=notes or "",
            items=items,
        )
        _insert_order(db, order, number_factory)

        for product, qty in reserved:
            catalog_store.decrement_stock(product, qty)
        cart_store.clear_cart(db, email)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Order placed",
        order_number=order.order_number,
        customer_id=customer.id,
        lines=len(items),
        total_amount=str(order.total_amount),
    )
    order = load_order(db, order.id)
    notify_safely(notifier, ORDER_CREATED, order, email)
    return order

def validate_cart(db: Session, email: str) -> List[dict]:
    """Dry-run stock check of the cart. Nothing is locked or mutated."""
    lines = cart_store.get_lines(db, email)
    if not lines:
        raise EmptyCartError()

    issues = []
    for line in lines:
        product = catalog_store.get_product(db, line.product_id)
        if product is None:
            issues.append({"product_id": line.product_id, "message": f"Product {line.product_id} not found"})
            continue
        available = product.stock_quantity or 0
        if available < line.quantity:
            issues.append(
                {
                    "product_id": product.id,
                    "message": f"{product.name}: Only {available} available, you have {line.quantity} in cart",
                    "available": available,
                    "requested": line.quantity,
                }
            )
    return issues
