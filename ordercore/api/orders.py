from fastapi import APIRouter, Depends, Query
from typing import Optional
from sqlalchemy import select, func, or_
from sqlalchemy.orm import Session, selectinload
from ordercore.api.deps import get_db, get_notifier
from ordercore.api.schemas import (
    CheckoutRequest, StatusUpdate, PaymentStatusUpdate, CancelRequest,
    OrderRead, OrderPage, CartValidation,
)
from ordercore.core.auth import get_current_identity, require_staff, require_customer, is_staff
from ordercore.core.errors import NotFoundError
from ordercore.db.external import Customer
from ordercore.db.models import Order
from ordercore.services import checkout as checkout_service
from ordercore.services import lifecycle
from ordercore.services.checkout import load_order
from ordercore.services.notifications import Notifier
from ordercore.store.catalog_store import find_customer_by_email

router = APIRouter()

def current_customer(identity: dict, db: Session) -> Customer:
    customer = find_customer_by_email(db, identity.get("sub"))
    if not customer:
        raise NotFoundError("Customer profile not found")
    return customer

def visible_order(order_id: int, identity: dict, db: Session) -> Order:
    """Staff see every order; customers only their own (others look missing)."""
    order = load_order(db, order_id)
    if not order:
        raise NotFoundError("Order not found")
    if not is_staff(identity):
        customer = find_customer_by_email(db, identity.get("sub"))
        if not customer or customer.id != order.customer_id:
            raise NotFoundError("Order not found")
    return order

def paginate(db: Session, stmt, page: int, limit: int) -> OrderPage:
    total = db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
    rows = db.execute(
        stmt.options(selectinload(Order.items))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return OrderPage(
        items=[OrderRead.model_validate(o) for o in rows],
        total=total,
        page=page,
        limit=limit,
        total_pages=(total + limit - 1) // limit,
    )

@router.post("/v1/orders", response_model=OrderRead, status_code=201)
def place_order(payload: CheckoutRequest, identity: dict = Depends(require_customer),
                db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return checkout_service.checkout(
        db,
        identity.get("sub"),
        shipping_address=payload.shipping_address,
        phone=payload.phone,
        payment_method=payload.payment_method,
        notes=payload.notes,
        notifier=notifier,
    )

@router.get("/v1/checkout/validate", response_model=CartValidation)
def validate_checkout(identity: dict = Depends(require_customer), db: Session = Depends(get_db)):
    issues = checkout_service.validate_cart(db, identity.get("sub"))
    return CartValidation(valid=not issues, issues=issues)

@router.get("/v1/orders", response_model=OrderPage)
def list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    search: Optional[str] = None,
    customer_id: Optional[int] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    _=Depends(require_staff),
    db: Session = Depends(get_db),
):
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == lifecycle.parse_status(status).value)
    if payment_status:
        stmt = stmt.where(Order.payment_status == lifecycle.parse_payment_status(payment_status).value)
    if customer_id is not None:
        stmt = stmt.where(Order.customer_id == customer_id)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(or_(Order.order_number.ilike(like), Order.shipping_address.ilike(like)))
    return paginate(db, stmt, page, limit)

@router.get("/v1/orders/mine", response_model=OrderPage)
def my_orders(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    customer = current_customer(identity, db)
    stmt = select(Order).where(Order.customer_id == customer.id)
    if status:
        stmt = stmt.where(Order.status == lifecycle.parse_status(status).value)
    return paginate(db, stmt, page, limit)

@router.get("/v1/orders/{order_id}", response_model=OrderRead)
def get_order(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    return visible_order(order_id, identity, db)

@router.put("/v1/orders/{order_id}/status", response_model=OrderRead)
def update_order_status(order_id: int, payload: StatusUpdate, _=Depends(require_staff),
                        db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    return lifecycle.update_status(db, order_id, payload.status, notifier=notifier)

@router.put("/v1/orders/{order_id}/payment-status", response_model=OrderRead)
def update_payment_status(order_id: int, payload: PaymentStatusUpdate, _=Depends(require_staff),
                          db: Session = Depends(get_db)):
    return lifecycle.update_payment_status(db, order_id, payload.payment_status)

@router.put("/v1/orders/{order_id}/cancel", response_model=OrderRead)
def cancel_order(order_id: int, payload: CancelRequest | None = None,
                 identity: dict = Depends(require_customer),
                 db: Session = Depends(get_db), notifier: Notifier = Depends(get_notifier)):
    visible_order(order_id, identity, db)
    reason = payload.reason if payload else None
    return lifecycle.cancel_order(db, order_id, reason=reason, notifier=notifier)
