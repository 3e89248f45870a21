from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import RedirectResponse
from urllib.parse import urlencode
import structlog
from sqlalchemy.orm import Session
from ordercore.api.deps import get_db, get_gateway
from ordercore.api.orders import visible_order
from ordercore.api.schemas import (
    CreatePayment, PaymentTargetRead, PaymentRead, CheckPayment, MockCallback, SettlementRead,
)
from ordercore.core.auth import get_current_identity
from ordercore.core.config import settings
from ordercore.core.errors import DomainError, NotFoundError
from ordercore.db.models import PaymentRecordStatus
from ordercore.payments.gateway import ReconciliationGateway, SettlementResult, latest_payment

logger = structlog.get_logger(__name__)

router = APIRouter()

def settlement_read(result: SettlementResult | None) -> SettlementRead:
    if result is None:
        return SettlementRead(settled=False)
    return SettlementRead(
        settled=True,
        applied=result.applied,
        order_id=result.order.id,
        status=result.order.status,
        payment_status=result.order.payment_status,
        payment=PaymentRead.model_validate(result.record),
    )

@router.post("/v1/payments/{provider}/create", response_model=PaymentTargetRead, status_code=201)
def create_payment(provider: str, payload: CreatePayment, request: Request,
                   identity: dict = Depends(get_current_identity),
                   db: Session = Depends(get_db), gateway: ReconciliationGateway = Depends(get_gateway)):
    visible_order(payload.order_id, identity, db)
    record, target = gateway.start_payment(
        db,
        payload.order_id,
        provider,
        ip_addr=request.client.host if request.client else None,
        order_info=payload.order_info,
        locale=payload.locale,
    )
    return PaymentTargetRead(
        payment_id=record.id,
        provider=target.provider,
        amount=record.amount,
        redirect_url=target.redirect_url,
        qr_code=target.qr_code,
        qr_image_url=target.qr_image_url,
        details=target.details,
    )

@router.get("/v1/payments/vnpay/return")
def vnpay_return(request: Request, db: Session = Depends(get_db),
                 gateway: ReconciliationGateway = Depends(get_gateway)):
    params = dict(request.query_params)
    try:
        result = gateway.handle_callback(db, "vnpay", params)
    except DomainError as exc:
        logger.warning("VNPay return rejected", error=exc.code, detail=exc.message, txn_ref=params.get("vnp_TxnRef"))
        query = urlencode({"message": "Payment verification failed"})
        return RedirectResponse(f"{settings.FRONTEND_URL}/payment-failed?{query}", status_code=303)

    record = result.record
    if record.status == PaymentRecordStatus.COMPLETED.value:
        query = urlencode({"orderNumber": result.order.order_number, "transactionId": record.transaction_id})
        return RedirectResponse(f"{settings.FRONTEND_URL}/payment-success?{query}", status_code=303)
    query = urlencode({"orderNumber": result.order.order_number, "message": "Payment failed"})
    return RedirectResponse(f"{settings.FRONTEND_URL}/payment-failed?{query}", status_code=303)

@router.post("/v1/payments/vietqr/check", response_model=SettlementRead)
def vietqr_check(payload: CheckPayment, identity: dict = Depends(get_current_identity),
                 db: Session = Depends(get_db), gateway: ReconciliationGateway = Depends(get_gateway)):
    order = visible_order(payload.order_id, identity, db)
    record = latest_payment(db, order.id)
    if record is None or record.provider != "vietqr":
        raise NotFoundError("No VietQR payment attempt for this order")
    result = gateway.handle_callback(db, "vietqr", {"order_ref": order.order_number, "amount": str(record.amount)})
    return settlement_read(result)

@router.post("/v1/payments/payos/check", response_model=SettlementRead)
def payos_check(payload: CheckPayment, identity: dict = Depends(get_current_identity),
                db: Session = Depends(get_db), gateway: ReconciliationGateway = Depends(get_gateway)):
    order = visible_order(payload.order_id, identity, db)
    record = latest_payment(db, order.id)
    if record is None or record.provider != "payos":
        raise NotFoundError("No PayOS payment attempt for this order")
    return settlement_read(gateway.handle_callback(db, "payos", {"order_ref": order.order_number}))

@router.post("/v1/payments/payos/webhook", response_model=SettlementRead)
def payos_webhook(payload: dict = Body(...), db: Session = Depends(get_db),
                  gateway: ReconciliationGateway = Depends(get_gateway)):
    # signature-less bodies must not reach the poll path
    payload.pop("order_ref", None)
    try:
        result = gateway.handle_callback(db, "payos", payload)
    except NotFoundError as exc:
        # PayOS sends a test event for an unknown order when the webhook url is registered
        logger.warning("PayOS webhook for unknown order", detail=exc.message)
        return SettlementRead(settled=False)
    return settlement_read(result)

@router.post("/v1/payments/mock/callback", response_model=SettlementRead)
def mock_callback(payload: MockCallback, db: Session = Depends(get_db),
                  gateway: ReconciliationGateway = Depends(get_gateway)):
    params = {
        "order_ref": payload.order_number,
        "succeed": payload.succeed,
        "transaction_id": payload.transaction_id,
        "reason": payload.reason,
        "signature": payload.signature,
    }
    return settlement_read(gateway.handle_callback(db, "mock", params))

@router.get("/v1/payments/status/{order_id}", response_model=PaymentRead)
def payment_status(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    visible_order(order_id, identity, db)
    record = latest_payment(db, order_id)
    if record is None:
        raise NotFoundError("No payment recorded for this order")
    return record
