from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping
import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session
from ordercore.core.config import settings
from ordercore.core.errors import ConflictError, NotFoundError, ValidationError
from ordercore.db.models import (
    Order,
    OrderStatus,
    PaymentRecord,
    PaymentRecordStatus,
    PaymentStatus,
)
from ordercore.payments.port import PaymentProvider, PaymentTarget, SettlementOutcome
from ordercore.services import lifecycle, pricing
from ordercore.services.checkout import load_order
from ordercore.services.notifications import PAYMENT_SUCCEEDED, Notifier, notify_safely
from ordercore.store import catalog_store

logger = structlog.get_logger(__name__)

@dataclass
class SettlementResult:
    order: Order
    record: PaymentRecord
    applied: bool

def latest_payment(db: Session, order_id: int, lock: bool = False) -> PaymentRecord | None:
    stmt = (
        select(PaymentRecord)
        .where(PaymentRecord.order_id == order_id)
        .order_by(PaymentRecord.id.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    if lock:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()

def find_order_by_number(db: Session, order_number: str) -> Order | None:
    return db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()

class ReconciliationGateway:
    """Owns the payments table; settles callbacks idempotently under row locks."""

    def __init__(
        self,
        providers: Dict[str, PaymentProvider],
        notifier: Notifier | None = None,
        advance_on_payment: bool | None = None,
    ):
        self.providers = dict(providers)
        self.notifier = notifier
        self.advance_on_payment = settings.ADVANCE_ON_PAYMENT if advance_on_payment is None else advance_on_payment

    def provider(self, name: str) -> PaymentProvider:
        try:
            return self.providers[name]
        except KeyError:
            raise ValidationError(f"Unsupported payment provider '{name}'") from None

    def record_attempt(
        self, db: Session, order: Order, provider: str, amount: Decimal, payload: dict | None = None
    ) -> PaymentRecord:
        """Add a pending payment record. Does not commit."""
        record = PaymentRecord(
            order_id=order.id,
            provider=provider,
            amount=pricing.money(amount),
            status=PaymentRecordStatus.PENDING.value,
            provider_response=payload,
        )
        db.add(record)
        db.flush()
        logger.info("Payment attempt recorded", order_number=order.order_number, provider=provider)
        return record

    def start_payment(
        self, db: Session, order_id: int, provider_name: str, **options: Any
    ) -> tuple[PaymentRecord, PaymentTarget]:
        provider = self.provider(provider_name)
        order = load_order(db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status == OrderStatus.CANCELLED.value or order.payment_status != PaymentStatus.PENDING.value:
            raise ValidationError(f"Order {order.order_number} is not awaiting payment")

        # amount is always the order's derived total, never client-supplied
        target, payload = provider.create_attempt(order, order.total_amount, **options)
        amount = target.amount if target.amount is not None else order.total_amount
        try:
            record = self.record_attempt(db, order, provider.name, amount, payload)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return record, target

    def handle_callback(self, db: Session, provider_name: str, params: Mapping[str, Any]) -> SettlementResult | None:
        """Verify a provider callback and settle it. ``None`` if still pending."""
        outcome = self.provider(provider_name).verify_callback(params)
        if outcome is None:
            return None
        order = find_order_by_number(db, outcome.order_ref)
        if order is None:
            raise NotFoundError(f"Order {outcome.order_ref} not found")
        return self.settle(db, order.id, outcome, provider=provider_name)

    def settle(
        self, db: Session, order_id: int, outcome: SettlementOutcome, provider: str | None = None
    ) -> SettlementResult:
        """Apply an outcome to the latest record. ``provider`` must match that record when given."""
        try:
            order = lifecycle.lock_order(db, order_id)
            record = latest_payment(db, order.id, lock=True)
            if record is None:
                raise NotFoundError(f"No payment attempt recorded for order {order.order_number}")
            if provider is not None and record.provider != provider:
                raise ConflictError(
                    f"Latest payment for order {order.order_number} is a {record.provider} attempt, not {provider}"
                )

            if record.status == PaymentRecordStatus.COMPLETED.value:
                self._check_replay(order, record, outcome)
                db.commit()
                return SettlementResult(order=order, record=record, applied=False)

            if outcome.success:
                self._apply_success(db, order, record, outcome)
            else:
                self._apply_failure(order, record, outcome)
            db.commit()
        except Exception:
            db.rollback()
            raise

        order = load_order(db, order.id)
        if outcome.success:
            customer = catalog_store.get_customer(db, order.customer_id)
            notify_safely(self.notifier, PAYMENT_SUCCEEDED, order, customer.user_email if customer else None)
        return SettlementResult(order=order, record=record, applied=True)

    def _check_replay(self, order: Order, record: PaymentRecord, outcome: SettlementOutcome) -> None:
        if not outcome.success:
            logger.warning(
                "Failure after completed payment ignored",
                order_number=order.order_number,
                transaction_id=record.transaction_id,
                reason=outcome.reason,
            )
            return
        if outcome.transaction_id != record.transaction_id:
            raise ConflictError(
                f"Payment for order {order.order_number} already settled with transaction "
                f"{record.transaction_id}, got {outcome.transaction_id}"
            )
        logger.info("Duplicate settlement ignored", order_number=order.order_number, transaction_id=record.transaction_id)

    def _apply_success(self, db: Session, order: Order, record: PaymentRecord, outcome: SettlementOutcome) -> None:
        if not outcome.transaction_id:
            raise ValidationError("Successful settlement requires a transaction id")
        if outcome.amount is not None and pricing.money(outcome.amount) != pricing.money(record.amount):
            raise ConflictError(
                f"Settled amount {pricing.money(outcome.amount)} does not match expected {pricing.money(record.amount)}"
            )

        record.status = PaymentRecordStatus.COMPLETED.value
        record.transaction_id = outcome.transaction_id
        record.provider_response = outcome.payload

        if order.payment_status != PaymentStatus.PAID.value:
            lifecycle.transition_payment_status(db, order, PaymentStatus.PAID)
        if self.advance_on_payment and order.status == OrderStatus.PENDING.value:
            lifecycle.transition_status(db, order, OrderStatus.PROCESSING)
        if order.status == OrderStatus.CANCELLED.value:
            logger.warning("Payment settled for cancelled order, refund required", order_number=order.order_number)

        logger.info(
            "Payment settled",
            order_number=order.order_number,
            provider=record.provider,
            transaction_id=record.transaction_id,
        )

    def _apply_failure(self, order: Order, record: PaymentRecord, outcome: SettlementOutcome) -> None:
        # payment_status stays pending so the customer can start a new attempt;
        # reserved stock is released only by cancelling the order
        record.status = (PaymentRecordStatus.CANCELLED if outcome.cancelled else PaymentRecordStatus.FAILED).value
        record.provider_response = outcome.payload
        logger.info(
            "Payment failed",
            order_number=order.order_number,
            provider=record.provider,
            reason=outcome.reason,
        )

def build_gateway(notifier: Notifier | None = None) -> ReconciliationGateway:
    from ordercore.payments.mock import MockProvider
    from ordercore.payments.payos import PayOSProvider
    from ordercore.payments.vietqr import VietQRProvider
    from ordercore.payments.vnpay import VNPayProvider

    providers: Dict[str, PaymentProvider] = {
        VNPayProvider.name: VNPayProvider(),
        VietQRProvider.name: VietQRProvider(),
        PayOSProvider.name: PayOSProvider(),
    }
    if settings.MOCK_PAYMENTS_ENABLED:
        providers[MockProvider.name] = MockProvider()
    return ReconciliationGateway(providers, notifier=notifier)
