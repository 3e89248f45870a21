from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping
from ordercore.db.models import Order

@dataclass(frozen=True)
class PaymentTarget:
    """Where to send the customer to pay. ``amount`` is set when the provider charges a rounded amount."""
    provider: str
    redirect_url: str | None = None
    qr_code: str | None = None
    qr_image_url: str | None = None
    amount: Decimal | None = None
    details: dict = field(default_factory=dict)

@dataclass(frozen=True)
class SettlementOutcome:
    # order_ref is the order number as echoed back by the provider
    order_ref: str
    success: bool
    transaction_id: str | None = None
    reason: str | None = None
    cancelled: bool = False
    amount: Decimal | None = None
    payload: dict = field(default_factory=dict)

    @classmethod
    def succeeded(
        cls, order_ref: str, transaction_id: str, payload: dict | None = None, amount: Decimal | None = None
    ) -> "SettlementOutcome":
        return cls(
            order_ref=order_ref, success=True, transaction_id=transaction_id, amount=amount, payload=payload or {}
        )

    @classmethod
    def failed(cls, order_ref: str, reason: str, payload: dict | None = None, cancelled: bool = False) -> "SettlementOutcome":
        return cls(order_ref=order_ref, success=False, reason=reason, cancelled=cancelled, payload=payload or {})

class PaymentProvider(ABC):
    name: str = ""

    @abstractmethod
    def create_attempt(self, order: Order, amount: Decimal, **options: Any) -> tuple[PaymentTarget, dict]:
        """Start an attempt; returns the target and the payload to keep on the record."""
        ...

    @abstractmethod
    def verify_callback(self, params: Mapping[str, Any]) -> SettlementOutcome | None:
        """Verify a callback/poll; ``None`` means the outcome is not known yet."""
        ...
