from decimal import Decimal
from typing import Any, Mapping
from uuid import uuid4
from ordercore.core.errors import ExternalProviderError
from ordercore.db.models import Order
from ordercore.payments.port import PaymentProvider, PaymentTarget, SettlementOutcome

TEST_SIGNATURE = "test-signature"

class MockProvider(PaymentProvider):
    """Redirect provider stand-in for development; callbacks carry a fixed test signature."""
    name = "mock"

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Card declined"
        self.calls: list[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Card declined") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_attempt(self, order: Order, amount: Decimal, **options: Any) -> tuple[PaymentTarget, dict]:
        self.calls.append({"method": "create_attempt", "order_number": order.order_number, "amount": str(amount)})
        url = f"https://pay.mock.local/checkout?ref={order.order_number}&amount={amount}"
        return PaymentTarget(provider=self.name, redirect_url=url), {"amount": str(amount)}

    def verify_callback(self, params: Mapping[str, Any]) -> SettlementOutcome | None:
        self.calls.append({"method": "verify_callback", **params})
        if params.get("signature") != TEST_SIGNATURE:
            raise ExternalProviderError(self.name, "Invalid signature")
        order_ref = str(params["order_ref"])
        succeed = params.get("succeed")
        if succeed is None:
            succeed = self.should_succeed
        if succeed:
            transaction_id = params.get("transaction_id") or f"mock_txn_{uuid4().hex[:12]}"
            return SettlementOutcome.succeeded(order_ref, transaction_id, payload=dict(params))
        return SettlementOutcome.failed(
            order_ref, params.get("reason") or self.failure_reason, payload=dict(params)
        )
