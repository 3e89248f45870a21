from decimal import Decimal
from typing import Any, Mapping
import structlog
from payos import PaymentData, PayOS
from ordercore.core.config import settings
from ordercore.core.errors import ExternalProviderError
from ordercore.db.models import Order
from ordercore.payments.port import PaymentProvider, PaymentTarget, SettlementOutcome
from ordercore.services import pricing

logger = structlog.get_logger(__name__)

SUCCESS_CODE = "00"

def order_code(order_number: str) -> int:
    # PayOS wants an integer code: ORD-<ms>-<nnn> maps to <ms><nnn> and back
    return int("".join(ch for ch in order_number if ch.isdigit()))

def order_number_for(code) -> str:
    code = int(code)
    return f"ORD-{code // 1000}-{code % 1000:03d}"

def _field(obj, key):
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)

class PayOSProvider(PaymentProvider):
    """PayOS payment links. Settled by the checksum-signed webhook or by polling the link status."""
    name = "payos"

    def __init__(
        self,
        client: Any = None,
        client_id: str | None = None,
        api_key: str | None = None,
        checksum_key: str | None = None,
    ):
        self._sdk = client
        self.client_id = client_id if client_id is not None else settings.PAYOS_CLIENT_ID
        self.api_key = api_key if api_key is not None else settings.PAYOS_API_KEY
        self.checksum_key = checksum_key if checksum_key is not None else settings.PAYOS_CHECKSUM_KEY

    @property
    def client(self):
        if self._sdk is None:
            if not (self.client_id and self.api_key and self.checksum_key):
                raise ExternalProviderError(self.name, "PayOS is not configured")
            self._sdk = PayOS(client_id=self.client_id, api_key=self.api_key, checksum_key=self.checksum_key)
        return self._sdk

    def create_attempt(self, order: Order, amount: Decimal, **options: Any) -> tuple[PaymentTarget, dict]:
        code = order_code(order.order_number)
        charged = pricing.whole_units(amount)
        request = PaymentData(
            orderCode=code,
            amount=int(charged),
            description=f"DH{code}",
            returnUrl=options.get("return_url") or settings.PAYOS_RETURN_URL,
            cancelUrl=options.get("cancel_url") or settings.PAYOS_CANCEL_URL,
        )
        client = self.client
        try:
            link = client.createPaymentLink(request)
        except Exception as exc:
            raise ExternalProviderError(self.name, f"PayOS payment creation failed: {exc}") from exc

        logger.info("PayOS payment link created", order_number=order.order_number, order_code=code)
        response = {
            "order_code": code,
            "payment_link_id": _field(link, "paymentLinkId"),
            "checkout_url": _field(link, "checkoutUrl"),
        }
        target = PaymentTarget(
            provider=self.name,
            redirect_url=_field(link, "checkoutUrl"),
            qr_code=_field(link, "qrCode"),
            amount=pricing.money(charged),
            details={"order_code": code, "payment_link_id": _field(link, "paymentLinkId")},
        )
        return target, response

    def verify_callback(self, params: Mapping[str, Any]) -> SettlementOutcome | None:
        if "order_ref" in params:
            return self._poll(str(params["order_ref"]))
        client = self.client
        try:
            data = client.verifyPaymentWebhookData(dict(params))
        except Exception as exc:
            raise ExternalProviderError(self.name, f"Invalid webhook: {exc}") from exc

        order_ref = order_number_for(_field(data, "orderCode"))
        payload = dict(params.get("data") or {})
        if str(_field(data, "code")) == SUCCESS_CODE:
            return SettlementOutcome.succeeded(
                order_ref,
                str(_field(data, "reference") or _field(data, "paymentLinkId")),
                payload=payload,
                amount=Decimal(str(_field(data, "amount"))),
            )
        return SettlementOutcome.failed(order_ref, _field(data, "desc") or "PayOS payment failed", payload=payload)

    def _poll(self, order_ref: str) -> SettlementOutcome | None:
        client = self.client
        try:
            info = client.getPaymentLinkInformation(order_code(order_ref))
        except Exception as exc:
            raise ExternalProviderError(self.name, f"Payment check failed: {exc}") from exc

        status = str(_field(info, "status") or "").upper()
        payload = {"status": status, "payment_link_id": _field(info, "id")}
        if status == "PAID":
            transactions = _field(info, "transactions") or []
            reference = _field(transactions[0], "reference") if transactions else None
            return SettlementOutcome.succeeded(
                order_ref,
                str(reference or _field(info, "id")),
                payload=payload,
                amount=Decimal(str(_field(info, "amountPaid") or _field(info, "amount"))),
            )
        if status == "CANCELLED":
            reason = _field(info, "cancellationReason") or "Payment link cancelled"
            return SettlementOutcome.failed(order_ref, reason, payload=payload, cancelled=True)
        if status == "EXPIRED":
            return SettlementOutcome.failed(order_ref, "Payment link expired", payload=payload)
        logger.debug("PayOS payment not completed yet", order_ref=order_ref, status=status)
        return None
