from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import quote
import httpx
import structlog
from ordercore.core.config import settings
from ordercore.core.errors import ExternalProviderError
from ordercore.db.models import Order
from ordercore.payments.port import PaymentProvider, PaymentTarget, SettlementOutcome
from ordercore.services import pricing

logger = structlog.get_logger(__name__)

HISTORY_URL = "https://api.web2m.com/historyapiv3/mb/{account}/{api_key}"

def transfer_memo(order_ref: str) -> str:
    return f"DONHANG_{order_ref}"

class VietQRProvider(PaymentProvider):
    """Transfer QR with the order number in the memo, confirmed by polling the account history."""
    name = "vietqr"

    def __init__(
        self,
        client: httpx.Client | None = None,
        account_no: str | None = None,
        account_name: str | None = None,
        bank_id: int | None = None,
        history_api_key: str | None = None,
    ):
        self.client = client or httpx.Client(timeout=5.0)
        self.account_no = account_no or settings.VIETQR_ACCOUNT
        self.account_name = account_name or settings.VIETQR_ACCOUNT_NAME
        self.bank_id = bank_id or settings.VIETQR_BANK_ID
        self.history_api_key = history_api_key if history_api_key is not None else settings.WEB2M_API_KEY

    def image_url(self, amount: int, memo: str, template: str = "compact2") -> str:
        return (
            f"https://img.vietqr.io/image/{self.bank_id}-{self.account_no}-{template}.png"
            f"?amount={amount}&addInfo={quote(memo)}"
        )

    def create_attempt(self, order: Order, amount: Decimal, **options: Any) -> tuple[PaymentTarget, dict]:
        memo = transfer_memo(order.order_number)
        # transfers carry whole dong; the rounded amount is what gets recorded and matched
        charged = pricing.whole_units(amount)
        request = {
            "accountNo": self.account_no,
            "accountName": self.account_name,
            "acqId": self.bank_id,
            "amount": int(charged),
            "addInfo": memo,
            "format": "text",
            "template": options.get("template") or "compact2",
        }
        try:
            resp = self.client.post(settings.VIETQR_API_URL, json=request)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalProviderError(self.name, f"VietQR unavailable: {exc}") from exc
        if resp.status_code != 200 or body.get("code") != "00":
            raise ExternalProviderError(self.name, body.get("desc") or "Failed to generate QR code")

        data = body.get("data") or {}
        target = PaymentTarget(
            provider=self.name,
            qr_code=data.get("qrCode"),
            qr_image_url=self.image_url(int(charged), memo),
            amount=pricing.money(charged),
            details={
                "account_no": self.account_no,
                "account_name": self.account_name,
                "bank_id": self.bank_id,
                "amount": int(charged),
                "content": memo,
            },
        )
        return target, {"request": request, "qr": data}

    def verify_callback(self, params: Mapping[str, Any]) -> SettlementOutcome | None:
        if not self.history_api_key:
            raise ExternalProviderError(self.name, "Transaction history API is not configured")
        order_ref = str(params["order_ref"])
        expected = pricing.money(params["amount"])
        memo = transfer_memo(order_ref)

        url = HISTORY_URL.format(account=self.account_no, api_key=self.history_api_key)
        try:
            resp = self.client.get(url)
            resp.raise_for_status()
            transactions = resp.json().get("transactions") or []
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalProviderError(self.name, f"Payment check failed: {exc}") from exc

        for txn in transactions:
            if (
                txn.get("type") == "IN"
                and pricing.money(txn.get("amount", 0)) == expected
                and memo in str(txn.get("description", ""))
            ):
                return SettlementOutcome.succeeded(
                    order_ref, str(txn.get("transactionID") or txn.get("id")), payload=txn, amount=expected
                )
        logger.debug("VietQR transfer not found yet", order_ref=order_ref)
        return None
