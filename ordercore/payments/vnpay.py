import hashlib
import hmac
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping
from urllib.parse import urlencode
from ordercore.core.config import settings
from ordercore.core.errors import ExternalProviderError
from ordercore.db.models import Order
from ordercore.payments.port import PaymentProvider, PaymentTarget, SettlementOutcome

SUCCESS_CODE = "00"
CUSTOMER_CANCELLED_CODE = "24"

def sign(params: Mapping[str, Any], secret: str) -> str:
    query = urlencode(sorted((k, str(v)) for k, v in params.items()))
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha512).hexdigest()

class VNPayProvider(PaymentProvider):
    name = "vnpay"

    def __init__(
        self,
        tmn_code: str | None = None,
        hash_secret: str | None = None,
        pay_url: str | None = None,
        return_url: str | None = None,
    ):
        self.tmn_code = tmn_code if tmn_code is not None else settings.VNP_TMNCODE
        self.hash_secret = hash_secret if hash_secret is not None else settings.VNP_HASHSECRET
        self.pay_url = pay_url or settings.VNP_URL
        self.return_url = return_url or settings.VNP_RETURNURL

    def create_attempt(self, order: Order, amount: Decimal, **options: Any) -> tuple[PaymentTarget, dict]:
        if not self.hash_secret:
            raise ExternalProviderError(self.name, "VNPay is not configured")
        params = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self.tmn_code,
            "vnp_Amount": int(Decimal(amount) * 100),
            "vnp_CreateDate": datetime.now().strftime("%Y%m%d%H%M%S"),
            "vnp_CurrCode": "VND",
            "vnp_IpAddr": options.get("ip_addr") or "127.0.0.1",
            "vnp_Locale": options.get("locale") or "vn",
            "vnp_OrderInfo": options.get("order_info") or f"Thanh toan don hang {order.order_number}",
            "vnp_OrderType": "other",
            "vnp_ReturnUrl": self.return_url,
            "vnp_TxnRef": order.order_number,
        }
        signed = dict(sorted(params.items()))
        signed["vnp_SecureHash"] = sign(params, self.hash_secret)
        url = f"{self.pay_url}?{urlencode(signed)}"
        return PaymentTarget(provider=self.name, redirect_url=url), {"request": params}

    def verify_callback(self, params: Mapping[str, Any]) -> SettlementOutcome | None:
        if not self.hash_secret:
            raise ExternalProviderError(self.name, "VNPay is not configured")
        data = {k: v for k, v in params.items() if k.startswith("vnp_")}
        received = str(data.pop("vnp_SecureHash", ""))
        data.pop("vnp_SecureHashType", None)
        expected = sign(data, self.hash_secret)
        if not received or not hmac.compare_digest(received.lower(), expected):
            raise ExternalProviderError(self.name, "Invalid signature")

        order_ref = str(data.get("vnp_TxnRef", ""))
        code = str(data.get("vnp_ResponseCode", ""))
        status = str(data.get("vnp_TransactionStatus", code))
        amount = Decimal(str(data.get("vnp_Amount", "0"))) / 100

        if code == SUCCESS_CODE and status == SUCCESS_CODE:
            return SettlementOutcome.succeeded(
                order_ref, str(data.get("vnp_TransactionNo", "")), payload=data, amount=amount
            )
        if code == CUSTOMER_CANCELLED_CODE:
            return SettlementOutcome.failed(order_ref, "Customer cancelled the payment", payload=data, cancelled=True)
        return SettlementOutcome.failed(order_ref, f"VNPay response code {code}", payload=data)
