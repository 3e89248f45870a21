import json
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("NOTIFIER", "none")
os.environ.setdefault("ENVIRONMENT", "test")

from contextlib import contextmanager
from decimal import Decimal
from types import SimpleNamespace

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from ordercore.api.deps import get_db
from ordercore.core.config import settings
from ordercore.db.external import CartItem, Customer, Product
from ordercore.db.session import Base, make_engine, make_sessionmaker
from ordercore.main import app
from ordercore.payments.gateway import ReconciliationGateway
from ordercore.payments.mock import MockProvider
from ordercore.payments.payos import PayOSProvider
from ordercore.payments.vietqr import VietQRProvider
from ordercore.payments.vnpay import VNPayProvider, sign
from ordercore.services.checkout import checkout, load_order
from ordercore.services.notifications import Notifier

VNPAY_SECRET = "test-hash-secret"
PAYOS_SIGNATURE = "payos-test-signature"


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[dict] = []

    def send(self, event: dict) -> None:
        if self.fail:
            raise ConnectionError("mail relay down")
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]


def make_token(email: str, role: str = "customer", token_type: str = "access") -> str:
    payload = {"sub": email, "role": role, "type": token_type}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth(email: str, role: str = "customer") -> dict:
    return {"Authorization": f"Bearer {make_token(email, role)}"}


class Seeder:
    """Writes catalog, customer and cart rows the way the owning services would.

    Bound either to one session (service tests share it with the code under
    test) or to a session factory (API and thread tests, where every call
    must release the SQLite write lock before returning).
    """

    def __init__(self, session=None, session_factory=None):
        self.session = session
        self.session_factory = session_factory

    @contextmanager
    def scope(self):
        if self.session is not None:
            yield self.session
            return
        with self.session_factory() as s:
            yield s

    def product(self, name="ProductA", price="100.00", discount="0", stock=10) -> int:
        with self.scope() as s:
            p = Product(name=name, price=Decimal(price), discount_percentage=Decimal(discount), stock_quantity=stock)
            s.add(p)
            s.commit()
            return p.id

    def customer(self, email="alice@example.com", first_name="Alice") -> int:
        with self.scope() as s:
            c = Customer(user_email=email, first_name=first_name, last_name="Nguyen", phone="0900000000")
            s.add(c)
            s.commit()
            return c.id

    def cart(self, email: str, product_id: int, quantity: int) -> None:
        with self.scope() as s:
            s.add(CartItem(user_email=email, product_id=product_id, quantity=quantity))
            s.commit()

    def stock(self, product_id: int) -> int:
        with self.scope() as s:
            return s.get(Product, product_id, populate_existing=True).stock_quantity

    def cart_size(self, email: str) -> int:
        with self.scope() as s:
            return s.query(CartItem).filter(CartItem.user_email == email).count()

    def order(self, order_id: int):
        with self.scope() as s:
            return load_order(s, order_id)

    def place_order(self, email="alice@example.com", qty=2, stock=20, price="100.00", discount="10", notifier=None):
        """Customer (created if missing) checks out one line of a fresh product."""
        with self.scope() as s:
            if s.query(Customer).filter(Customer.user_email == email).count() == 0:
                s.add(Customer(user_email=email, first_name="Test", last_name="Customer", phone="0900000000"))
                s.commit()
        product_id = self.product(price=price, discount=discount, stock=stock)
        self.cart(email, product_id, qty)
        with self.scope() as s:
            return checkout(s, email, shipping_address="1 Le Loi, HCMC", phone="0900000000", notifier=notifier)


@pytest.fixture()
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_sessionmaker(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def seed(db):
    return Seeder(session=db)


@pytest.fixture()
def shared_seed(session_factory):
    return Seeder(session_factory=session_factory)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture()
def mock_provider():
    return MockProvider()


@pytest.fixture()
def vnpay_provider():
    return VNPayProvider(
        tmn_code="TESTTMN",
        hash_secret=VNPAY_SECRET,
        pay_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        return_url="http://testserver/payment/v1/payments/vnpay/return",
    )


@pytest.fixture()
def vnpay_return(vnpay_provider):
    """Build the query string VNPay appends to the return URL."""

    def _build(order_ref, amount, code, txn_no="14012345"):
        params = {
            "vnp_Amount": str(int(Decimal(amount) * 100)),
            "vnp_BankCode": "NCB",
            "vnp_OrderInfo": f"Thanh toan don hang {order_ref}",
            "vnp_PayDate": "20261019100000",
            "vnp_ResponseCode": code,
            "vnp_TmnCode": vnpay_provider.tmn_code,
            "vnp_TransactionNo": txn_no,
            "vnp_TransactionStatus": code,
            "vnp_TxnRef": order_ref,
        }
        params["vnp_SecureHash"] = sign(params, vnpay_provider.hash_secret)
        params["vnp_SecureHashType"] = "HmacSHA512"
        return params

    return _build


class FakeBank:
    """VietQR generate API and the account transaction history, in memory."""

    def __init__(self):
        self.transactions: list[dict] = []
        self.qr_requests: list[dict] = []

    def transfer(self, memo: str, amount, txn_id: str = "FT26101900001") -> None:
        self.transactions.append(
            {"type": "IN", "amount": str(amount), "description": f"CK {memo} chuyen tien", "transactionID": txn_id}
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            self.qr_requests.append(json.loads(request.content))
            return httpx.Response(200, json={"code": "00", "desc": "ok", "data": {"qrCode": "000201010212"}})
        return httpx.Response(200, json={"transactions": self.transactions})


class FakePayOS:
    """Stands in for the payos SDK client. Webhooks verify when signed with PAYOS_SIGNATURE."""

    def __init__(self):
        self.links: dict[int, dict] = {}
        self.requests: list = []

    def createPaymentLink(self, data):
        if data.orderCode in self.links:
            raise ValueError("Order code already exists")
        self.requests.append(data)
        self.links[data.orderCode] = {"status": "PENDING", "amount": data.amount, "transactions": []}
        return SimpleNamespace(
            checkoutUrl=f"https://pay.payos.vn/web/{data.orderCode}",
            qrCode="00020101021238570010A000000727",
            paymentLinkId=f"plink{data.orderCode}",
            orderCode=data.orderCode,
        )

    def verifyPaymentWebhookData(self, body):
        if body.get("signature") != PAYOS_SIGNATURE:
            raise ValueError("The data is unreliable because the signature does not match")
        return SimpleNamespace(**body["data"])

    def getPaymentLinkInformation(self, code):
        link = self.links[code]
        return SimpleNamespace(
            id=f"plink{code}",
            orderCode=code,
            amount=link["amount"],
            amountPaid=link.get("amount_paid", 0),
            status=link["status"],
            transactions=link["transactions"],
            cancellationReason=link.get("reason"),
        )

    def pay(self, code: int, reference: str = "FT-PAYOS-1") -> None:
        link = self.links[code]
        link.update(status="PAID", amount_paid=link["amount"])
        link["transactions"] = [{"reference": reference, "amount": link["amount"]}]

    def cancel(self, code: int, reason: str = "Customer cancelled") -> None:
        self.links[code].update(status="CANCELLED", reason=reason)


@pytest.fixture()
def bank():
    return FakeBank()


@pytest.fixture()
def vietqr_provider(bank):
    return VietQRProvider(
        client=httpx.Client(transport=httpx.MockTransport(bank.handler)),
        account_no="0123456789",
        account_name="ORDER CORE",
        bank_id=970422,
        history_api_key="web2m-key",
    )


@pytest.fixture()
def payos_client():
    return FakePayOS()


@pytest.fixture()
def payos_provider(payos_client):
    return PayOSProvider(client=payos_client)


@pytest.fixture()
def payos_webhook():
    """Build a PayOS webhook body for an order code."""

    def _build(code, amount, status_code="00", reference="FT-PAYOS-1", signature=PAYOS_SIGNATURE):
        data = {
            "orderCode": code,
            "amount": int(amount),
            "description": f"DH{code}",
            "reference": reference,
            "paymentLinkId": f"plink{code}",
            "code": status_code,
            "desc": "success" if status_code == "00" else "Giao dich that bai",
        }
        return {"code": "00", "desc": "success", "success": True, "data": data, "signature": signature}

    return _build

@pytest.fixture()
def gateway(mock_provider, vnpay_provider, vietqr_provider, payos_provider, notifier):
    return ReconciliationGateway(
        {
            mock_provider.name: mock_provider,
            vnpay_provider.name: vnpay_provider,
            vietqr_provider.name: vietqr_provider,
            payos_provider.name: payos_provider,
        },
        notifier=notifier,
        advance_on_payment=True,
    )


@pytest.fixture()
def client(session_factory, gateway, notifier, monkeypatch):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(app.state, "gateway", gateway)
    monkeypatch.setattr(app.state, "notifier", notifier)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def headers():
    """``headers(email, role)`` -> Authorization header with a fresh access token."""
    return auth


@pytest.fixture()
def token():
    return make_token
