"""Integration tests for the payment endpoints (ordercore.api.payments)."""

from urllib.parse import parse_qs, urlsplit

import pytest

from ordercore.payments.mock import TEST_SIGNATURE
from ordercore.payments.payos import order_code
from ordercore.payments.vietqr import transfer_memo

ALICE = "alice@example.com"
BOB = "bob@example.com"


@pytest.fixture()
def alice_order(shared_seed):
    return shared_seed.place_order(ALICE)


def _create(client, headers, provider, order_id, email=ALICE):
    return client.post(f"/payment/v1/payments/{provider}/create", json={"order_id": order_id}, headers=headers(email))


def _redirect(response):
    parts = urlsplit(response.headers["location"])
    return parts.path, {k: v[0] for k, v in parse_qs(parts.query).items()}


class TestCreatePayment:
    def test_vnpay_redirect(self, client, headers, alice_order):
        response = _create(client, headers, "vnpay", alice_order.id)

        assert response.status_code == 201
        data = response.json()
        assert data["provider"] == "vnpay"
        assert data["amount"] == "180.00"
        assert "vnp_SecureHash=" in data["redirect_url"]
        assert f"vnp_TxnRef={alice_order.order_number}" in data["redirect_url"]

    def test_unknown_provider(self, client, headers, alice_order):
        response = _create(client, headers, "paypal", alice_order.id)

        assert response.status_code == 400
        assert "Unsupported payment provider" in response.json()["detail"]

    def test_other_customers_order(self, client, headers, shared_seed, alice_order):
        shared_seed.customer(BOB, "Bob")

        assert _create(client, headers, "mock", alice_order.id, email=BOB).status_code == 404

    def test_requires_token(self, client, alice_order):
        response = client.post("/payment/v1/payments/mock/create", json={"order_id": alice_order.id})

        assert response.status_code == 401


class TestVNPayReturn:
    def test_success_redirects_to_success_page(self, client, headers, shared_seed, alice_order, vnpay_return):
        _create(client, headers, "vnpay", alice_order.id)
        params = vnpay_return(alice_order.order_number, "180.00", "00", txn_no="14012345")

        response = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)

        assert response.status_code == 303
        path, query = _redirect(response)
        assert path == "/payment-success"
        assert query == {"orderNumber": alice_order.order_number, "transactionId": "14012345"}
        order = shared_seed.order(alice_order.id)
        assert order.payment_status == "paid"
        assert order.status == "processing"

    def test_replayed_return_is_harmless(self, client, headers, shared_seed, alice_order, vnpay_return, notifier):
        _create(client, headers, "vnpay", alice_order.id)
        params = vnpay_return(alice_order.order_number, "180.00", "00")

        first = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)
        second = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)

        assert _redirect(first) == _redirect(second)
        assert notifier.types().count("payment.succeeded") == 1

    def test_customer_cancelled(self, client, headers, shared_seed, alice_order, vnpay_return):
        _create(client, headers, "vnpay", alice_order.id)
        params = vnpay_return(alice_order.order_number, "180.00", "24")

        response = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)

        path, _ = _redirect(response)
        assert path == "/payment-failed"
        status = client.get(f"/payment/v1/payments/status/{alice_order.id}", headers=headers(ALICE)).json()
        assert status["status"] == "cancelled"
        assert shared_seed.order(alice_order.id).payment_status == "pending"

    def test_bad_signature(self, client, headers, shared_seed, alice_order, vnpay_return):
        _create(client, headers, "vnpay", alice_order.id)
        params = vnpay_return(alice_order.order_number, "180.00", "00")
        params["vnp_SecureHash"] = "0" * 128

        response = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)

        path, query = _redirect(response)
        assert path == "/payment-failed"
        assert query["message"] == "Payment verification failed"
        assert shared_seed.order(alice_order.id).payment_status == "pending"

    def test_return_cannot_settle_a_vietqr_attempt(self, client, headers, shared_seed, alice_order, vnpay_return):
        _create(client, headers, "vietqr", alice_order.id)
        params = vnpay_return(alice_order.order_number, "180.00", "00", txn_no="FORGED")

        response = client.get("/payment/v1/payments/vnpay/return", params=params, follow_redirects=False)

        path, _ = _redirect(response)
        assert path == "/payment-failed"
        status = client.get(f"/payment/v1/payments/status/{alice_order.id}", headers=headers(ALICE)).json()
        assert status["provider"] == "vietqr"
        assert status["status"] == "pending"
        assert status["transaction_id"] is None
        assert shared_seed.order(alice_order.id).payment_status == "pending"


class TestMockCallback:
    def test_settles_order(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)

        response = client.post(
            "/payment/v1/payments/mock/callback",
            json={"order_number": alice_order.order_number, "transaction_id": "MOCK-1", "signature": TEST_SIGNATURE},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["settled"] is True
        assert data["applied"] is True
        assert data["payment_status"] == "paid"
        assert data["payment"]["transaction_id"] == "MOCK-1"

    def test_conflicting_transaction(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)
        body = {"order_number": alice_order.order_number, "transaction_id": "MOCK-1", "signature": TEST_SIGNATURE}
        client.post("/payment/v1/payments/mock/callback", json=body)

        response = client.post("/payment/v1/payments/mock/callback", json={**body, "transaction_id": "MOCK-2"})

        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_failed_payment(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)

        response = client.post(
            "/payment/v1/payments/mock/callback",
            json={"order_number": alice_order.order_number, "succeed": False, "signature": TEST_SIGNATURE},
        )

        data = response.json()
        assert data["payment"]["status"] == "failed"
        assert data["payment_status"] == "pending"

    def test_bad_signature(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)

        response = client.post(
            "/payment/v1/payments/mock/callback",
            json={"order_number": alice_order.order_number, "signature": "forged"},
        )

        assert response.status_code == 502
        assert response.json()["provider"] == "mock"


class TestPaymentStatus:
    def test_latest_attempt(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)

        response = client.get(f"/payment/v1/payments/status/{alice_order.id}", headers=headers(ALICE))

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["provider"] == "mock"

    def test_no_attempt(self, client, headers, alice_order):
        response = client.get(f"/payment/v1/payments/status/{alice_order.id}", headers=headers(ALICE))

        assert response.status_code == 404

    def test_vietqr_check_requires_vietqr_attempt(self, client, headers, alice_order):
        _create(client, headers, "mock", alice_order.id)

        response = client.post("/payment/v1/payments/vietqr/check", json={"order_id": alice_order.id}, headers=headers(ALICE))

        assert response.status_code == 404


class TestVietQRCheck:
    def _check(self, client, headers, order_id):
        return client.post("/payment/v1/payments/vietqr/check", json={"order_id": order_id}, headers=headers(ALICE))

    def test_pending_until_transfer_arrives(self, client, headers, bank, shared_seed, alice_order, notifier):
        created = _create(client, headers, "vietqr", alice_order.id).json()
        assert created["amount"] == "180.00"
        assert created["details"]["content"] == transfer_memo(alice_order.order_number)

        assert self._check(client, headers, alice_order.id).json() == {
            "settled": False, "applied": False, "order_id": None, "status": None, "payment_status": None, "payment": None,
        }

        bank.transfer(transfer_memo(alice_order.order_number), "180", txn_id="FT26101900042")
        data = self._check(client, headers, alice_order.id).json()

        assert data["settled"] is True
        assert data["applied"] is True
        assert data["payment_status"] == "paid"
        assert data["status"] == "processing"
        assert data["payment"]["transaction_id"] == "FT26101900042"
        assert notifier.types().count("payment.succeeded") == 1

    def test_repeated_check_after_settlement(self, client, headers, bank, alice_order, notifier):
        _create(client, headers, "vietqr", alice_order.id)
        bank.transfer(transfer_memo(alice_order.order_number), "180")
        self._check(client, headers, alice_order.id)

        again = self._check(client, headers, alice_order.id).json()

        assert again["settled"] is True
        assert again["applied"] is False
        assert notifier.types().count("payment.succeeded") == 1

    def test_fractional_total(self, client, headers, bank, shared_seed):
        order = shared_seed.place_order(ALICE, qty=1, price="105.00", discount="10")
        created = _create(client, headers, "vietqr", order.id).json()
        assert created["amount"] == "95.00"

        bank.transfer(transfer_memo(order.order_number), "95")
        data = self._check(client, headers, order.id).json()

        assert data["payment_status"] == "paid"
        assert data["payment"]["amount"] == "95.00"


class TestPayOS:
    def test_create_returns_checkout_link(self, client, headers, alice_order):
        response = _create(client, headers, "payos", alice_order.id)

        assert response.status_code == 201
        data = response.json()
        assert data["redirect_url"] == f"https://pay.payos.vn/web/{order_code(alice_order.order_number)}"
        assert data["details"]["order_code"] == order_code(alice_order.order_number)

    def test_webhook_settles_order(self, client, headers, shared_seed, alice_order, payos_webhook, notifier):
        _create(client, headers, "payos", alice_order.id)
        body = payos_webhook(order_code(alice_order.order_number), 180, reference="FT-WH-1")

        response = client.post("/payment/v1/payments/payos/webhook", json=body)

        assert response.status_code == 200
        assert response.json()["payment"]["transaction_id"] == "FT-WH-1"
        assert shared_seed.order(alice_order.id).payment_status == "paid"

        replay = client.post("/payment/v1/payments/payos/webhook", json=body)
        assert replay.json()["applied"] is False
        assert notifier.types().count("payment.succeeded") == 1

    def test_forged_webhook(self, client, headers, shared_seed, alice_order, payos_webhook):
        _create(client, headers, "payos", alice_order.id)
        body = payos_webhook(order_code(alice_order.order_number), 180, signature="forged")

        response = client.post("/payment/v1/payments/payos/webhook", json=body)

        assert response.status_code == 502
        assert response.json()["provider"] == "payos"
        assert shared_seed.order(alice_order.id).payment_status == "pending"

    def test_webhook_body_cannot_request_a_poll(self, client, headers, shared_seed, alice_order, payos_client):
        _create(client, headers, "payos", alice_order.id)
        payos_client.pay(order_code(alice_order.order_number))

        response = client.post("/payment/v1/payments/payos/webhook", json={"order_ref": alice_order.order_number})

        assert response.status_code == 502
        assert shared_seed.order(alice_order.id).payment_status == "pending"

    def test_webhook_for_unknown_order_is_acknowledged(self, client, payos_webhook):
        response = client.post("/payment/v1/payments/payos/webhook", json=payos_webhook(123, 3000))

        assert response.status_code == 200
        assert response.json()["settled"] is False

    def test_webhook_cannot_settle_a_mock_attempt(self, client, headers, shared_seed, alice_order, payos_webhook):
        _create(client, headers, "mock", alice_order.id)

        response = client.post(
            "/payment/v1/payments/payos/webhook", json=payos_webhook(order_code(alice_order.order_number), 180)
        )

        assert response.status_code == 409
        assert shared_seed.order(alice_order.id).payment_status == "pending"

    def test_check_polls_link_status(self, client, headers, shared_seed, alice_order, payos_client):
        _create(client, headers, "payos", alice_order.id)
        check = {"order_id": alice_order.id}

        assert client.post("/payment/v1/payments/payos/check", json=check, headers=headers(ALICE)).json()["settled"] is False

        payos_client.pay(order_code(alice_order.order_number), reference="FT-POLL-1")
        data = client.post("/payment/v1/payments/payos/check", json=check, headers=headers(ALICE)).json()

        assert data["payment_status"] == "paid"
        assert data["payment"]["transaction_id"] == "FT-POLL-1"
