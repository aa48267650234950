# tests/test_gateway_integration.py
"""
End-to-end tests through the FastAPI app: 402 offer, payment, retry.

The ledger is mocked at the verification seam and the upstream at
requests.request; everything between (middleware, controller, SQLite
store, routers, exception handlers) is real.
"""
import sqlite3
import pytest
from unittest.mock import MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.endpoints import invoices, prepaid
from app.core.errors import register_exception_handlers
from app.gateway import controller as controller_module
from app.gateway.audit import AuditEventType, read_audit_log
from app.gateway.controller import GatewayController, get_controller
from app.gateway.middleware import PaymentGatewayMiddleware, is_exempt_path
from app.gateway.models import TxResult

from conftest import PAYMENT_ADDRESS, make_settings


def create_test_app(controller: GatewayController) -> FastAPI:
    """Gateway app wired to the given controller."""
    app = FastAPI()
    register_exception_handlers(app)
    app.add_middleware(PaymentGatewayMiddleware, controller=controller)
    app.include_router(invoices.router, prefix="/invoices")
    app.include_router(prepaid.router, prefix="/prepaid")
    app.dependency_overrides[get_controller] = lambda: controller

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


def upstream_ok(content=b'{"data": "premium"}'):
    response = MagicMock()
    response.status_code = 200
    response.content = content
    response.headers = {"content-type": "application/json"}
    return response


@pytest.fixture
def client(controller):
    return TestClient(create_test_app(controller))


@pytest.fixture
def prepaid_client(prepaid_controller):
    return TestClient(create_test_app(prepaid_controller))


class TestExemptPaths:
    """Gateway endpoints are never payment-gated."""

    def test_is_exempt_path(self):
        """Health, invoice, prepaid and docs paths are exempt."""
        assert is_exempt_path("/health") is True
        assert is_exempt_path("/invoices/abc") is True
        assert is_exempt_path("/prepaid/balance/c1") is True
        assert is_exempt_path("/_gateway/docs") is True
        assert is_exempt_path("/api/data") is False
        assert is_exempt_path("/healthz") is False

    @patch("app.gateway.proxy.requests.request")
    def test_health_is_free(self, mock_request, client):
        """Health never issues an invoice or reaches the upstream."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        mock_request.assert_not_called()


class TestPayPerRequestFlow:
    """The invoice flow from first request to paid retry."""

    @patch("app.gateway.proxy.requests.request")
    @patch("app.gateway.controller.verify_payment")
    def test_full_flow(self, mock_verify, mock_request, client):
        """402 -> AWAITING_CONFIRMATION -> paid -> 200 from upstream."""
        mock_request.return_value = upstream_ok()

        first = client.get("/api/expensive/x")
        assert first.status_code == 402
        payment = first.json()["payment"]
        assert payment["amount"] == "1.0"
        assert payment["address"] == PAYMENT_ADDRESS
        mock_request.assert_not_called()

        mock_verify.return_value = TxResult(found=False)
        pending = client.get("/api/expensive/x", headers={"X-Payment-Proof": payment["invoiceId"]})
        assert pending.status_code == 402
        assert pending.json()["code"] == "AWAITING_CONFIRMATION"
        mock_request.assert_not_called()

        mock_verify.return_value = TxResult(found=True, tx_hash="TXHASH1", amount="1.000000", confirmations=2)
        paid = client.get("/api/expensive/x?page=2", headers={"X-Payment-Proof": payment["invoiceId"]})
        assert paid.status_code == 200
        assert paid.json() == {"data": "premium"}
        assert paid.headers["x-payment-mode"] == "invoice"

        args, kwargs = mock_request.call_args
        assert args == ("GET", "http://upstream.test/api/expensive/x?page=2")
        assert "x-payment-proof" not in kwargs["headers"]

        status = client.get(f"/invoices/{payment['invoiceId']}")
        assert status.status_code == 200
        assert status.json()["status"] == "paid"
        assert status.json()["txHash"] == "TXHASH1"

    @patch("app.gateway.controller.verify_payment")
    def test_poll_endpoint_confirms(self, mock_verify, client):
        """Polling the invoice confirms a payment before the retry."""
        mock_verify.return_value = TxResult(found=False)
        invoice_id = client.get("/api/expensive/x").json()["payment"]["invoiceId"]

        pending = client.get(f"/invoices/{invoice_id}")
        assert pending.status_code == 200
        body = pending.json()
        assert body["status"] == "pending"
        assert body["amount"] == "1.0"
        assert body["memo"].startswith("cpg-")
        assert body["route"] == "/api/expensive/x"
        assert body["txHash"] is None

        mock_verify.return_value = TxResult(found=True, tx_hash="TXHASH1", amount="1.000000", confirmations=1)
        assert client.get(f"/invoices/{invoice_id}").json()["status"] == "paid"

    def test_invalid_invoice(self, client):
        """A proof naming no invoice is INVALID_INVOICE."""
        response = client.get("/api/expensive/x", headers={"X-Payment-Proof": "bogus"})

        assert response.status_code == 402
        assert response.json()["code"] == "INVALID_INVOICE"

    def test_unknown_invoice_status(self, client):
        """Polling an unknown invoice is 404."""
        response = client.get("/invoices/missing")

        assert response.status_code == 404
        assert response.json() == {"error": "Invoice not found", "code": "NOT_FOUND"}

    @patch("app.gateway.controller.verify_payment")
    def test_expired_invoice(self, mock_verify, store):
        """A stale invoice is INVOICE_EXPIRED."""
        controller = GatewayController(make_settings(GATEWAY_INVOICE_TTL=0), store)
        client = TestClient(create_test_app(controller))
        invoice_id = client.get("/api/expensive/x").json()["payment"]["invoiceId"]

        with patch("app.gateway.invoices.utc_now", return_value="2999-01-01T00:00:00.000+00:00"):
            response = client.get("/api/expensive/x", headers={"X-Payment-Proof": invoice_id})

        assert response.status_code == 402
        assert response.json()["code"] == "INVOICE_EXPIRED"
        mock_verify.assert_not_called()

    @patch("app.gateway.proxy.requests.request")
    @patch("app.gateway.controller.verify_payment")
    def test_upstream_down(self, mock_verify, mock_request, client):
        """A paid request whose upstream is unreachable gets 502."""
        import requests
        mock_verify.return_value = TxResult(found=True, tx_hash="TXHASH1", amount="1.000000", confirmations=1)
        mock_request.side_effect = requests.ConnectionError("refused")
        invoice_id = client.get("/api/expensive/x").json()["payment"]["invoiceId"]

        response = client.get("/api/expensive/x", headers={"X-Payment-Proof": invoice_id})

        assert response.status_code == 502
        assert response.json() == {"error": "Upstream unavailable", "code": "BAD_GATEWAY"}

    @patch("app.gateway.proxy.requests.request")
    def test_post_body_forwarded(self, mock_request, prepaid_client, prepaid_controller):
        """Request bodies reach the upstream intact."""
        mock_request.return_value = upstream_ok()
        prepaid_controller.prepaid.add_balance("agent-1", "1")

        response = prepaid_client.post(
            "/api/cheap/items",
            content=b'{"name": "widget"}',
            headers={"X-Client-Id": "agent-1", "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert mock_request.call_args.kwargs["data"] == b'{"name": "widget"}'


class TestPrepaidFlow:
    """Deposit, spend, and run out."""

    @patch("app.gateway.proxy.requests.request")
    @patch("app.gateway.controller.verify_tx_by_hash")
    def test_deposit_and_spend(self, mock_verify, mock_request, prepaid_client):
        """A deposit funds requests until the balance runs out."""
        mock_request.return_value = upstream_ok()
        mock_verify.return_value = TxResult(found=True, tx_hash="ABCDEF", amount="1.500000", confirmations=3)

        deposit = prepaid_client.post("/prepaid/deposit", json={"clientId": "agent-1", "txHash": "ABCDEF"})
        assert deposit.status_code == 200
        assert deposit.json() == {
            "clientId": "agent-1",
            "txHash": "ABCDEF",
            "credited": "1.500000",
            "balance": "1.500000",
        }

        headers = {"X-Client-Id": "agent-1"}
        first = prepaid_client.get("/api/expensive/x", headers=headers)
        assert first.status_code == 200
        assert first.headers["x-payment-mode"] == "prepaid"

        balance = prepaid_client.get("/prepaid/balance/agent-1")
        assert balance.json() == {"clientId": "agent-1", "balance": "0.500000"}

        second = prepaid_client.get("/api/expensive/x", headers=headers)
        assert second.status_code == 402
        assert second.json()["prepaid"]["balanceUrl"] == "/prepaid/balance/agent-1"
        assert prepaid_client.get("/prepaid/balance/agent-1").json()["balance"] == "0.500000"

    @patch("app.gateway.controller.verify_tx_by_hash")
    def test_duplicate_deposit(self, mock_verify, prepaid_client):
        """The same deposit tx is rejected with 409."""
        mock_verify.return_value = TxResult(found=True, tx_hash="ABCDEF", amount="1.000000", confirmations=3)
        body = {"clientId": "agent-1", "txHash": "ABCDEF"}

        assert prepaid_client.post("/prepaid/deposit", json=body).status_code == 200
        duplicate = prepaid_client.post("/prepaid/deposit", json=body)

        assert duplicate.status_code == 409
        assert duplicate.json()["code"] == "DUPLICATE_PAYMENT"
        assert prepaid_client.get("/prepaid/balance/agent-1").json()["balance"] == "1.000000"

    @patch("app.gateway.controller.verify_tx_by_hash")
    def test_unconfirmed_deposit(self, mock_verify, prepaid_client):
        """An unverifiable deposit is 402 AWAITING_CONFIRMATION."""
        mock_verify.return_value = TxResult(found=False)

        response = prepaid_client.post("/prepaid/deposit", json={"clientId": "agent-1", "txHash": "ABCDEF"})

        assert response.status_code == 402
        assert response.json()["code"] == "AWAITING_CONFIRMATION"

    def test_deposit_validation(self, prepaid_client):
        """Malformed deposit bodies are 400 VALIDATION_ERROR."""
        response = prepaid_client.post("/prepaid/deposit", json={"clientId": "", "txHash": "not-hex!"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert response.json()["detail"]

    def test_deposit_bad_amount(self, prepaid_client):
        """An unparseable expected amount is rejected."""
        response = prepaid_client.post(
            "/prepaid/deposit",
            json={"clientId": "agent-1", "txHash": "ABCDEF", "amount": "0.0000001"},
        )
        assert response.status_code == 400

    def test_unknown_balance_is_zero(self, prepaid_client):
        """Unknown clients have a zero balance."""
        assert prepaid_client.get("/prepaid/balance/nobody").json() == {"clientId": "nobody", "balance": "0"}

    def test_prepaid_disabled(self, client):
        """Prepaid endpoints are 404 when the feature is off."""
        assert client.get("/prepaid/balance/agent-1").status_code == 404
        response = client.post("/prepaid/deposit", json={"clientId": "agent-1", "txHash": "ABCDEF"})
        assert response.status_code == 404
        assert response.json()["error"] == "Prepaid not enabled"


class TestServerErrors:
    """Unexpected failures become a generic 500 and an audit event."""

    def test_storage_failure_audited(self, controller):
        """A storage fault while gating is reported as INTERNAL_ERROR."""
        client = TestClient(create_test_app(controller), raise_server_exceptions=False)

        with patch.object(controller, "handle", side_effect=sqlite3.OperationalError("disk I/O error")):
            response = client.get("/api/expensive/data")

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"
        assert "disk I/O" not in response.text

        events = read_audit_log(event_type=AuditEventType.ERROR)
        assert len(events) == 1
        assert events[0]["data"]["error_type"] == "OperationalError"
        assert events[0]["data"]["context"] == {"method": "GET", "path": "/api/expensive/data"}


class TestMainApp:
    """The application object served by uvicorn."""

    @pytest.fixture
    def main_client(self, controller, monkeypatch):
        monkeypatch.setattr(controller_module, "_controller", controller)
        from app.main import app
        return TestClient(app)

    def test_health(self, main_client):
        """Health reports status and version."""
        response = main_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["version"]

    def test_docs_not_gated(self, main_client):
        """The OpenAPI document lives under the gateway prefix, ungated."""
        response = main_client.get("/_gateway/openapi.json")

        assert response.status_code == 200
        assert "/invoices/{invoice_id}" in response.json()["paths"]

    def test_other_paths_gated(self, main_client):
        """Anything else is payment-gated."""
        response = main_client.get("/docs")

        assert response.status_code == 402
        assert response.json()["payment"]["amount"] == "0.01"
