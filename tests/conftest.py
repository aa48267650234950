# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite store per test and gateway settings
that never touch the real ledger or the working directory.
"""
import pytest

from app.core.config import Settings, settings
from app.gateway.controller import GatewayController
from app.gateway.invoices import InvoiceManager
from app.gateway.prepaid import PrepaidLedger
from app.gateway.store import GatewayStore

PAYMENT_ADDRESS = "neutaro1gatewayaddress0000000000000000000000"
PAYER_ADDRESS = "neutaro1payeraddress00000000000000000000000"


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Send audit events to a per-test file instead of ./logs."""
    path = tmp_path / "audit.jsonl"
    monkeypatch.setattr(settings, "GATEWAY_AUDIT_LOG_PATH", str(path))
    return path


@pytest.fixture
def store(tmp_path):
    return GatewayStore(str(tmp_path / "gateway.db"))


@pytest.fixture
def invoice_manager(store):
    return InvoiceManager(store, PAYMENT_ADDRESS)


@pytest.fixture
def ledger(store):
    return PrepaidLedger(store)


def make_settings(**overrides) -> Settings:
    values = {
        "GATEWAY_UPSTREAM": "http://upstream.test",
        "GATEWAY_PAYMENT_ADDRESS": PAYMENT_ADDRESS,
        "GATEWAY_REST": "http://lcd.test",
        "GATEWAY_ROUTES": "/api/expensive/*=1.0,/api/cheap/*=0.001",
        "GATEWAY_DEFAULT_PRICE": "0.01",
        "GATEWAY_INVOICE_TTL": 300,
        "GATEWAY_MIN_CONFIRMATIONS": 1,
        "GATEWAY_PREPAID": False,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def gateway_settings():
    return make_settings()


@pytest.fixture
def prepaid_settings():
    return make_settings(GATEWAY_PREPAID=True)


@pytest.fixture
def controller(gateway_settings, store):
    return GatewayController(gateway_settings, store)


@pytest.fixture
def prepaid_controller(prepaid_settings, store):
    return GatewayController(prepaid_settings, store)
