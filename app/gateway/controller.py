# app/gateway/controller.py
"""
Per-request payment gating.

Decision order for every gated request:
1. Price the path (first matching route wins).
2. X-Payment-Proof present -> look up that invoice:
   unknown -> 402 INVALID_INVOICE, paid -> forward,
   expired -> 402 INVOICE_EXPIRED, pending -> verify on-chain and either
   mark paid + forward or 402 AWAITING_CONFIRMATION.
3. Prepaid enabled and X-Client-Id present -> debit the balance and
   forward; on insufficient funds fall through.
4. Otherwise issue a new invoice and return 402 with the payment offer.

`decide` is pure gating logic (storage + ledger reads, no upstream call) and
returns a GatewayDecision; `handle` carries out the forward. Both are
blocking and are run in the worker thread pool by the HTTP layer.
"""
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from starlette.responses import JSONResponse, Response

from app.core.config import Settings, settings
from app.core.errors import (
    GatewayError,
    InvalidInvoiceError,
    InvoiceExpiredError,
    NotFoundError,
    PaymentPendingError,
)
from app.gateway import audit, proxy
from app.gateway.invoices import InvoiceManager
from app.gateway.models import Invoice, InvoiceStatus
from app.gateway.prepaid import PrepaidLedger
from app.gateway.pricing import match_route
from app.gateway.store import GatewayStore, get_store
from app.gateway.verify import verify_payment, verify_tx_by_hash

logger = logging.getLogger(__name__)

X_PAYMENT_PROOF_HEADER = "X-Payment-Proof"
X_CLIENT_ID_HEADER = "X-Client-Id"
X_PAYMENT_MODE_HEADER = "X-Payment-Mode"


class DecisionKind(str, Enum):
    FORWARD = "forward"
    PAYMENT_REQUIRED = "payment_required"
    REJECTED = "rejected"


@dataclass
class GatewayRequest:
    """The parts of an inbound HTTP request the gateway needs."""
    method: str
    path: str
    headers: Mapping[str, str]
    client_ip: str
    query: str = ""
    body: bytes = b""
    request_id: Optional[str] = None

    @property
    def path_with_query(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value.strip() or None
        return None


@dataclass
class GatewayDecision:
    kind: DecisionKind
    price: str
    status_code: int = 200
    body: Dict[str, Any] = field(default_factory=dict)
    payment_mode: Optional[str] = None
    invoice: Optional[Invoice] = None

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=self.status_code, content=self.body)


def rejection(error: GatewayError, price: str, invoice: Optional[Invoice] = None) -> GatewayDecision:
    return GatewayDecision(
        kind=DecisionKind.REJECTED,
        price=price,
        status_code=error.status_code,
        body=error.to_dict(),
        invoice=invoice,
    )


class GatewayController:
    """Ties pricing, invoices, prepaid balances and verification together."""

    def __init__(self, config: Settings, store: GatewayStore):
        self.config = config
        self.invoices = InvoiceManager(store, config.GATEWAY_PAYMENT_ADDRESS)
        self.prepaid = PrepaidLedger(store)

    def decide(self, request: GatewayRequest) -> GatewayDecision:
        price = match_route(request.path, self.config.route_prices, self.config.GATEWAY_DEFAULT_PRICE)
        client_id = request.header(X_CLIENT_ID_HEADER)
        payment_proof = request.header(X_PAYMENT_PROOF_HEADER)

        if payment_proof:
            return self._decide_with_proof(request, payment_proof, price)

        if self.config.GATEWAY_PREPAID and client_id:
            if self.prepaid.deduct_balance(client_id, price, route=request.path):
                audit.log_balance_debited(
                    client_id=client_id,
                    amount=price,
                    route=request.path,
                    client_ip=request.client_ip,
                    request_id=request.request_id,
                )
                return GatewayDecision(kind=DecisionKind.FORWARD, price=price, payment_mode="prepaid")
            # Insufficient balance: fall through to a fresh invoice

        return self._issue_invoice(request, price, client_id)

    def _decide_with_proof(self, request: GatewayRequest, invoice_id: str, price: str) -> GatewayDecision:
        invoice = self.invoices.get_invoice(invoice_id)
        if invoice is None:
            logger.info(f"gateway: unknown invoice {invoice_id} from {request.client_ip}")
            return rejection(InvalidInvoiceError("Invalid invoice"), price)

        invoice = self.confirm_invoice(
            invoice,
            route=request.path,
            client_ip=request.client_ip,
            request_id=request.request_id,
        )

        if invoice.status == InvoiceStatus.PAID:
            return GatewayDecision(kind=DecisionKind.FORWARD, price=price, payment_mode="invoice", invoice=invoice)

        if invoice.status == InvoiceStatus.EXPIRED:
            return rejection(InvoiceExpiredError("Invoice expired"), price, invoice)

        error = PaymentPendingError(
            "Payment not yet confirmed",
            details={"invoice": {"id": invoice.id, "memo": invoice.memo, "status": invoice.status.value}},
        )
        return rejection(error, price, invoice)

    def confirm_invoice(
        self,
        invoice: Invoice,
        route: Optional[str] = None,
        client_ip: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> Invoice:
        """
        Bring a pending invoice up to date: expire it if stale, otherwise
        check the ledger and mark it paid when the payment is confirmed.

        Safe to race with itself (proxy path vs. polling endpoint): only one
        caller performs the transition and logs the payment.

        Returns:
            The invoice's current stored state
        """
        invoice = self.invoices.expire_if_stale(invoice)
        if invoice.status != InvoiceStatus.PENDING:
            return invoice

        result = verify_payment(invoice.memo, invoice.amount, self.config)
        if not (result.found and result.tx_hash):
            audit.log_payment_pending(
                invoice_id=invoice.id,
                reason="short payment" if result.amount else "not found or unconfirmed",
                client_ip=client_ip,
                request_id=request_id,
            )
            return invoice

        if self.invoices.mark_paid(invoice.id, result.tx_hash, route=route):
            audit.log_invoice_paid(
                invoice_id=invoice.id,
                tx_hash=result.tx_hash,
                amount=result.amount,
                confirmations=result.confirmations,
                client_ip=client_ip,
                client_id=invoice.client_id,
                request_id=request_id,
            )
        # Re-read: a concurrent caller may have paid or expired it first
        return self.invoices.get_invoice(invoice.id) or invoice

    def get_invoice_status(self, invoice_id: str, client_ip: Optional[str] = None) -> Invoice:
        """
        Invoice lookup for the polling endpoint, re-checking pending invoices on-chain.

        Raises:
            NotFoundError: If the invoice does not exist
        """
        invoice = self.invoices.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice not found")
        return self.confirm_invoice(invoice, client_ip=client_ip)

    def get_balance(self, client_id: str) -> str:
        """
        Raises:
            NotFoundError: If prepaid mode is disabled
        """
        self._require_prepaid()
        return self.prepaid.get_balance(client_id)

    def deposit(
        self,
        client_id: str,
        tx_hash: str,
        amount: Optional[str] = None,
        client_ip: Optional[str] = None
    ) -> Tuple[str, str]:
        """
        Verify a deposit transaction by hash and credit what it transferred.

        Args:
            client_id: Prepaid account to credit
            tx_hash: Deposit transaction hash
            amount: Optional minimum the transaction must have transferred

        Returns:
            Tuple of (credited amount, new balance)

        Raises:
            NotFoundError: If prepaid mode is disabled
            PaymentPendingError: If the transaction cannot be confirmed (yet)
            DuplicatePaymentError: If the transaction was already credited
        """
        self._require_prepaid()

        result = verify_tx_by_hash(
            tx_hash,
            self.config.GATEWAY_PAYMENT_ADDRESS,
            self.config,
            expected_amount=amount,
        )
        if not (result.found and result.amount):
            details = {"txHash": tx_hash}
            if result.amount:
                details["amount"] = result.amount
            if result.confirmations is not None:
                details["confirmations"] = result.confirmations
            raise PaymentPendingError("Deposit not confirmed", details=details)

        # Credit under the ledger's hash, not the client's spelling of it
        credited_hash = result.tx_hash or tx_hash
        balance = self.prepaid.credit_deposit(client_id, credited_hash, result.amount)
        audit.log_balance_credited(
            client_id=client_id,
            amount=result.amount,
            balance=balance,
            tx_hash=credited_hash,
            client_ip=client_ip,
        )
        return result.amount, balance

    def _require_prepaid(self) -> None:
        if not self.config.GATEWAY_PREPAID:
            raise NotFoundError("Prepaid not enabled")

    def _issue_invoice(self, request: GatewayRequest, price: str, client_id: Optional[str]) -> GatewayDecision:
        invoice = self.invoices.create_invoice(
            route=request.path,
            price=price,
            client_id=client_id,
            ttl_seconds=self.config.GATEWAY_INVOICE_TTL,
        )
        audit.log_invoice_created(
            invoice_id=invoice.id,
            memo=invoice.memo,
            amount=invoice.amount,
            route=invoice.route,
            expires_at=invoice.expires_at,
            client_ip=request.client_ip,
            client_id=client_id,
            request_id=request.request_id,
        )
        audit.log_payment_required_sent(
            invoice_id=invoice.id,
            amount=invoice.amount,
            currency=self.config.GATEWAY_CURRENCY,
            pay_to=invoice.address,
            route=invoice.route,
            client_ip=request.client_ip,
            client_id=client_id,
            request_id=request.request_id,
        )
        return GatewayDecision(
            kind=DecisionKind.PAYMENT_REQUIRED,
            price=price,
            status_code=402,
            body=self.payment_required_body(invoice, client_id),
            invoice=invoice,
        )

    def payment_required_body(self, invoice: Invoice, client_id: Optional[str]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": 402,
            "error": "Payment Required",
            "payment": {
                "invoiceId": invoice.id,
                "amount": invoice.amount,
                "currency": self.config.GATEWAY_CURRENCY,
                "address": invoice.address,
                "memo": invoice.memo,
                "expiresAt": invoice.expires_at,
                "verifyUrl": f"/invoices/{invoice.id}",
            },
        }
        if self.config.GATEWAY_PREPAID:
            body["prepaid"] = {
                "depositUrl": "/prepaid/deposit",
                "balanceUrl": f"/prepaid/balance/{client_id or '{clientId}'}",
            }
        return body

    def handle(self, request: GatewayRequest) -> Response:
        """Decide, then forward to the upstream or return the 402 body."""
        if request.request_id is None:
            request.request_id = audit.generate_request_id()

        decision = self.decide(request)
        if decision.kind != DecisionKind.FORWARD:
            return decision.to_response()

        response = proxy.forward(
            method=request.method,
            path_with_query=request.path_with_query,
            headers=request.headers,
            body=request.body,
            client_ip=request.client_ip,
            upstream=self.config.upstream_base,
            timeout=self.config.GATEWAY_UPSTREAM_TIMEOUT,
        )
        if isinstance(response, JSONResponse):
            # proxy only builds JSON responses itself for transport failures
            audit.log_upstream_error(
                method=request.method,
                route=request.path,
                client_ip=request.client_ip,
                request_id=request.request_id,
            )
        else:
            audit.log_request_forwarded(
                method=request.method,
                route=request.path,
                status_code=response.status_code,
                payment_mode=decision.payment_mode,
                client_ip=request.client_ip,
                client_id=request.header(X_CLIENT_ID_HEADER),
                request_id=request.request_id,
            )
        response.headers[X_PAYMENT_MODE_HEADER] = decision.payment_mode
        return response


# Global controller instance
_controller: Optional[GatewayController] = None
_controller_lock = threading.Lock()


def get_controller() -> GatewayController:
    """
    Get the global controller, built from settings and the global store.

    Also used as a FastAPI dependency, so tests can override it.
    """
    global _controller

    if _controller is None:
        with _controller_lock:
            if _controller is None:
                _controller = GatewayController(settings, get_store())

    return _controller


def reset_controller() -> None:
    """Drop the global controller (useful for testing)."""
    global _controller
    with _controller_lock:
        _controller = None
